"""
Configuration file support for pipeaudit.

Looks for a .pipeaudit.yml file in the project root and loads settings
that control which findings are reported, which files are scanned and
how many repositories are scanned in parallel. The resulting Config is
immutable and passed explicitly to the orchestrator and the reporters.

Example .pipeaudit.yml:

    # Minimum severity to report (critical, high, medium, low, note)
    severity: high

    # Rules to ignore (by rule ID)
    ignore_rules:
      - unpinned_action
      - debug_enabled

    # Pipeline files to exclude (glob patterns on repository-relative paths)
    exclude:
      - ".github/workflows/legacy.yml"
      - "**/test-*.yml"

    # Repositories scanned in parallel by analyze-org
    threads: 4
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from pipeaudit.errors import FatalConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = ".pipeaudit.yml"
DEFAULT_THREADS = 2
SEVERITIES = ("critical", "high", "medium", "low", "note")
FORMATS = ("pretty", "json", "sarif")


@dataclass(frozen=True)
class Config:
    """Parsed pipeaudit configuration."""
    severity: str = "low"
    ignore_rules: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    threads: int = DEFAULT_THREADS
    output_format: str = "pretty"
    verbose: bool = False

    def __post_init__(self):
        if self.severity not in SEVERITIES:
            raise FatalConfigurationError(f"Invalid severity {self.severity!r}, expected one of {SEVERITIES}")
        if not isinstance(self.threads, int) or self.threads < 1:
            raise FatalConfigurationError(f"Invalid threads {self.threads!r}, expected a positive integer")
        if self.output_format not in FORMATS:
            raise FatalConfigurationError(f"Invalid format {self.output_format!r}, expected one of {FORMATS}")

    def with_overrides(self, **overrides: Any) -> "Config":
        """Copy with the given values replaced; None means 'keep'."""
        return dataclasses.replace(self, **{k: v for k, v in overrides.items() if v is not None})


def load_config(config_path: Optional[str] = None, scan_path: Optional[str] = None) -> Config:
    """
    Load configuration from a .pipeaudit.yml file.

    Search order:
      1. Explicit config_path if provided
      2. .pipeaudit.yml in the scan_path directory (or its parent if scan_path is a file),
         then in each parent directory
      3. .pipeaudit.yml in the current working directory

    Returns a Config with defaults if no config file is found.

    Raises:
        FatalConfigurationError: If the file holds an invalid value.
    """
    path = _find_config_file(config_path, scan_path)

    if path is None:
        logger.debug("No config file found, using defaults")
        return Config()

    logger.info("Loading config from %s", path)

    with open(path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise FatalConfigurationError(f"Invalid config file {path}: {e}") from e

    if not isinstance(raw, dict):
        logger.warning("Config file is not a YAML mapping, using defaults")
        return Config()

    return Config(
        severity=str(raw.get("severity", "low")),
        ignore_rules=list(raw.get("ignore_rules") or []),
        exclude=list(raw.get("exclude") or []),
        threads=raw.get("threads", DEFAULT_THREADS),
    )


def _find_config_file(
    config_path: Optional[str] = None,
    scan_path: Optional[str] = None,
) -> Optional[str]:
    """Find the config file, returning its path or None."""
    # 1. Explicit path
    if config_path:
        p = Path(config_path)
        if p.is_file():
            return str(p)
        logger.warning("Config file not found: %s", config_path)
        return None

    # 2. Relative to scan path
    if scan_path:
        scan_p = Path(scan_path)
        if scan_p.is_file():
            scan_p = scan_p.parent
        candidate = scan_p / DEFAULT_CONFIG_FILENAME
        if candidate.is_file():
            return str(candidate)
        for parent in scan_p.parents:
            candidate = parent / DEFAULT_CONFIG_FILENAME
            if candidate.is_file():
                return str(candidate)

    # 3. Current working directory
    cwd_candidate = Path.cwd() / DEFAULT_CONFIG_FILENAME
    if cwd_candidate.is_file():
        return str(cwd_candidate)

    return None

"""
Providers that read pipeline files from the local filesystem.

LocalRepository scans one checked-out repository; LocalOrganization
treats every subdirectory of a folder as one repository.
"""

import logging
import threading
from pathlib import Path
from typing import Iterator, Optional

from pipeaudit.errors import FetchError
from pipeaudit.model import PipelineDocument, Platform
from pipeaudit.providers import DocumentReadError, FetchedItem, check_cancelled

logger = logging.getLogger(__name__)

WORKFLOWS_DIR = ".github/workflows"
ACTIONS_DIR = ".github/actions"
GITLAB_CI_FILE = ".gitlab-ci.yml"
YAML_SUFFIXES = (".yml", ".yaml")
ACTION_FILENAMES = ("action.yml", "action.yaml")


def discover_pipeline_files(root: Path) -> list[tuple[Platform, str]]:
    """Repository-relative paths of every pipeline file under root, sorted."""
    found: list[tuple[Platform, str]] = []

    workflows = root / WORKFLOWS_DIR
    if workflows.is_dir():
        for f in workflows.iterdir():
            if f.is_file() and f.suffix in YAML_SUFFIXES:
                found.append((Platform.GITHUB, f.relative_to(root).as_posix()))

    for name in ACTION_FILENAMES:
        if (root / name).is_file():
            found.append((Platform.GITHUB, name))
        actions = root / ACTIONS_DIR
        if actions.is_dir():
            for f in actions.rglob(name):
                found.append((Platform.GITHUB, f.relative_to(root).as_posix()))

    if (root / GITLAB_CI_FILE).is_file():
        found.append((Platform.GITLAB, GITLAB_CI_FILE))

    return sorted(found, key=lambda item: item[1])


class LocalRepository:
    """A repository already present on disk."""

    needs_clone = False

    def __init__(self, path: str, name: Optional[str] = None):
        self.root = Path(path).resolve()
        self.name = name or self.root.name

    def documents(self, workdir: Optional[str], cancel: threading.Event) -> Iterator[FetchedItem]:
        if not self.root.is_dir():
            raise FetchError(f"Not a directory: {self.root}", repository=self.name)

        files = discover_pipeline_files(self.root)
        logger.debug("Found %d pipeline file(s) in %s", len(files), self.root)
        for platform, rel_path in files:
            check_cancelled(cancel, self.name)
            try:
                content = (self.root / rel_path).read_bytes()
            except OSError as e:
                logger.warning("Could not read %s in %s: %s", rel_path, self.name, e)
                yield DocumentReadError(platform=platform, path=rel_path, message=str(e))
                continue
            yield PipelineDocument(platform=platform, path=rel_path, content=content)

    def read_file(self, rel_path: str) -> Optional[PipelineDocument]:
        """Read another file of the repository (local includes, reusable workflows)."""
        target = (self.root / rel_path).resolve()
        if self.root not in target.parents or not target.is_file():
            return None
        platform = Platform.GITHUB if rel_path.startswith(".github/") else Platform.GITLAB
        try:
            return PipelineDocument(platform=platform, path=rel_path, content=target.read_bytes())
        except OSError as e:
            logger.warning("Could not read %s in %s: %s", rel_path, self.name, e)
            return None


class LocalOrganization:
    """A directory whose subdirectories are repositories."""

    def __init__(self, path: str, name: Optional[str] = None):
        self.root = Path(path).resolve()
        self.name = name or self.root.name

    def repositories(self, cancel: threading.Event) -> Iterator[LocalRepository]:
        if not self.root.is_dir():
            raise FetchError(f"Not a directory: {self.root}", repository=self.name)
        for child in sorted(self.root.iterdir()):
            if child.is_dir() and not child.name.startswith("."):
                yield LocalRepository(str(child))

"""
CLI entry point: ties together providers → orchestrator → reporter.

Usage:
  # Scan a repository checked out on disk:
  python3 -m pipeaudit analyze-local path/to/repo

  # Clone a repository into a temporary directory and scan it:
  python3 -m pipeaudit analyze-repo org/repo --token "$GH_TOKEN"
  python3 -m pipeaudit analyze-repo group/project --scm gitlab --scm-base-url https://gitlab.example.com

  # Scan every repository under a directory, 4 at a time:
  python3 -m pipeaudit analyze-org path/to/org --threads 4

  # Output as JSON or SARIF:
  python3 -m pipeaudit analyze-local . --format sarif

Exit codes:
  0    no findings
  1    findings detected
  2    error (bad input, unreadable repository, invalid config)
  130  interrupted
"""

import contextlib
import logging
import os
import signal
import sys
import threading
from typing import Callable, Iterator, Optional

import click

from pipeaudit.config import FORMATS, SEVERITIES, Config, load_config
from pipeaudit.errors import FatalConfigurationError, FetchError
from pipeaudit.orchestrator import RepoResult, scan_organization, scan_repository
from pipeaudit.providers.git import SCM_BASE_URLS, GitRepository, clone_url
from pipeaudit.providers.local import LocalOrganization, LocalRepository
from pipeaudit.reporter import report_console, report_json, report_sarif

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_ERROR = 2
EXIT_INTERRUPT = 130

Scan = Callable[[Config, threading.Event], list[RepoResult]]


def _setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity flag."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@contextlib.contextmanager
def _interrupt_handler(cancel: threading.Event) -> Iterator[None]:
    """First SIGINT/SIGTERM cancels the scan gracefully, the second exits at once."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handle(signum, frame):
        if cancel.is_set():
            os._exit(EXIT_INTERRUPT)
        click.echo("Interrupted, cleaning up (press Ctrl+C again to force exit)...", err=True)
        cancel.set()

    previous = {sig: signal.signal(sig, handle) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _emit(results: list[RepoResult], config: Config) -> None:
    if config.output_format == "json":
        click.echo(report_json(results))
    elif config.output_format == "sarif":
        click.echo(report_sarif(results))
    else:
        report_console(results)


def _run(
    scan: Scan,
    scan_path: Optional[str],
    output_format: str,
    min_severity: Optional[str],
    threads: Optional[int],
    config_path: Optional[str],
) -> None:
    verbose = click.get_current_context().find_root().params.get("verbose", False)
    try:
        config = load_config(config_path=config_path, scan_path=scan_path).with_overrides(
            severity=min_severity,
            threads=threads,
            output_format=output_format,
            verbose=verbose,
        )
    except FatalConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    cancel = threading.Event()
    with _interrupt_handler(cancel):
        try:
            results = scan(config, cancel)
        except (FetchError, FatalConfigurationError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(EXIT_INTERRUPT if cancel.is_set() else EXIT_ERROR)

    _emit(results, config)

    if cancel.is_set():
        sys.exit(EXIT_INTERRUPT)
    if any(r.findings for r in results):
        sys.exit(EXIT_FINDINGS)
    sys.exit(EXIT_OK)


def _scan_options(func):
    func = click.option("--config", "config_path", default=None, help="Path to .pipeaudit.yml config file.")(func)
    func = click.option("--threads", type=int, default=None, help="Repositories scanned in parallel (default 2).")(func)
    func = click.option("--severity", "min_severity", type=click.Choice(SEVERITIES), default=None, help="Minimum severity to report (overrides config file).")(func)
    func = click.option("--format", "output_format", type=click.Choice(FORMATS), default="pretty", help="Output format.")(func)
    return func


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool):
    """pipeaudit: find supply-chain weaknesses in CI/CD pipelines."""
    _setup_logging(verbose)


@cli.command("analyze-local")
@click.argument("path")
@_scan_options
def analyze_local(path: str, output_format: str, min_severity: str, threads: int, config_path: str):
    """Scan a repository checked out at PATH."""
    path = os.path.abspath(path)
    if not os.path.isdir(path):
        click.echo(f"Error: '{path}' is not a directory.", err=True)
        sys.exit(EXIT_ERROR)

    def scan(config: Config, cancel: threading.Event) -> list[RepoResult]:
        return [scan_repository(LocalRepository(path), config, cancel)]

    _run(scan, path, output_format, min_severity, threads, config_path)


@cli.command("analyze-repo")
@click.argument("repo")
@click.option("--ref", default=None, help="Branch or tag to clone.")
@click.option("--token", envvar="GH_TOKEN", default=None, help="SCM access token (defaults to $GH_TOKEN).")
@click.option("--scm", type=click.Choice(sorted(SCM_BASE_URLS)), default="github", help="SCM hosting an <org>/<repo> slug.")
@click.option("--scm-base-url", default=None, help="Base URL of a self-hosted SCM instance.")
@_scan_options
def analyze_repo(
    repo: str,
    ref: str,
    token: Optional[str],
    scm: str,
    scm_base_url: Optional[str],
    output_format: str,
    min_severity: str,
    threads: int,
    config_path: str,
):
    """Clone REPO (an <org>/<repo> slug or a clone URL) into a temporary directory and scan it."""
    try:
        url = clone_url(repo, scm, scm_base_url)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="REPO") from e

    def scan(config: Config, cancel: threading.Event) -> list[RepoResult]:
        handle = GitRepository(url, ref=ref, token=token, scm=scm)
        return [scan_repository(handle, config, cancel)]

    _run(scan, None, output_format, min_severity, threads, config_path)


@cli.command("analyze-org")
@click.argument("path")
@_scan_options
def analyze_org(path: str, output_format: str, min_severity: str, threads: int, config_path: str):
    """Scan every repository directory under PATH."""
    path = os.path.abspath(path)
    if not os.path.isdir(path):
        click.echo(f"Error: '{path}' is not a directory.", err=True)
        sys.exit(EXIT_ERROR)

    def scan(config: Config, cancel: threading.Event) -> list[RepoResult]:
        return scan_organization(LocalOrganization(path), config.threads, config, cancel)

    _run(scan, path, output_format, min_severity, threads, config_path)


if __name__ == "__main__":
    cli()

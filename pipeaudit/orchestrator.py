"""
Scan orchestrator: fetch -> normalize -> evaluate -> aggregate.

scan_repository runs one repository end to end on the calling thread.
scan_organization fans repositories out over a bounded thread pool; a
failure in one repository is recorded in its RepoResult and never stops
the others. Temporary clone directories are always removed.
"""

import concurrent.futures
import fnmatch
import logging
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from pipeaudit.aggregator import aggregate, apply_config
from pipeaudit.config import DEFAULT_THREADS, Config
from pipeaudit.errors import FatalConfigurationError, FetchError, PipeauditError
from pipeaudit.model import ErrorKind, NormalizationError, PipelineDocument
from pipeaudit.parser import normalize_all
from pipeaudit.providers import DocumentReadError, OrganizationHandle, RepositoryHandle, check_cancelled
from pipeaudit.rules import Finding, Rule, evaluate_all

logger = logging.getLogger(__name__)

TEMP_DIR_PREFIX = "pipeaudit-"


@dataclass
class RepoResult:
    """Everything one repository scan produced."""
    repository: str
    findings: list[Finding] = field(default_factory=list)
    errors: list[NormalizationError] = field(default_factory=list)
    pipelines: int = 0
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _collect_documents(
    handle: RepositoryHandle,
    workdir: Optional[str],
    cancel: threading.Event,
    config: Config,
) -> tuple[list[PipelineDocument], list[NormalizationError]]:
    documents, errors = [], []
    for item in handle.documents(workdir, cancel):
        if any(fnmatch.fnmatch(item.path, pat) for pat in config.exclude):
            logger.info("Excluded %s via config", item.path)
            continue
        if isinstance(item, DocumentReadError):
            errors.append(NormalizationError(
                kind=ErrorKind.UNPARSABLE_DOCUMENT,
                file_path=item.path,
                message=f"could not read file: {item.message}",
            ))
            continue
        documents.append(item)
    return documents, errors


def _remove_workdir(workdir: str) -> None:
    try:
        shutil.rmtree(workdir)
        logger.debug("Removed temporary directory %s", workdir)
    except OSError as e:
        logger.error("Error cleaning up %s: %s", workdir, e)


def scan_repository(
    handle: RepositoryHandle,
    config: Optional[Config] = None,
    cancel: Optional[threading.Event] = None,
    rules: Optional[Iterable[Rule]] = None,
) -> RepoResult:
    """
    Scan one repository.

    Raises:
        FetchError: If the repository could not be fetched.
        ScanCancelled: If cancel was set before the scan finished.
        FatalConfigurationError: If a document's platform has no normalizer.
    """
    config = config or Config()
    cancel = cancel or threading.Event()
    check_cancelled(cancel, handle.name)

    t0 = time.monotonic()
    workdir = tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX) if handle.needs_clone else None
    try:
        documents, errors = _collect_documents(handle, workdir, cancel, config)
        check_cancelled(cancel, handle.name)

        pipelines, normalization_errors = normalize_all(documents, getattr(handle, "read_file", None))
        errors.extend(normalization_errors)
        for err in errors:
            logger.warning("%s: %s", handle.name, err)
        check_cancelled(cancel, handle.name)

        findings = apply_config(aggregate(evaluate_all(pipelines, rules)), config)
    finally:
        if workdir is not None:
            _remove_workdir(workdir)

    logger.info(
        "Scanned %s: %d pipeline(s), %d finding(s), %d error(s) in %.1fms",
        handle.name, len(pipelines), len(findings), len(errors),
        (time.monotonic() - t0) * 1000,
    )
    return RepoResult(repository=handle.name, findings=findings, errors=errors, pipelines=len(pipelines))


def _scan_isolated(
    handle: RepositoryHandle,
    config: Config,
    cancel: threading.Event,
    rules: Optional[list[Rule]],
) -> RepoResult:
    """scan_repository with every non-fatal failure folded into the result."""
    try:
        return scan_repository(handle, config, cancel, rules)
    except FatalConfigurationError:
        raise
    except PipeauditError as e:
        logger.error("Error processing repo %s: %s", handle.name, e)
        return RepoResult(repository=handle.name, error=e)
    except Exception as e:  # noqa: BLE001  # per-repository isolation boundary
        logger.exception("Unexpected error processing repo %s", handle.name)
        return RepoResult(repository=handle.name, error=e)


def scan_organization(
    org: OrganizationHandle,
    parallelism: int = DEFAULT_THREADS,
    config: Optional[Config] = None,
    cancel: Optional[threading.Event] = None,
    rules: Optional[Iterable[Rule]] = None,
) -> list[RepoResult]:
    """
    Scan every repository of an organization with at most `parallelism`
    repositories in flight.

    Once cancel is set no further repository is dispatched; repositories
    already running stop at their next fetch and report ScanCancelled.

    Returns:
        One RepoResult per dispatched repository, sorted by name.

    Raises:
        FetchError: If the organization's repository list cannot be fetched.
        FatalConfigurationError: On invalid parallelism or a fatal scan error.
    """
    if parallelism < 1:
        raise FatalConfigurationError(f"parallelism must be at least 1, got {parallelism}")
    config = config or Config()
    cancel = cancel or threading.Event()
    rules = list(rules) if rules is not None else None

    results: list[RepoResult] = []
    results_lock = threading.Lock()

    def work(handle: RepositoryHandle) -> None:
        result = _scan_isolated(handle, config, cancel, rules)
        with results_lock:
            results.append(result)

    logger.info("Scanning organization %s with %d thread(s)", org.name, parallelism)
    t0 = time.monotonic()
    in_flight: set[concurrent.futures.Future] = set()
    with concurrent.futures.ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="pipeaudit") as executor:
        try:
            for handle in org.repositories(cancel):
                if len(in_flight) >= parallelism:
                    done, in_flight = concurrent.futures.wait(
                        in_flight, return_when=concurrent.futures.FIRST_COMPLETED,
                    )
                    for future in done:
                        future.result()
                if cancel.is_set():
                    logger.warning("Scan of %s cancelled, not dispatching further repositories", org.name)
                    break
                in_flight.add(executor.submit(work, handle))
        except FetchError:
            if not cancel.is_set():
                raise
        finally:
            for future in concurrent.futures.as_completed(in_flight):
                future.result()

    failed = sum(1 for r in results if not r.ok)
    logger.info(
        "Scanned %d repositories of %s (%d failed) in %.1fs",
        len(results), org.name, failed, time.monotonic() - t0,
    )
    return sorted(results, key=lambda r: r.repository)

"""
Helpers shared by the GitHub and GitLab normalizers.
"""

import logging
from typing import Any, Callable, Optional

from pipeaudit.model import ErrorKind, Job, NormalizationError, PipelineDocument

logger = logging.getLogger(__name__)

# Looks up another file of the same repository by repository-relative path.
Resolver = Callable[[str], Optional[PipelineDocument]]

# Deepest chain of reusable workflows / includes that gets inlined.
MAX_RESOLUTION_DEPTH = 5


def record(
    errors: list[NormalizationError],
    kind: ErrorKind,
    file_path: str,
    message: str,
    location: str = "",
) -> None:
    err = NormalizationError(kind=kind, file_path=file_path, message=message, location=location)
    logger.debug("Normalization error: %s", err)
    errors.append(err)


def as_str_list(value: Any) -> list[str]:
    """Normalize a scalar-or-list field into a list of strings."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and not isinstance(v, dict)]
    if isinstance(value, dict):
        return []
    return [str(value)]


def deep_merge(base: dict[Any, Any], override: dict[Any, Any]) -> dict[Any, Any]:
    """Merge two loaded mappings; values in override win, mappings merge."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_needs(jobs: dict[str, Job], file_path: str, errors: list[NormalizationError]) -> None:
    """Drop unknown and cycle-closing 'needs' edges so the job graph is a DAG."""
    for job in jobs.values():
        known = []
        for dep in job.needs:
            if dep in jobs:
                known.append(dep)
            else:
                record(
                    errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, file_path,
                    f"job '{job.name}' needs unknown job '{dep}'",
                    f"jobs.{job.name}.needs",
                )
        job.needs = known

    visiting, done = set(), set()

    def visit(name: str) -> None:
        visiting.add(name)
        kept = []
        for dep in jobs[name].needs:
            if dep in visiting:
                record(
                    errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, file_path,
                    f"dependency cycle: '{name}' needs '{dep}'",
                    f"jobs.{name}.needs",
                )
                continue
            if dep not in done:
                visit(dep)
            kept.append(dep)
        jobs[name].needs = kept
        visiting.discard(name)
        done.add(name)

    for job in sorted(jobs.values(), key=lambda j: j.index):
        if job.name not in done:
            visit(job.name)

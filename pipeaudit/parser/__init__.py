"""
Platform normalizers: raw pipeline documents -> canonical Pipeline model.
"""

import logging
from typing import Callable, Iterable, Optional

from pipeaudit.errors import FatalConfigurationError
from pipeaudit.model import NormalizationError, Pipeline, PipelineDocument, Platform
from pipeaudit.parser.common import Resolver
from pipeaudit.parser.github_actions import normalize_github
from pipeaudit.parser.gitlab_ci import normalize_gitlab

logger = logging.getLogger(__name__)

Normalizer = Callable[[str, bytes, Optional[Resolver]], tuple[Pipeline, list[NormalizationError]]]

NORMALIZERS: dict[Platform, Normalizer] = {
    Platform.GITHUB: normalize_github,
    Platform.GITLAB: normalize_gitlab,
}


def normalize(
    document: PipelineDocument,
    resolver: Optional[Resolver] = None,
) -> tuple[Pipeline, list[NormalizationError]]:
    """
    Normalize one raw document with the normalizer for its platform.

    Raises:
        FatalConfigurationError: If no normalizer exists for the platform.
    """
    normalizer = NORMALIZERS.get(document.platform)
    if normalizer is None:
        raise FatalConfigurationError(f"No normalizer for platform {document.platform!r}")
    return normalizer(document.path, document.content, resolver)


def normalize_all(
    documents: Iterable[PipelineDocument],
    fallback: Optional[Resolver] = None,
) -> tuple[list[Pipeline], list[NormalizationError]]:
    """
    Normalize every document of one repository, sorted by path.

    Local references are resolved against the other documents first,
    then through the optional fallback resolver.
    """
    documents = sorted(documents, key=lambda d: d.path)
    by_path = {d.path: d for d in documents}

    def resolve(path: str) -> Optional[PipelineDocument]:
        if path in by_path:
            return by_path[path]
        return fallback(path) if fallback else None

    pipelines, errors = [], []
    for document in documents:
        pipeline, doc_errors = normalize(document, resolve)
        pipelines.append(pipeline)
        # An inlined file is also normalized on its own; report its errors once.
        errors.extend(e for e in doc_errors if e not in errors)
    logger.info("Normalized %d document(s), %d error(s)", len(pipelines), len(errors))
    return pipelines, errors


__all__ = ["normalize", "normalize_all", "normalize_github", "normalize_gitlab", "Resolver"]

"""
Repository providers: where pipeline documents come from.

The orchestrator only relies on the two protocols below. A provider
raises FetchError when a whole repository is unavailable and yields a
DocumentReadError for a single file it could not read.
"""

import threading
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Protocol, Union

from pipeaudit.errors import ScanCancelled
from pipeaudit.model import PipelineDocument, Platform


@dataclass(frozen=True)
class DocumentReadError:
    """A pipeline file that exists but could not be read."""
    platform: Platform
    path: str
    message: str


FetchedItem = Union[PipelineDocument, DocumentReadError]


class RepositoryHandle(Protocol):
    name: str
    needs_clone: bool

    def documents(self, workdir: Optional[str], cancel: threading.Event) -> Iterable[FetchedItem]:
        ...


class OrganizationHandle(Protocol):
    name: str

    def repositories(self, cancel: threading.Event) -> Iterator[RepositoryHandle]:
        ...


def check_cancelled(cancel: Optional[threading.Event], repository: str = "") -> None:
    """Raise ScanCancelled if cancellation was requested."""
    if cancel is not None and cancel.is_set():
        raise ScanCancelled("scan cancelled", repository=repository)


__all__ = [
    "DocumentReadError",
    "FetchedItem",
    "OrganizationHandle",
    "RepositoryHandle",
    "check_cancelled",
]

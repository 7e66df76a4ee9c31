"""
Exception types shared across pipeaudit.

Errors local to one document or one rule are not exceptions: they are
recorded as NormalizationError entries or rule_evaluation_error findings.
"""


class PipeauditError(Exception):
    """Base class for all pipeaudit errors."""


class FetchError(PipeauditError):
    """A repository (or its organization listing) could not be fetched."""

    def __init__(self, message: str, repository: str = ""):
        super().__init__(message)
        self.repository = repository


class ScanCancelled(FetchError):
    """The scan was cancelled before the repository finished."""


class FatalConfigurationError(PipeauditError):
    """The run cannot produce meaningful results (e.g. unknown platform)."""

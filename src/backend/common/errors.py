from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for failures raised inside the extraction/processing core."""

    retryable: bool = False

    def __init__(self, message: str, *, detail: str | None = None):
        super().__init__(message)
        self.detail = detail

    def describe(self) -> str:
        if self.detail:
            return f"{self}: {self.detail}"
        return str(self)


class ConfigurationError(PipelineError):
    """Campaign is missing a connection descriptor, rule set, query or ledger linkage."""


class SourceUnavailable(PipelineError):
    retryable = True


class TransformError(PipelineError, ValueError):
    """A single source row could not be mapped; isolated to that row."""


class AccrualError(PipelineError):
    retryable = True


class PersistenceError(PipelineError):
    """Job/record state could not be read or written; fatal to the current run."""


class InvalidJobTransition(PipelineError):
    pass

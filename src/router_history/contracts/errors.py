"""Exception taxonomy for the ingestion pipeline.

Every error raised across a subsystem boundary derives from
RouterHistoryError so callers can separate pipeline conditions from
programming errors. The classes map onto four handling policies:

- transient: SourceUnavailableError (retried with backoff)
- data quality: ClassificationError and subclasses (quarantined, batch continues)
- concurrency control: StaleCheckpointError (reload, never blind-retry)
- fatal: StoreUnavailableError, SourceUnhealthyError, ConfigurationError
"""

from __future__ import annotations

from typing import Any


class RouterHistoryError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(RouterHistoryError):
    """Raised when settings are missing or inconsistent."""


class SourceUnavailableError(RouterHistoryError):
    """Transport failure talking to the chain source.

    Transient by definition. The caller retries with backoff.

    Attributes:
        method: Upstream operation that failed (e.g. "getBlock")
        retryable: False when the upstream answered with a permanent error
    """

    def __init__(self, message: str, *, method: str | None = None, retryable: bool = True) -> None:
        self.method = method
        self.retryable = retryable
        super().__init__(message)


class SourceUnhealthyError(RouterHistoryError):
    """Raised when the chain source stays unavailable past the retry cap.

    This is the pipeline-health signal: the process stops retrying and
    expects operator intervention.
    """

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Chain source unavailable after {attempts} attempts: {last_error}")


class StoreUnavailableError(RouterHistoryError):
    """Raised when the history store cannot be reached past the retry cap."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"History store unavailable after {attempts} attempts: {last_error}")


class StaleCheckpointError(RouterHistoryError):
    """Raised when a checkpoint advance would regress or race another writer.

    The caller must reload the authoritative checkpoint and resume from it.
    Retrying the same advance is always wrong.
    """

    def __init__(self, pipeline_name: str, attempted: int, stored: int | None, expected: int | None = None) -> None:
        self.pipeline_name = pipeline_name
        self.attempted = attempted
        self.stored = stored
        self.expected = expected
        detail = f"stored={stored}"
        if expected is not None:
            detail += f", expected={expected}"
        super().__init__(f"Stale checkpoint advance for '{pipeline_name}' to {attempted} ({detail})")


class ClassificationError(RouterHistoryError):
    """Base for data-quality failures while classifying a raw transaction.

    Attributes:
        signature: Signature of the offending transaction (may be empty)
        slot: Slot the transaction was delivered in
        details: Extra context recorded alongside the quarantine entry
    """

    def __init__(self, message: str, *, signature: str, slot: int, details: dict[str, Any] | None = None) -> None:
        self.signature = signature
        self.slot = slot
        self.details = details or {}
        super().__init__(message)


class UnknownVersionError(ClassificationError):
    """Raised when no recognized router version marker is present."""


class MalformedTransactionError(ClassificationError):
    """Raised when a raw transaction lacks fields required for a record."""

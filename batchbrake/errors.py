from __future__ import annotations

from typing import Optional


class BatchbrakeError(RuntimeError):
    """Base class for errors raised by the conversion queue."""


class DuplicateJobError(BatchbrakeError):
    """Raised when a file is already present in the queue."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Already queued: {path}")
        self.path = path


class QueueBusyError(BatchbrakeError):
    """Raised when a queue mutation would touch a job that is converting."""


class InvalidTransitionError(BatchbrakeError):
    """Raised when a job is moved to a status its current status cannot reach."""


class ConverterUnavailableError(BatchbrakeError):
    """Raised by ``start`` when the external converter cannot be used."""


class ConversionFailedError(BatchbrakeError):
    def __init__(self, reason: str, *, exit_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.exit_code = exit_code


class ConversionCancelledError(BatchbrakeError):
    """Raised by a converter once it has observed the cancel signal."""


class PersistenceError(BatchbrakeError):
    """Raised when the saved session exists but cannot be read."""


class SourceDeletionError(BatchbrakeError):
    """Raised when a converted source file cannot be removed."""

"""Typed errors raised by the engine.

Control operations surface one of three failures to the API layer:
``JobNotFoundError``, ``InvalidJobStateError`` and ``EngineInternalError``.
Item-level generation failures are tagged transient or permanent so the
worker retry loop knows whether another attempt can help.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Retry classification for generation failures."""

    TRANSIENT = "transient"  # Network, 5xx, rate limit: retry with backoff
    PERMANENT = "permanent"  # Credentials, quota, billing: fail immediately


class EngineError(Exception):
    """Base class for all engine errors."""


class JobNotFoundError(EngineError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(EngineError):
    """Operation is not allowed in the job's current status."""

    def __init__(self, job_id: str, status: str, operation: str):
        super().__init__(f"Cannot {operation} job {job_id} in status '{status}'")
        self.job_id = job_id
        self.status = status
        self.operation = operation


class EngineInternalError(EngineError):
    """Unexpected store or queue failure while running a control operation."""


class MalformedChunkError(EngineError):
    """Queue entry payload does not deserialize into a chunk message."""


class SubscriberLimitError(EngineError):
    def __init__(self, job_id: str, limit: int):
        super().__init__(f"Subscriber limit ({limit}) reached for job {job_id}")
        self.job_id = job_id
        self.limit = limit


class GenerationError(Exception):
    """Failure reported by a content generator.

    Args:
        message: Human readable error
        kind: Whether retrying can succeed
        status_code: HTTP status from the backend, if any
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_permanent(self) -> bool:
        return self.kind == ErrorKind.PERMANENT


def classify_error(exc: BaseException) -> ErrorKind:
    """Return the retry classification of an exception.

    Anything that is not a tagged ``GenerationError`` is treated as transient.
    """
    if isinstance(exc, GenerationError):
        return exc.kind
    return ErrorKind.TRANSIENT

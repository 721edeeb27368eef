"""
Error taxonomy for the pipeline orchestration engine.

Stage errors carry an ErrorKind so the retry policy can decide whether a
failure is transient or terminal without inspecting messages.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Classification of a stage failure."""

    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    CLIENT = "client"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.TIMEOUT})


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, job_id: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id
        self.code = code

    def __str__(self) -> str:
        return self.message


class ConfigError(PipelineError):
    """Invalid or missing configuration."""


class RetryableError(PipelineError):
    """Generic retryable failure (database, cache, network)."""


class LedgerStateError(PipelineError):
    """A ledger entry was resolved in a way that contradicts its state."""


class StageError(PipelineError):
    """Failure reported by a stage executor."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        code: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message, job_id=job_id, code=code)
        if kind is not None:
            self.kind = kind
        self.stage = stage

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def details(self) -> Dict[str, Any]:
        return {}


class TransientNetworkError(StageError):
    """Timeout, 5xx-equivalent or connection failure from a remote stage."""

    kind = ErrorKind.TRANSIENT


class StageTimeoutError(StageError):
    """Stage exceeded its configured timeout."""

    kind = ErrorKind.TIMEOUT


class ValidationError(StageError):
    """Terminal input/output validation failure, never retried."""

    kind = ErrorKind.VALIDATION


class InsufficientCreditsError(StageError):
    """Account balance cannot cover the attempted reservation."""

    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(
        self,
        message: str,
        attempted: Decimal,
        available: Decimal,
        account_id: Optional[str] = None,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message, job_id=job_id, code="INSUFFICIENT_CREDITS", stage=stage)
        self.attempted = Decimal(str(attempted))
        self.available = Decimal(str(available))
        self.account_id = account_id

    def details(self) -> Dict[str, Any]:
        return {
            "attempted": str(self.attempted),
            "available": str(self.available),
            "account_id": self.account_id,
        }


class JobCancelledError(PipelineError):
    """Caller-initiated cancellation. Surfaces as job status 'cancelled', not a failure."""

    def __init__(self, message: str = "Job cancelled", job_id: Optional[str] = None):
        super().__init__(message, job_id=job_id, code="CANCELLED")


class ProgressUnavailable(PipelineError):
    """Non-fatal: neither push nor poll progress source is currently reachable."""

    def __init__(self, message: str, job_id: Optional[str] = None, push_failures: int = 0, poll_failures: int = 0):
        super().__init__(message, job_id=job_id, code="PROGRESS_UNAVAILABLE")
        self.push_failures = push_failures
        self.poll_failures = poll_failures

"""
Job-related data models.

Defines Job and StageResult models for tracking pipeline execution.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_serializer

from shared.errors import PipelineError, StageError, ErrorKind


JobStatus = Literal["pending", "running", "succeeded", "failed", "cancelled"]
StageStatus = Literal["pending", "running", "succeeded", "failed"]

TERMINAL_JOB_STATUSES = frozenset({"succeeded", "failed", "cancelled"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorInfo(BaseModel):
    """Serializable description of an error attached to a stage or job."""

    kind: str
    message: str
    code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, error: BaseException, kind: Optional[ErrorKind] = None) -> "ErrorInfo":
        """Build from an exception, using its ErrorKind when it is a StageError."""
        if kind is None:
            kind = error.kind if isinstance(error, StageError) else ErrorKind.UNKNOWN
        code = error.code if isinstance(error, PipelineError) else None
        details = error.details() if isinstance(error, StageError) else {}
        return cls(
            kind=kind.value,
            message=str(error) or type(error).__name__,
            code=code,
            details=details,
        )


class StageResult(BaseModel):
    """Outcome of one stage of a job."""

    stage: str
    status: StageStatus = "pending"
    attempt: int = Field(default=1, ge=1)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    output: Optional[Any] = Field(default=None, description="Opaque output passed to the next stage")
    error: Optional[ErrorInfo] = None

    @field_serializer("started_at", "finished_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        return value.isoformat() if value else None


class Job(BaseModel):
    """One end-to-end run of an ordered stage list."""

    id: str
    account_id: str
    stages: List[str]
    status: JobStatus = "pending"
    current_stage_index: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    results: List[StageResult] = Field(default_factory=list, description="Terminal stage results, append-only")
    active_stage: Optional[StageResult] = Field(default=None, description="Stage attempt currently in flight")
    error: Optional[ErrorInfo] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def current_stage(self) -> Optional[str]:
        if self.current_stage_index < len(self.stages):
            return self.stages[self.current_stage_index]
        return None

    def result_for(self, stage: str) -> Optional[StageResult]:
        for result in self.results:
            if result.stage == stage:
                return result
        return None

    def snapshot(self) -> "Job":
        """Deep copy safe to hand to callers."""
        return self.model_copy(deep=True)

    @field_serializer("created_at", "started_at", "finished_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        return value.isoformat() if value else None

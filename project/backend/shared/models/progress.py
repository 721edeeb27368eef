"""
Progress data models.

ProgressEvent is the normalized shape of a progress update regardless of
whether it arrived over the push stream or from a poll snapshot.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional
from pydantic import BaseModel, Field, field_serializer

from shared.models.job import utcnow


ProgressSource = Literal["push", "poll"]


class ProgressState(str, Enum):
    """Connection state of a progress subscription."""

    CONNECTING = "connecting"
    STREAMING = "streaming"
    POLLING = "polling"
    DEGRADED = "degraded"


class ProgressEvent(BaseModel):
    """A single progress update for a job."""

    job_id: str
    stage: str = ""
    percent: float = Field(default=0.0, ge=0, le=100)
    message: str = ""
    eta_seconds: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)
    source: ProgressSource
    attempt: int = Field(default=1, ge=1)
    done: bool = False
    error: Optional[str] = None
    per_scene: Dict[str, float] = Field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.done or self.error is not None

    @classmethod
    def from_payload(cls, job_id: str, payload: Mapping[str, Any], source: ProgressSource) -> "ProgressEvent":
        """
        Normalize a raw push/poll payload.

        Accepts both the camelCase wire shape ({stage, progress, message,
        etaSeconds, done, error, perScene}) and snake_case keys. Percent is
        clamped to [0, 100].

        Raises:
            TypeError: If the payload is not a mapping
            ValueError: If a field has the wrong shape
        """
        if not isinstance(payload, Mapping):
            raise TypeError(f"Progress payload must be a mapping, got {type(payload).__name__}")

        percent = payload.get("percent", payload.get("progress"))
        eta = payload.get("eta_seconds", payload.get("etaSeconds", payload.get("estimated_remaining")))
        per_scene = payload.get("per_scene", payload.get("perScene")) or {}
        if not isinstance(per_scene, Mapping):
            raise ValueError(f"perScene must map scene to percent, got {type(per_scene).__name__}")
        error = payload.get("error")

        return cls(
            job_id=str(payload.get("job_id", payload.get("jobId")) or job_id),
            stage=str(payload.get("stage") or ""),
            percent=max(0.0, min(100.0, float(percent or 0))),
            message=str(payload.get("message") or ""),
            eta_seconds=float(eta) if eta is not None else None,
            source=source,
            attempt=int(payload.get("attempt") or 1),
            done=bool(payload.get("done", False)),
            error=str(error) if error else None,
            per_scene={str(k): float(v) for k, v in per_scene.items()},
        )

    @field_serializer("timestamp")
    def serialize_datetime(self, value: datetime) -> str:
        """Serialize datetime to ISO format string."""
        return value.isoformat()

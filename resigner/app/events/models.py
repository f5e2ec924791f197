from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from resigner.app.schemas.jobs import JobState


# ----------------------------------------------------------------------
# Event Types (Finite and Versioned)
# ----------------------------------------------------------------------
class JobEventType(str, Enum):
    """
    Progression events emitted during a signing job.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve observational semantics.
    """

    STATE_CHANGED = "state_changed"
    TOOL_COMPLETED = "tool_completed"
    RETRY_SCHEDULED = "retry_scheduled"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"


TERMINAL_EVENT_TYPES = frozenset(
    {JobEventType.JOB_COMPLETED, JobEventType.JOB_FAILED}
)


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class JobEvent(BaseModel):
    """
    An immutable observation of a signing job's progress.

    Events are strictly observational and never drive control flow.
    """

    event_id: UUID = Field(default_factory=uuid4)
    job_id: str
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: JobEventType
    state: Optional[JobState] = None

    # Optional contextual metadata (tool, returncode, attempt, ...)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    def to_sse_payload(self) -> str:
        return f"event: {self.event_type.value}\ndata: {self.model_dump_json()}\n\n"

"""
Signing job schemas.

SigningJob is the tracker-owned record of one submission. JobStatusView
is the read-only projection returned to polling callers.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


MAX_ATTEMPTS = 2

# Job ids name a directory under the work root; no separators or dots.
JOB_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------


class JobState(str, Enum):
    """
    Pipeline states.

    RECEIVED is initial; DONE and FAILED are terminal.
    """

    RECEIVED = "received"
    VALIDATING = "validating"
    REPAIRING = "repairing"
    TOOL_INVOKING = "tool_invoking"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------


class SigningJob(BaseModel):
    job_id: str

    state: JobState = JobState.RECEIVED

    attempts: int = Field(0, ge=0, le=MAX_ATTEMPTS)

    repaired: bool = Field(
        False,
        description="Repair has been applied at least once for this job",
    )

    diagnostics: List[str] = Field(default_factory=list)

    package_identifier: Optional[str] = None

    output_location: Optional[str] = Field(
        None,
        description="Signed artifact path, set only on success",
    )

    output_digest: Optional[str] = None

    error: Optional[str] = Field(
        None,
        description="Last captured diagnostic when the job failed",
    )

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(validate_assignment=True)


# ---------------------------------------------------------------------------
# External projections
# ---------------------------------------------------------------------------


class JobStatusView(BaseModel):
    job_id: str
    state: JobState
    attempts: int
    diagnostics: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    download_location: Optional[str] = None
    output_digest: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_job(cls, job: SigningJob) -> "JobStatusView":
        return cls(
            job_id=job.job_id,
            state=job.state,
            attempts=job.attempts,
            diagnostics=list(job.diagnostics),
            error=job.error,
            download_location=(
                f"/jobs/{job.job_id}/download"
                if job.state is JobState.DONE
                else None
            ),
            output_digest=job.output_digest,
        )


class SubmissionReceipt(BaseModel):
    job_id: str

    model_config = ConfigDict(frozen=True)

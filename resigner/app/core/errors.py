"""
Error taxonomy for the validation, repair and signing pipeline.

Recoverability is a property of the error type, not of the call site:

    UploadError           rejected before a job exists
    ValidationError       recoverable, triggers repair
    RepairError           fatal for the job
    ArchiveLimitError     fatal for the job (decompression bound exceeded)
    ToolInvocationError   recoverable once (retry after repair)
    VerificationError     same retry semantics as ToolInvocationError

Failures are reported on the job they belong to. None of these errors
may cross a job boundary.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from resigner.app.schemas.tools import ToolResult


class ResignerError(RuntimeError):
    """Base class for all service errors."""


class UploadError(ResignerError):
    """Raised when no usable artifact was supplied with a submission."""


class ValidationError(ResignerError):
    """Raised when an archive is unparseable or lacks mandatory entries."""

    def __init__(self, missing_or_empty: Iterable[str]) -> None:
        self.missing_or_empty = frozenset(missing_or_empty)
        super().__init__(
            "Archive is missing or has empty mandatory entries: "
            + ", ".join(sorted(self.missing_or_empty))
        )


class RepairError(ResignerError):
    """Raised when a usable replacement archive cannot be synthesized."""


class ArchiveLimitError(RepairError):
    """Raised when an archive would inflate beyond the configured limit."""


class ToolInvocationError(ResignerError):
    """Raised when an external align/sign process fails."""

    def __init__(self, result: "ToolResult") -> None:
        self.result = result
        super().__init__(
            f"{result.tool} failed: {result.diagnostic}"
        )

    @property
    def diagnostic(self) -> str:
        return self.result.diagnostic


class VerificationError(ToolInvocationError):
    """Raised when the signed artifact fails post-signing verification."""


class JobNotFoundError(KeyError):
    """Raised when a job id is unknown to the tracker."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(job_id)

    def __str__(self) -> str:
        return f"Job '{self.job_id}' not found."


class JobNotReadyError(ResignerError):
    """Raised when retrieving the output of a job that is not done."""

"""
Result object for external tool invocations.

A ToolResult is the only thing the pipeline learns about an external
process: how it was called, how it ended, and what it printed.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolResult(BaseModel):
    tool: str = Field(..., description="Logical tool name (align, sign, verify)")

    argv: List[str] = Field(
        ...,
        description="Argument vector as executed (contains no secrets)",
    )

    returncode: Optional[int] = Field(
        None,
        description="Exit status; None if the process never ran to completion",
    )

    stdout: str = ""
    stderr: str = ""

    timed_out: bool = False

    duration_seconds: float = 0.0

    model_config = ConfigDict(frozen=True)

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def diagnostic(self) -> str:
        """
        Human-readable outcome: stderr when present, else stdout, else
        a synthesized status line.
        """
        text = self.stderr.strip() or self.stdout.strip()
        if text:
            return text
        if self.timed_out:
            return f"{self.tool} timed out"
        if self.returncode is None:
            return f"{self.tool} could not be started"
        return f"{self.tool} exited with status {self.returncode}"

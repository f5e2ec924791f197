"""
Per-job working storage.

Every job owns exactly one directory under the configured work root.
Nothing outside that directory is ever read, written or removed on the
job's behalf, so a crash in one job cannot touch another job's files.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

from resigner.app.schemas.jobs import JOB_ID_RE

logger = logging.getLogger("resigner.workspace")


class JobWorkspace:
    """Isolated working directory holding one job's intermediate files."""

    INPUT_NAME = "input.apk"
    ALIGNED_NAME = "aligned.apk"
    SIGNED_NAME = "signed.apk"

    def __init__(self, root: Path) -> None:
        self.root = root

    @classmethod
    def create(cls, work_dir: Path, job_id: str) -> "JobWorkspace":
        if not JOB_ID_RE.fullmatch(job_id):
            raise ValueError(f"{job_id!r} is not a valid job id.")
        work_dir.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=f"job-{job_id}-", dir=work_dir))
        return cls(root)

    @property
    def input_path(self) -> Path:
        return self.root / self.INPUT_NAME

    @property
    def aligned_path(self) -> Path:
        return self.root / self.ALIGNED_NAME

    @property
    def signed_path(self) -> Path:
        return self.root / self.SIGNED_NAME

    def write_input(self, data: bytes) -> Path:
        self.input_path.write_bytes(data)
        return self.input_path

    def discard_outputs(self) -> None:
        """Remove aligned/signed outputs left behind by a failed attempt."""
        for path in (self.aligned_path, self.signed_path):
            path.unlink(missing_ok=True)
        # apksigner writes the v4 signature next to the signed output
        self.signed_path.with_name(self.SIGNED_NAME + ".idsig").unlink(
            missing_ok=True
        )

    def owns(self, path: Path) -> bool:
        return path.resolve().is_relative_to(self.root.resolve())

    def cleanup(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)
        logger.debug("workspace_removed", extra={"path": str(self.root)})

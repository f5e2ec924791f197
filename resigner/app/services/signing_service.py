"""
Signing service facade.

Binds the JobTracker, per-job workspaces and the SigningPipeline into the
submit / poll / retrieve / release operations used by the HTTP layer.

Scheduling:
    submit() returns as soon as the job is recorded and its input is on
    disk. The input write happens off the event loop. The pipeline runs as an independent asyncio task; tool
    processes run on the ToolInvoker's worker pool.

Lifecycle:
    A job and its workspace are released after download, on explicit
    deletion of a terminal job, or by TTL eviction. Running jobs cannot
    be cancelled or deleted.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Set

from resigner.app.core.config import PACKAGE_IDENTIFIER_RE, Settings
from resigner.app.core.errors import (
    JobNotFoundError,
    JobNotReadyError,
    UploadError,
)
from resigner.app.events import MemoryQueueEventEmitter
from resigner.app.pipeline.signing_pipeline import SigningPipeline
from resigner.app.schemas.credentials import SigningCredential
from resigner.app.schemas.jobs import JobState, JobStatusView, SigningJob
from resigner.app.services.tool_invoker import ToolInvoker
from resigner.app.services.workspace import JobWorkspace
from resigner.app.tracker.job_tracker import JobTracker

logger = logging.getLogger("resigner.service")


class SigningService:
    def __init__(
        self,
        *,
        settings: Settings,
        invoker: ToolInvoker,
        credential: Optional[SigningCredential] = None,
        tracker: Optional[JobTracker] = None,
    ) -> None:
        self.settings = settings
        self.invoker = invoker
        self.credential = credential or settings.signing_credential()
        self.tracker = tracker or JobTracker(ttl_seconds=settings.job_ttl_seconds)
        self.pipeline = SigningPipeline(
            tracker=self.tracker,
            invoker=invoker,
            settings=settings,
        )

        self._workspaces: Dict[str, JobWorkspace] = {}
        self._emitters: Dict[str, MemoryQueueEventEmitter] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        data: bytes,
        *,
        package_identifier: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> str:
        """
        Accept an uploaded archive and schedule its pipeline.

        Workspace creation and the input write run on a worker thread so
        a large upload never blocks the event loop.

        Raises:
            UploadError: if no artifact bytes were supplied or the upload
                exceeds the configured size limit.
            ValueError: if package_identifier is not a valid package name,
                or job_id is malformed or already in use.
        """
        if not data:
            raise UploadError("No artifact supplied.")

        if len(data) > self.settings.max_apk_bytes:
            raise UploadError(
                f"Artifact exceeds the {self.settings.max_apk_size_mb}MB limit."
            )

        if package_identifier is not None and not PACKAGE_IDENTIFIER_RE.match(
            package_identifier
        ):
            raise ValueError(
                f"'{package_identifier}' is not a valid package identifier."
            )

        job_id = self.tracker.create(
            package_identifier=package_identifier,
            job_id=job_id,
        )

        workspace: Optional[JobWorkspace] = None
        try:
            workspace = await asyncio.to_thread(
                JobWorkspace.create, self.settings.work_dir, job_id
            )
            await asyncio.to_thread(workspace.write_input, data)
        except OSError:
            self.tracker.delete(job_id)
            if workspace is not None:
                workspace.cleanup()
            raise

        emitter = MemoryQueueEventEmitter()

        with self._lock:
            self._workspaces[job_id] = workspace
            self._emitters[job_id] = emitter

        task = asyncio.get_running_loop().create_task(
            self.pipeline.run(
                job_id=job_id,
                workspace=workspace,
                credential=self.credential,
                emitter=emitter,
            ),
            name=f"signing-job-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)

        logger.info(
            "job_submitted",
            extra={"job_id": job_id, "size": len(data)},
        )
        return job_id

    def _task_finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "job_task_crashed",
                exc_info=exc,
                extra={"task": task.get_name()},
            )

    # ------------------------------------------------------------------
    # Polling and retrieval
    # ------------------------------------------------------------------

    def poll(self, job_id: str) -> JobStatusView:
        return JobStatusView.from_job(self.tracker.get(job_id))

    def events(self, job_id: str) -> MemoryQueueEventEmitter:
        self.tracker.get(job_id)
        with self._lock:
            emitter = self._emitters.get(job_id)
        if emitter is None:
            raise JobNotFoundError(job_id)
        return emitter

    def output_path(self, job_id: str) -> Path:
        """
        Return the verified signed artifact of a DONE job.

        Raises:
            JobNotFoundError: unknown job.
            JobNotReadyError: job has not reached DONE.
        """
        job = self.tracker.get(job_id)

        if job.state is not JobState.DONE or job.output_location is None:
            raise JobNotReadyError(
                f"Job '{job_id}' is {job.state.value}; no signed artifact available."
            )

        path = Path(job.output_location)
        workspace = self._workspace(job_id)
        if workspace is None or not workspace.owns(path):
            raise JobNotReadyError(
                f"Job '{job_id}' output is outside its workspace."
            )
        return path

    def retrieve(self, job_id: str) -> bytes:
        return self.output_path(job_id).read_bytes()

    # ------------------------------------------------------------------
    # Release and eviction
    # ------------------------------------------------------------------

    def release(self, job_id: str) -> SigningJob:
        """
        Remove a terminal job and its working files.

        Raises:
            JobNotFoundError: unknown job.
            JobNotReadyError: job is still running.
        """
        job = self.tracker.get(job_id)
        if not job.state.terminal:
            raise JobNotReadyError(
                f"Job '{job_id}' is still {job.state.value}; it cannot be released."
            )

        removed = self.tracker.delete(job_id)
        self._discard(job_id)
        return removed

    def evict_expired(self) -> int:
        evicted = self.tracker.evict_expired()
        for job in evicted:
            self._discard(job.job_id)
        return len(evicted)

    async def run_eviction_loop(self) -> None:
        """Periodically evict expired jobs until cancelled."""
        interval = self.settings.eviction_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.evict_expired()
            except Exception:
                logger.exception("job_eviction_failed")

    async def drain(self) -> None:
        """Wait for every in-flight job to reach a terminal state."""
        pending = list(self._tasks)
        if pending:
            logger.info("draining_jobs", extra={"count": len(pending)})
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _workspace(self, job_id: str) -> Optional[JobWorkspace]:
        with self._lock:
            return self._workspaces.get(job_id)

    def _discard(self, job_id: str) -> None:
        with self._lock:
            workspace = self._workspaces.pop(job_id, None)
            self._emitters.pop(job_id, None)

        if workspace is not None:
            workspace.cleanup()

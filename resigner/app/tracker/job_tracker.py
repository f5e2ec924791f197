"""
In-process job state container.

The tracker is a pure key-value store for SigningJob records with
concurrency-safe access. It has no knowledge of pipeline logic.

Consistency model:
- get() returns a deep copy; callers never hold a live reference
- update() applies the mutation to a copy under the lock and swaps it in,
  so a polling reader observes either the old or the new record, never a
  partially mutated one
- the lock is a threading.Lock so the tracker may be used from the event
  loop and from worker threads alike
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from resigner.app.core.errors import JobNotFoundError
from resigner.app.schemas.jobs import JOB_ID_RE, SigningJob, utcnow

logger = logging.getLogger("resigner.tracker")

JobMutation = Callable[[SigningJob], None]


class JobTracker:
    def __init__(self, ttl_seconds: Optional[float] = None) -> None:
        self._jobs: Dict[str, SigningJob] = {}
        self._lock = threading.Lock()
        self._ttl = (
            timedelta(seconds=ttl_seconds)
            if ttl_seconds is not None
            else None
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(
        self,
        package_identifier: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> str:
        """
        Record a new job in RECEIVED and return its id.

        Raises:
            ValueError: job_id is malformed or already in use.
        """
        job_id = job_id or uuid.uuid4().hex
        if not JOB_ID_RE.fullmatch(job_id):
            raise ValueError(f"{job_id!r} is not a valid job id.")

        job = SigningJob(job_id=job_id, package_identifier=package_identifier)

        with self._lock:
            if job_id in self._jobs:
                raise ValueError(f"Job '{job_id}' already exists.")
            self._jobs[job_id] = job

        logger.info("job_created", extra={"job_id": job_id})
        return job_id

    def get(self, job_id: str) -> SigningJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.model_copy(deep=True)

    def update(self, job_id: str, mutation: JobMutation) -> SigningJob:
        """
        Atomically apply ``mutation`` to the job and return the new state.

        If the mutation raises, the stored record is left untouched.
        """
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)

            draft = current.model_copy(deep=True)
            mutation(draft)
            draft.updated_at = utcnow()

            self._jobs[job_id] = draft
            return draft.model_copy(deep=True)

    def delete(self, job_id: str) -> SigningJob:
        with self._lock:
            job = self._jobs.pop(job_id, None)

        if job is None:
            raise JobNotFoundError(job_id)

        logger.info("job_deleted", extra={"job_id": job_id})
        return job

    def evict_expired(self, now: Optional[datetime] = None) -> List[SigningJob]:
        """
        Remove terminal jobs whose completion is older than the TTL.

        Jobs still in flight are never evicted.
        """
        if self._ttl is None:
            return []

        cutoff = (now or utcnow()) - self._ttl

        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state.terminal
                and job.finished_at is not None
                and job.finished_at <= cutoff
            ]
            evicted = [self._jobs.pop(job_id) for job_id in expired]

        if evicted:
            logger.info(
                "jobs_evicted",
                extra={"count": len(evicted), "job_ids": expired},
            )
        return evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

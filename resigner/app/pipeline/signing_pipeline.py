"""
Signing pipeline state machine.

Drives one job from RECEIVED to a terminal state:

    RECEIVED -> VALIDATING -> [REPAIRING] -> TOOL_INVOKING -> VERIFYING -> DONE
                                                                        \-> FAILED

Transition rules:
    1. Validate the uploaded archive; a sound archive skips repair.
    2. An unsound archive is repaired and re-validated before any tool runs.
    3. align, then sign, run against the working archive.
    4. verify runs against the signed output.
    5. Success of 3-4 ends in DONE with the output location recorded.
    6. A failure of 3-4 on a job that has not been repaired yet goes back
       to REPAIRING and retries 3-4 exactly once.
    7. Any other failure ends in FAILED with the last diagnostic recorded.

Invariants:
- attempts never exceeds MAX_ATTEMPTS
- run() always leaves the job in DONE or FAILED
- every tool result is appended to the job diagnostics, pass or fail
- a failure is reported on its own job and never raised to the caller

The pipeline owns no state of its own. All job state lives in the
JobTracker and is written through tracker.update().
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from resigner.app.archive.repair import repair_archive
from resigner.app.archive.validator import ensure_sound, validate_archive, validate_path
from resigner.app.core.config import Settings
from resigner.app.core.errors import (
    RepairError,
    ToolInvocationError,
    ValidationError,
    VerificationError,
)
from resigner.app.events import (
    JobEvent,
    JobEventEmitter,
    JobEventType,
    NullEventEmitter,
)
from resigner.app.schemas.archive import ValidationPolicy
from resigner.app.schemas.credentials import SigningCredential
from resigner.app.schemas.jobs import MAX_ATTEMPTS, JobState, SigningJob, utcnow
from resigner.app.schemas.tools import ToolResult
from resigner.app.services.tool_invoker import ToolInvoker
from resigner.app.services.workspace import JobWorkspace
from resigner.app.tracker.job_tracker import JobTracker
from resigner.app.utils.hashing import compute_file_hash

logger = logging.getLogger("resigner.pipeline")


@dataclass
class _RunContext:
    job_id: str
    workspace: JobWorkspace
    credential: SigningCredential
    emitter: JobEventEmitter
    repaired: bool = False


class SigningPipeline:
    def __init__(
        self,
        *,
        tracker: JobTracker,
        invoker: ToolInvoker,
        settings: Settings,
    ) -> None:
        self._tracker = tracker
        self._invoker = invoker
        self._settings = settings
        self._policy = ValidationPolicy(
            check_code_header=settings.check_code_header,
            max_entry_bytes=settings.max_inflated_bytes,
        )
        # The retry pass is stricter than the first pass: a code unit
        # without a dex header is rebuilt even when it is non-empty.
        self._retry_policy = ValidationPolicy(
            check_code_header=True,
            max_entry_bytes=settings.max_inflated_bytes,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        *,
        job_id: str,
        workspace: JobWorkspace,
        credential: SigningCredential,
        emitter: Optional[JobEventEmitter] = None,
    ) -> SigningJob:
        """
        Execute the pipeline for one job and return its terminal record.

        Never raises for job-level failures; they are recorded on the job.
        """
        ctx = _RunContext(
            job_id=job_id,
            workspace=workspace,
            credential=credential,
            emitter=emitter or NullEventEmitter(),
        )

        logger.info("pipeline_started", extra={"job_id": job_id})

        try:
            await self._validate(ctx)
            await self._invoke_with_retry(ctx)
            return await self._complete(ctx)

        except ToolInvocationError as exc:
            return await self._fail(ctx, exc.diagnostic, exc)

        except (RepairError, ValidationError) as exc:
            return await self._fail(ctx, str(exc), exc)

        except Exception as exc:
            logger.exception(
                "pipeline_unexpected_failure",
                extra={"job_id": job_id, "error_type": type(exc).__name__},
            )
            return await self._fail(ctx, f"Internal pipeline error: {exc}", exc)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _validate(self, ctx: _RunContext) -> None:
        await self._transition(ctx, JobState.VALIDATING)

        data = await asyncio.to_thread(ctx.workspace.input_path.read_bytes)
        result = await asyncio.to_thread(validate_archive, data, self._policy)

        if result.sound:
            self._note(ctx, "validation: archive is sound")
            return

        if result.total_loss:
            self._note(ctx, "validation: archive could not be parsed")
        else:
            self._note(
                ctx,
                "validation: missing or empty entries: "
                + ", ".join(sorted(result.missing_or_empty)),
            )

        await self._repair(ctx, result.missing_or_empty, self._policy)

    async def _repair(
        self,
        ctx: _RunContext,
        missing_or_empty: Iterable[str],
        policy: ValidationPolicy,
    ) -> None:
        await self._transition(ctx, JobState.REPAIRING)

        flagged = sorted(missing_or_empty)
        identifier = (
            self._tracker.get(ctx.job_id).package_identifier
            or self._settings.default_package_identifier
        )

        await asyncio.to_thread(
            functools.partial(
                repair_archive,
                ctx.workspace.input_path,
                flagged,
                identifier,
                max_inflated_bytes=self._settings.max_inflated_bytes,
            )
        )

        ctx.repaired = True

        def mark_repaired(job: SigningJob) -> None:
            job.repaired = True
            job.diagnostics.append(
                "repair: synthesized "
                + (", ".join(flagged) if flagged else "no entries")
                + "; container rewritten"
            )

        self._tracker.update(ctx.job_id, mark_repaired)

        result = await asyncio.to_thread(
            validate_path, ctx.workspace.input_path, policy
        )
        try:
            ensure_sound(result)
        except ValidationError as exc:
            raise RepairError(
                f"Repaired archive is still not sound: {exc}"
            ) from exc

    async def _invoke_with_retry(self, ctx: _RunContext) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(MAX_ATTEMPTS),
            wait=wait_exponential(
                multiplier=self._settings.retry_backoff_seconds,
                max=self._settings.retry_backoff_max_seconds,
            ),
            retry=(
                retry_if_exception_type(ToolInvocationError)
                & retry_if_exception(lambda _: not ctx.repaired)
            ),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    await self._repair_for_retry(ctx)
                await self._attempt(ctx)

    async def _repair_for_retry(self, ctx: _RunContext) -> None:
        await self._emit(
            ctx,
            JobEventType.RETRY_SCHEDULED,
            details={"attempt": self._tracker.get(ctx.job_id).attempts + 1},
        )

        result = await asyncio.to_thread(
            validate_path, ctx.workspace.input_path, self._retry_policy
        )
        await self._repair(ctx, result.missing_or_empty, self._retry_policy)

    async def _attempt(self, ctx: _RunContext) -> None:
        def count_attempt(job: SigningJob) -> None:
            job.attempts += 1

        self._tracker.update(ctx.job_id, count_attempt)
        await asyncio.to_thread(ctx.workspace.discard_outputs)

        ws = ctx.workspace

        await self._transition(ctx, JobState.TOOL_INVOKING)

        aligned = await self._invoker.align(ws.input_path, ws.aligned_path)
        await self._record_tool(ctx, aligned)
        if not aligned.succeeded:
            raise ToolInvocationError(aligned)
        await self._require_output(aligned, ws.aligned_path)

        signed = await self._invoker.sign(
            ctx.credential, ws.aligned_path, ws.signed_path
        )
        await self._record_tool(ctx, signed)
        if not signed.succeeded:
            raise ToolInvocationError(signed)
        await self._require_output(signed, ws.signed_path)

        await self._transition(ctx, JobState.VERIFYING)

        verified = await self._invoker.verify(ws.signed_path)
        await self._record_tool(ctx, verified)
        if not verified.succeeded:
            raise VerificationError(verified)

    async def _require_output(self, result: ToolResult, path: Path) -> None:
        """A tool that exits cleanly must also have produced its output."""
        if await asyncio.to_thread(path.is_file):
            return
        raise ToolInvocationError(
            result.model_copy(
                update={
                    "stderr": f"{result.tool} reported success but wrote no output"
                }
            )
        )

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _complete(self, ctx: _RunContext) -> SigningJob:
        signed_path = ctx.workspace.signed_path
        digest = await asyncio.to_thread(compute_file_hash, signed_path)

        def finish(job: SigningJob) -> None:
            job.state = JobState.DONE
            job.output_location = str(signed_path)
            job.output_digest = digest
            job.finished_at = utcnow()

        job = self._tracker.update(ctx.job_id, finish)

        logger.info(
            "pipeline_completed",
            extra={
                "job_id": ctx.job_id,
                "attempts": job.attempts,
                "repaired": job.repaired,
            },
        )
        await self._emit(
            ctx,
            JobEventType.JOB_COMPLETED,
            state=JobState.DONE,
            details={"attempts": job.attempts, "output_digest": digest},
        )
        return job

    async def _fail(
        self,
        ctx: _RunContext,
        diagnostic: str,
        exc: BaseException,
    ) -> SigningJob:
        def fail(job: SigningJob) -> None:
            job.state = JobState.FAILED
            job.error = diagnostic
            job.output_location = None
            job.finished_at = utcnow()

        job = self._tracker.update(ctx.job_id, fail)

        logger.warning(
            "pipeline_failed",
            extra={
                "job_id": ctx.job_id,
                "attempts": job.attempts,
                "error_type": type(exc).__name__,
            },
        )
        await self._emit(
            ctx,
            JobEventType.JOB_FAILED,
            state=JobState.FAILED,
            details={"error": diagnostic},
        )
        return job

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(self, ctx: _RunContext, state: JobState) -> None:
        def set_state(job: SigningJob) -> None:
            job.state = state

        self._tracker.update(ctx.job_id, set_state)
        logger.debug(
            "job_state_changed",
            extra={"job_id": ctx.job_id, "state": state.value},
        )
        await self._emit(ctx, JobEventType.STATE_CHANGED, state=state)

    def _note(self, ctx: _RunContext, message: str) -> None:
        def append(job: SigningJob) -> None:
            job.diagnostics.append(message)

        self._tracker.update(ctx.job_id, append)

    async def _record_tool(self, ctx: _RunContext, result: ToolResult) -> None:
        status = "ok" if result.succeeded else "failed"
        message = f"{result.tool}: {status}"
        if not result.succeeded or result.stderr.strip():
            message += f": {result.diagnostic}"

        self._note(ctx, message)
        await self._emit(
            ctx,
            JobEventType.TOOL_COMPLETED,
            details={
                "tool": result.tool,
                "returncode": result.returncode,
                "timed_out": result.timed_out,
            },
        )

    async def _emit(
        self,
        ctx: _RunContext,
        event_type: JobEventType,
        *,
        state: Optional[JobState] = None,
        details: Optional[dict] = None,
    ) -> None:
        try:
            await ctx.emitter.emit(
                JobEvent(
                    job_id=ctx.job_id,
                    event_type=event_type,
                    state=state,
                    details=details,
                )
            )
        except Exception:
            # Observability must never break the job
            logger.warning(
                "job_event_emit_failed",
                extra={"job_id": ctx.job_id, "event_type": event_type.value},
            )

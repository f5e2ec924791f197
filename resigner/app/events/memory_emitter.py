from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List

from resigner.app.events.emitter import JobEventEmitter
from resigner.app.events.models import TERMINAL_EVENT_TYPES, JobEvent

logger = logging.getLogger("resigner.events")


class MemoryQueueEventEmitter(JobEventEmitter):
    """
    In-memory async event emitter suitable for SSE streaming.

    Properties:
    - single live consumer
    - deterministic ordering
    - closes itself after a terminal job event
    - once drained, later streams replay the history and end
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[JobEvent | None] = asyncio.Queue()
        self._closed = False
        self._drained = False
        self.history: List[JobEvent] = []

    async def emit(self, event: JobEvent) -> None:
        if self._closed:
            return

        self.history.append(event)

        try:
            await self._queue.put(event)
        except Exception:
            logger.warning(
                "event_emit_failed",
                extra={"job_id": event.job_id},
            )
            return

        if event.event_type in TERMINAL_EVENT_TYPES:
            await self.close()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(None)

    async def stream(self) -> AsyncIterator[JobEvent]:
        """Async generator yielding emitted events in order."""
        if self._drained:
            for event in list(self.history):
                yield event
            return

        while True:
            event = await self._queue.get()
            if event is None:
                self._drained = True
                break
            yield event

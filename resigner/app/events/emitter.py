from __future__ import annotations

from typing import Protocol

from resigner.app.events.models import JobEvent


class JobEventEmitter(Protocol):
    """
    Interface for broadcasting job observations.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not fail the job)
    - observational only
    """

    async def emit(self, event: JobEvent) -> None:
        ...


class NullEventEmitter:
    """A safe no-op emitter, used when nobody is listening."""

    async def emit(self, event: JobEvent) -> None:
        return

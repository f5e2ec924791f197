from .models import JobEvent, JobEventType
from .emitter import JobEventEmitter, NullEventEmitter
from .memory_emitter import MemoryQueueEventEmitter

__all__ = [
    "JobEvent",
    "JobEventType",
    "JobEventEmitter",
    "NullEventEmitter",
    "MemoryQueueEventEmitter",
]

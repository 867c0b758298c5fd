"""
Envelope data model for the work queue.
"""
import copy
import time
import uuid
from enum import Enum
from typing import Any, Optional
from dataclasses import dataclass, field


class EnvelopeState(Enum):
    """Lifecycle states of a work queue envelope"""
    READY = 'ready'
    IN_FLIGHT = 'in_flight'
    ACKED = 'acked'                  # terminal
    DEAD_LETTERED = 'dead_lettered'  # terminal

    @property
    def terminal(self) -> bool:
        return self in (EnvelopeState.ACKED, EnvelopeState.DEAD_LETTERED)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Envelope:
    """Unit of work travelling through the work queue"""
    body: Any
    priority: int = 0
    max_retries: int = 3
    id: str = field(default_factory=new_id)
    enqueued_at: float = field(default_factory=time.time)
    attempts: int = 0
    state: EnvelopeState = EnvelopeState.READY

    def snapshot(self) -> 'Envelope':
        """Shallow copy handed to callers; the body object itself is shared"""
        return copy.copy(self)

    def __str__(self) -> str:
        return (f"Envelope(id={self.id}, priority={self.priority}, "
                f"attempts={self.attempts}/{self.max_retries}, state={self.state.value})")


@dataclass
class InFlightRecord:
    """A dequeued envelope and the moment it becomes visible again"""
    envelope: Envelope
    visibility_deadline: float

    def expired(self, now: float) -> bool:
        return now >= self.visibility_deadline


@dataclass
class DeadLetterEntry:
    """An envelope that exhausted its retry budget"""
    envelope: Envelope
    dead_lettered_at: float = field(default_factory=time.time)
    reason: Optional[str] = None


def body_size(body: Any) -> Optional[int]:
    """Size in bytes of a bytes-like or text body; None for opaque objects"""
    if isinstance(body, (bytes, bytearray, memoryview)):
        return len(body)
    if isinstance(body, str):
        return len(body.encode('utf-8'))
    return None

"""
Work queue with competing consumers.

Envelopes are dequeued in priority order (FIFO within a priority), hidden
from other consumers for a visibility timeout, and either acked, nacked back
to the front of their priority tier, or dead-lettered once their retry budget
is spent. Every operation runs under the store's queue lock, which is also the
lock the expiry sweeper takes, so an ack can never race a timeout requeue.
"""
import time
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import Config, get_config
from .envelope import Envelope, EnvelopeState, InFlightRecord, DeadLetterEntry, body_size
from .errors import InvalidStateError, CapacityExceededError
from .store import EnvelopeStore


logger = logging.getLogger(__name__)


class WorkQueue:
    """Work queue engine operating on an EnvelopeStore"""

    def __init__(self,
                 store: EnvelopeStore,
                 config: Optional[Config] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.config = config or get_config()
        self._clock = clock

        self._enqueued = 0
        self._processed = 0
        self._failed = 0

    # Producer side

    def enqueue(self, body: Any, priority: Optional[int] = None, max_retries: Optional[int] = None) -> str:
        """Add a message to the ready queue and return its envelope id"""
        envelope = self._build_envelope(body, priority, max_retries)

        with self.store.queue_lock:
            self._check_capacity(1)
            self.store.ready.push(envelope)
            self._enqueued += 1

        logger.debug(f"Enqueued {envelope}")
        return envelope.id

    def enqueue_batch(self,
                      bodies: Iterable[Any],
                      priority: Optional[int] = None,
                      max_retries: Optional[int] = None) -> List[str]:
        """Enqueue several messages at once; either all are accepted or none"""
        envelopes = [self._build_envelope(body, priority, max_retries) for body in bodies]

        with self.store.queue_lock:
            self._check_capacity(len(envelopes))
            for envelope in envelopes:
                self.store.ready.push(envelope)
            self._enqueued += len(envelopes)

        logger.debug(f"Enqueued batch of {len(envelopes)} envelopes")
        return [envelope.id for envelope in envelopes]

    def _build_envelope(self, body: Any, priority: Optional[int], max_retries: Optional[int]) -> Envelope:
        if priority is None:
            priority = self.config.get('queue.default_priority', 0)
        if max_retries is None:
            max_retries = self.config.get('queue.max_retries', 3)
        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")

        max_size = self.config.get('queue.max_body_size', 0)
        size = body_size(body)
        if max_size and size is not None and size > max_size:
            raise CapacityExceededError(f"Message size {size} exceeds maximum {max_size}", max_size)

        return Envelope(body=body, priority=int(priority), max_retries=int(max_retries))

    def _check_capacity(self, incoming: int) -> None:
        max_depth = self.config.get('queue.max_depth', 0)
        if max_depth and len(self.store.ready) + incoming > max_depth:
            raise CapacityExceededError(
                f"Ready queue depth {len(self.store.ready)} cannot accept {incoming} more (max {max_depth})",
                max_depth
            )

    # Consumer side

    def dequeue(self, visibility_timeout: Optional[float] = None) -> Optional[Envelope]:
        """
        Claim the next envelope, or return None when nothing is ready.
        The returned envelope is a copy; the claim lasts visibility_timeout seconds.
        """
        if visibility_timeout is None:
            visibility_timeout = self.config.get('queue.visibility_timeout', 30)
        if visibility_timeout < 0:
            raise ValueError(f"visibility_timeout must be non-negative, got {visibility_timeout}")

        with self.store.queue_lock:
            envelope = self.store.ready.pop()
            if envelope is None:
                return None

            envelope.attempts += 1
            envelope.state = EnvelopeState.IN_FLIGHT
            self.store.in_flight[envelope.id] = InFlightRecord(
                envelope=envelope,
                visibility_deadline=self._clock() + visibility_timeout
            )
            claimed = envelope.snapshot()

        logger.debug(f"Dequeued {claimed} (visible again in {visibility_timeout}s)")
        return claimed

    def ack(self, envelope_id: str, attempt: Optional[int] = None) -> None:
        """
        Mark an in-flight envelope as processed.
        Passing the claimed envelope's attempts as attempt rejects the ack when
        that claim has expired and the envelope was redelivered since.
        """
        with self.store.queue_lock:
            record = self._take_in_flight(envelope_id, 'ack', attempt)
            record.envelope.state = EnvelopeState.ACKED
            self.store.remember_acked(envelope_id)
            self._processed += 1

        logger.debug(f"Acked envelope {envelope_id}")

    def nack(self,
             envelope_id: str,
             reason: Optional[str] = None,
             attempt: Optional[int] = None) -> EnvelopeState:
        """
        Report failed processing of an in-flight envelope.
        Returns READY when it will be redelivered, DEAD_LETTERED when its retries are spent.
        attempt works as for ack().
        """
        with self.store.queue_lock:
            record = self._take_in_flight(envelope_id, 'nack', attempt)
            return self._retry_or_dead_letter(record.envelope, reason or 'nacked')

    def extend_visibility(self, envelope_id: str, seconds: float) -> float:
        """Push an in-flight envelope's visibility deadline forward; returns the new deadline"""
        if seconds < 0:
            raise ValueError(f"seconds must be non-negative, got {seconds}")

        with self.store.queue_lock:
            record = self.store.in_flight.get(envelope_id)
            if record is None:
                raise InvalidStateError(self._describe_not_in_flight(envelope_id, 'extend visibility of'),
                                        envelope_id)
            record.visibility_deadline += seconds
            return record.visibility_deadline

    def _take_in_flight(self, envelope_id: str, operation: str, attempt: Optional[int] = None) -> InFlightRecord:
        record = self.store.in_flight.get(envelope_id)
        if record is None:
            raise InvalidStateError(self._describe_not_in_flight(envelope_id, operation), envelope_id)
        if attempt is not None and attempt != record.envelope.attempts:
            raise InvalidStateError(
                f"Cannot {operation} envelope {envelope_id}: claim for attempt {attempt} "
                f"was superseded by attempt {record.envelope.attempts}",
                envelope_id
            )
        del self.store.in_flight[envelope_id]
        return record

    def _describe_not_in_flight(self, envelope_id: str, operation: str) -> str:
        state = self._lookup_state(envelope_id)
        if state is None:
            return f"Cannot {operation} unknown envelope {envelope_id}"
        return f"Cannot {operation} envelope {envelope_id} in state {state.value}"

    def _retry_or_dead_letter(self, envelope: Envelope, reason: str) -> EnvelopeState:
        # Caller holds queue_lock and has already removed the in-flight record
        if envelope.attempts >= envelope.max_retries:
            envelope.state = EnvelopeState.DEAD_LETTERED
            self.store.dead_letters[envelope.id] = DeadLetterEntry(envelope=envelope, reason=reason)
            self._failed += 1
            logger.info(f"Dead-lettered {envelope}: {reason}")
        else:
            envelope.state = EnvelopeState.READY
            self.store.ready.push_front(envelope)
            logger.debug(f"Requeued {envelope}: {reason}")
        return envelope.state

    # Expiry

    def requeue_expired(self) -> int:
        """Treat every in-flight envelope past its visibility deadline as nacked"""
        with self.store.queue_lock:
            now = self._clock()
            expired = [record for record in self.store.in_flight.values() if record.expired(now)]

            for record in expired:
                del self.store.in_flight[record.envelope.id]
                logger.warning(f"Visibility timeout expired for {record.envelope}")
                self._retry_or_dead_letter(record.envelope, 'visibility timeout expired')

        return len(expired)

    # Inspection

    def peek(self) -> Optional[Envelope]:
        """Return a copy of the envelope dequeue would claim next, without claiming it"""
        with self.store.queue_lock:
            envelope = self.store.ready.peek()
            return envelope.snapshot() if envelope else None

    def get_state(self, envelope_id: str) -> EnvelopeState:
        with self.store.queue_lock:
            state = self._lookup_state(envelope_id)
        if state is None:
            raise InvalidStateError(f"Unknown envelope {envelope_id}", envelope_id)
        return state

    def _lookup_state(self, envelope_id: str) -> Optional[EnvelopeState]:
        if envelope_id in self.store.in_flight:
            return EnvelopeState.IN_FLIGHT
        if envelope_id in self.store.dead_letters:
            return EnvelopeState.DEAD_LETTERED
        if envelope_id in self.store.acked:
            return EnvelopeState.ACKED
        for envelope in self.store.ready:
            if envelope.id == envelope_id:
                return EnvelopeState.READY
        return None

    # Dead letters

    def dead_letters(self) -> List[DeadLetterEntry]:
        """Copies of the dead-letter entries, oldest first"""
        with self.store.queue_lock:
            return [
                DeadLetterEntry(envelope=entry.envelope.snapshot(),
                                dead_lettered_at=entry.dead_lettered_at,
                                reason=entry.reason)
                for entry in self.store.dead_letters.values()
            ]

    def drain_dead_letters(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        """Remove and return dead-letter entries, oldest first"""
        drained = []
        with self.store.queue_lock:
            while self.store.dead_letters and (limit is None or len(drained) < limit):
                _, entry = self.store.dead_letters.popitem(last=False)
                drained.append(entry)

        if drained:
            logger.info(f"Drained {len(drained)} dead-letter entries")
        return drained

    def redrive(self, envelope_id: str, priority: Optional[int] = None, max_retries: Optional[int] = None) -> None:
        """
        Move a dead-lettered envelope back to the ready queue.
        Its attempt count is kept and it gets max_retries more attempts.
        """
        if max_retries is None:
            max_retries = self.config.get('queue.max_retries', 3)
        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")

        with self.store.queue_lock:
            entry = self.store.dead_letters.get(envelope_id)
            if entry is None:
                raise InvalidStateError(self._describe_not_dead_lettered(envelope_id), envelope_id)
            self._check_capacity(1)

            del self.store.dead_letters[envelope_id]
            envelope = entry.envelope
            if priority is not None:
                envelope.priority = int(priority)
            envelope.max_retries = envelope.attempts + max_retries
            envelope.state = EnvelopeState.READY
            self.store.ready.push(envelope)

        logger.info(f"Redrove {envelope} from dead letters")

    def _describe_not_dead_lettered(self, envelope_id: str) -> str:
        state = self._lookup_state(envelope_id)
        if state is None:
            return f"Cannot redrive unknown envelope {envelope_id}"
        return f"Cannot redrive envelope {envelope_id} in state {state.value}"

    def stats(self) -> Dict[str, int]:
        with self.store.queue_lock:
            return {
                'enqueued': self._enqueued,
                'processed': self._processed,
                'failed': self._failed,
                'queue_depth': len(self.store.ready),
                'in_flight_count': len(self.store.in_flight),
                'dead_letter_depth': len(self.store.dead_letters),
            }

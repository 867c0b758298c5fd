"""
Polling consumer for the work queue.
"""
import threading
import logging
from typing import Any, Callable, Optional

from .envelope import Envelope
from .errors import InvalidStateError


logger = logging.getLogger(__name__)


class QueueConsumer:
    """
    Runs a handler over work queue envelopes on a background thread.

    The queue may be a MessageBroker or a WorkQueue; only dequeue/ack/nack are
    used. The handler receives the claimed Envelope; raising or returning False
    nacks it, anything else acks it. While the queue is empty the consumer
    polls with exponential backoff between poll_interval and max_poll_interval.
    """

    def __init__(self,
                 queue: Any,
                 handler: Callable[[Envelope], Any],
                 visibility_timeout: Optional[float] = None,
                 poll_interval: float = 0.05,
                 max_poll_interval: float = 1.0,
                 name: str = "QueueConsumer"):
        if poll_interval <= 0 or max_poll_interval < poll_interval:
            raise ValueError("poll_interval must be positive and not exceed max_poll_interval")

        self.queue = queue
        self.handler = handler
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.name = name

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.processed = 0
        self.failed = 0

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._consume_worker, daemon=True, name=self.name)
        self._thread.start()
        logger.info(f"Consumer {self.name} started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info(f"Consumer {self.name} stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def poll_once(self) -> bool:
        """Claim and handle at most one envelope; returns False when the queue was empty"""
        envelope = self.queue.dequeue(self.visibility_timeout)
        if envelope is None:
            return False

        try:
            outcome = self.handler(envelope)
        except Exception as e:
            logger.warning(f"Consumer {self.name} handler failed for {envelope}: {e!r}")
            self._settle(envelope, success=False, reason=repr(e))
        else:
            self._settle(envelope, success=outcome is not False, reason='handler returned failure')
        return True

    def _settle(self, envelope: Envelope, success: bool, reason: str) -> None:
        try:
            if success:
                self.queue.ack(envelope.id, envelope.attempts)
                self.processed += 1
            else:
                self.queue.nack(envelope.id, reason, envelope.attempts)
                self.failed += 1
        except InvalidStateError as e:
            # The lease expired first: the envelope was requeued, dead-lettered, or
            # claimed again by another consumer, whose claim must not be settled here
            logger.warning(f"Consumer {self.name} could not settle {envelope.id}: {e}")

    def _consume_worker(self):
        delay = self.poll_interval
        while not self._stop_event.is_set():
            try:
                if self.poll_once():
                    delay = self.poll_interval
                    continue
            except Exception as e:
                logger.error(f"Consumer {self.name} poll error: {e}")

            self._stop_event.wait(delay)
            delay = min(delay * 2, self.max_poll_interval)

"""
Main message broker implementation.
Combines the work queue, the pub/sub engine and the expiry sweeper over one envelope store.
"""
import time
import threading
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .config import Config, get_config
from .envelope import Envelope, EnvelopeState, DeadLetterEntry
from .pubsub import PubSubEngine, Subscriber, DeliveryFailed
from .store import EnvelopeStore
from .sweeper import ExpirySweeper
from .work_queue import WorkQueue


logger = logging.getLogger(__name__)


class MessageBroker:
    """In-process broker offering a work queue and topic fanout"""

    def __init__(self, config: Optional[Config] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or get_config()

        self.store = EnvelopeStore(acked_history=self.config.get('queue.acked_history', 10000))
        self.work_queue = WorkQueue(self.store, self.config, clock=clock)
        self.pubsub = PubSubEngine(self.store, self.config)
        self.sweeper = ExpirySweeper(self.work_queue, interval=self.config.get('sweeper.interval', 1.0))

        self._running = False
        self._lock = threading.RLock()

    def start(self) -> None:
        """Start the message broker"""
        with self._lock:
            if self._running:
                return

            logger.info("Starting message broker...")

            self.pubsub.start()
            self.sweeper.start()

            self._running = True

            logger.info("Message broker started successfully")

    def stop(self) -> None:
        """Stop the message broker; dispatched pub/sub deliveries run to completion"""
        with self._lock:
            if not self._running:
                return

            logger.info("Stopping message broker...")

            self._running = False

            self.sweeper.stop()
            self.pubsub.stop()

            logger.info("Message broker stopped")

    @property
    def running(self) -> bool:
        return self._running

    def __enter__(self) -> 'MessageBroker':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    # Work queue

    def enqueue(self, body: Any, priority: Optional[int] = None, max_retries: Optional[int] = None) -> str:
        return self.work_queue.enqueue(body, priority, max_retries)

    def enqueue_batch(self,
                      bodies: Iterable[Any],
                      priority: Optional[int] = None,
                      max_retries: Optional[int] = None) -> List[str]:
        return self.work_queue.enqueue_batch(bodies, priority, max_retries)

    def dequeue(self, visibility_timeout: Optional[float] = None) -> Optional[Envelope]:
        return self.work_queue.dequeue(visibility_timeout)

    def ack(self, envelope_id: str, attempt: Optional[int] = None) -> None:
        self.work_queue.ack(envelope_id, attempt)

    def nack(self, envelope_id: str, reason: Optional[str] = None, attempt: Optional[int] = None) -> EnvelopeState:
        return self.work_queue.nack(envelope_id, reason, attempt)

    def extend_visibility(self, envelope_id: str, seconds: float) -> float:
        return self.work_queue.extend_visibility(envelope_id, seconds)

    def peek(self) -> Optional[Envelope]:
        return self.work_queue.peek()

    def get_state(self, envelope_id: str) -> EnvelopeState:
        return self.work_queue.get_state(envelope_id)

    def sweep(self) -> int:
        """Run one expiry sweep immediately"""
        return self.sweeper.tick()

    # Dead letters

    def dead_letters(self) -> List[DeadLetterEntry]:
        return self.work_queue.dead_letters()

    def drain_dead_letters(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        return self.work_queue.drain_dead_letters(limit)

    def redrive(self, envelope_id: str, priority: Optional[int] = None, max_retries: Optional[int] = None) -> None:
        self.work_queue.redrive(envelope_id, priority, max_retries)

    # Pub/sub

    def publish(self, topic: str, body: Any) -> int:
        return self.pubsub.publish(topic, body)

    def subscribe(self,
                  topic: str,
                  handler: Union[Subscriber, Callable[[Any], Any]],
                  filter_predicate: Optional[Callable[[Any], bool]] = None,
                  max_retries: Optional[int] = None,
                  owner: Optional[str] = None) -> str:
        return self.pubsub.subscribe(topic, handler, filter_predicate, max_retries, owner)

    def unsubscribe(self, subscription_id: str) -> None:
        self.pubsub.unsubscribe(subscription_id)

    def disconnect(self, owner: str) -> int:
        return self.pubsub.disconnect(owner)

    def wait_for_deliveries(self, timeout: Optional[float] = None) -> bool:
        return self.pubsub.wait_for_deliveries(timeout)

    def list_topics(self) -> List[str]:
        return self.pubsub.list_topics()

    def subscription_stats(self, subscription_id: str) -> Dict[str, Any]:
        return self.pubsub.subscription_stats(subscription_id)

    def delivery_failures(self, subscription_id: str) -> List[DeliveryFailed]:
        return self.pubsub.delivery_failures(subscription_id)

    # Statistics

    def get_stats(self) -> Dict[str, Any]:
        """Counters for both engines in one flat dict"""
        stats: Dict[str, Any] = {}
        stats.update(self.work_queue.stats())
        stats.update(self.pubsub.stats())
        stats['running'] = self._running
        return stats

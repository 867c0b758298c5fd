"""
Topic based publish/subscribe with independent per-subscriber delivery.

Each publish snapshots the topic's subscriptions, keeps the ones whose filter
accepts the body, and hands one delivery attempt per subscription to a thread
pool. A failed attempt is retried with exponential backoff up to the
subscription's max_retries. The backoff wait runs on a timer, off the pool, so
a retrying subscriber never holds a worker that a sibling could use. Handler
errors are recorded as DeliveryFailed and never reach the publisher or
sibling subscribers.
"""
import time
import threading
import logging
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from .config import Config, get_config
from .envelope import new_id, body_size
from .errors import InvalidStateError, CapacityExceededError, HandlerFailure
from .store import EnvelopeStore


logger = logging.getLogger(__name__)


class Subscriber:
    """
    Delivery capability a subscription dispatches to.

    can_handle() is an optional filter, deliver() performs the delivery.
    deliver() signals failure by raising or by returning False; any other
    return value counts as success.
    """

    def can_handle(self, body: Any) -> bool:
        return True

    def deliver(self, body: Any) -> Optional[bool]:
        raise NotImplementedError


class FunctionSubscriber(Subscriber):
    """Adapts a plain callable (and optional predicate) to the Subscriber interface"""

    def __init__(self, handler: Callable[[Any], Any], predicate: Optional[Callable[[Any], bool]] = None):
        self.handler = handler
        self.predicate = predicate

    def can_handle(self, body: Any) -> bool:
        return self.predicate is None or bool(self.predicate(body))

    def deliver(self, body: Any) -> Optional[bool]:
        return self.handler(body)

    def __repr__(self) -> str:
        return f"FunctionSubscriber({getattr(self.handler, '__name__', self.handler)!r})"


@dataclass
class DeliveryFailed:
    """One failed delivery attempt to a subscription"""
    subscription_id: str
    topic: str
    attempt: int
    error_type: str
    error: str
    final: bool = False
    failed_at: float = field(default_factory=time.time)


@dataclass
class Subscription:
    """A subscriber attached to a topic"""
    subscription_id: str
    topic: str
    subscriber: Subscriber
    max_retries: int
    owner: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    attempts_so_far: int = 0
    delivered: int = 0
    failed: int = 0
    failures: Deque[DeliveryFailed] = field(default_factory=deque)

    def accepts(self, body: Any) -> bool:
        return self.subscriber.can_handle(body)


class PubSubEngine:
    """Manages topics, subscriptions and fanout delivery"""

    def __init__(self, store: EnvelopeStore, config: Optional[Config] = None):
        self.store = store
        self.config = config or get_config()

        self._executor: Optional[ThreadPoolExecutor] = None
        self._accepting = False

        # Guards delivery bookkeeping: pending count, counters, per-subscription stats.
        # A delivery stays pending from publish until it succeeds or gives up,
        # including while a retry is waiting on its timer.
        self._delivery_cond = threading.Condition()
        self._pending = 0
        self._retries_scheduled = 0
        self._published = 0
        self._delivered = 0
        self._delivery_failed = 0

    def start(self) -> None:
        """Start the delivery thread pool"""
        with self._delivery_cond:
            if self._executor is not None:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.get('pubsub.max_workers', 8),
                thread_name_prefix="PubSubDelivery"
            )
            self._accepting = True
            logger.info("Pub/sub delivery pool started")

    def stop(self) -> None:
        """
        Stop accepting publishes and wait for dispatched deliveries to finish.
        Scheduled retries are not cancelled; they run to success or exhaustion first.
        """
        with self._delivery_cond:
            if self._executor is None:
                return
            self._accepting = False
            self._delivery_cond.wait_for(lambda: self._pending == 0)
            executor, self._executor = self._executor, None

        if executor is not None:
            executor.shutdown(wait=True)
            logger.info("Pub/sub delivery pool stopped")

    # Subscriptions

    def subscribe(self,
                  topic: str,
                  handler: Union[Subscriber, Callable[[Any], Any]],
                  filter_predicate: Optional[Callable[[Any], bool]] = None,
                  max_retries: Optional[int] = None,
                  owner: Optional[str] = None) -> str:
        """Attach a handler to a topic, creating the topic if needed"""
        self._validate_topic(topic)
        if max_retries is None:
            max_retries = self.config.get('pubsub.max_retries', 3)
        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")

        if isinstance(handler, Subscriber):
            subscriber = handler
            if filter_predicate is not None:
                subscriber = _FilteredSubscriber(handler, filter_predicate)
        elif callable(handler):
            subscriber = FunctionSubscriber(handler, filter_predicate)
        else:
            raise TypeError(f"Handler must be a Subscriber or callable, got {type(handler).__name__}")

        subscription = Subscription(
            subscription_id=new_id(),
            topic=topic,
            subscriber=subscriber,
            max_retries=int(max_retries),
            owner=owner,
            failures=deque(maxlen=self.config.get('pubsub.failure_history', 100))
        )

        with self.store.topic_lock:
            self.store.get_or_create_topic(topic).subscriptions[subscription.subscription_id] = subscription
            self.store.subscription_topics[subscription.subscription_id] = topic

        logger.info(f"Created subscription {subscription.subscription_id} on topic {topic}")
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> None:
        """Detach a subscription; the topic itself is kept"""
        with self.store.topic_lock:
            topic = self.store.subscription_topics.pop(subscription_id, None)
            if topic is None:
                raise InvalidStateError(f"Subscription '{subscription_id}' does not exist", subscription_id)
            del self.store.topics[topic].subscriptions[subscription_id]

        logger.info(f"Removed subscription {subscription_id} from topic {topic}")

    def disconnect(self, owner: str) -> int:
        """Remove every subscription held by an owner; returns how many were removed"""
        with self.store.topic_lock:
            owned = [
                subscription_id
                for topic in self.store.topics.values()
                for subscription_id, subscription in topic.subscriptions.items()
                if subscription.owner == owner
            ]
            for subscription_id in owned:
                self.unsubscribe(subscription_id)

        if owned:
            logger.info(f"Owner {owner} disconnected, removed {len(owned)} subscriptions")
        return len(owned)

    def _get_subscription(self, subscription_id: str) -> Subscription:
        with self.store.topic_lock:
            topic = self.store.subscription_topics.get(subscription_id)
            if topic is None:
                raise InvalidStateError(f"Subscription '{subscription_id}' does not exist", subscription_id)
            return self.store.topics[topic].subscriptions[subscription_id]

    @staticmethod
    def _validate_topic(topic: str) -> None:
        if not isinstance(topic, str) or not topic:
            raise ValueError("Topic name must be a non-empty string")

    # Publishing

    def publish(self, topic: str, body: Any) -> int:
        """
        Fan a message out to the topic's current subscriptions.
        Returns the number of deliveries dispatched, not the number that succeeded.
        """
        self._validate_topic(topic)

        max_size = self.config.get('queue.max_body_size', 0)
        size = body_size(body)
        if max_size and size is not None and size > max_size:
            raise CapacityExceededError(f"Message size {size} exceeds maximum {max_size}", max_size)

        with self.store.topic_lock:
            subscriptions = list(self.store.get_or_create_topic(topic).subscriptions.values())

        # Filters are caller code; run them outside the topic lock
        accepted = [subscription for subscription in subscriptions if self._accepts(subscription, body)]

        with self._delivery_cond:
            if not self._accepting:
                raise InvalidStateError("Cannot publish while the pub/sub engine is stopped")

            max_pending = self.config.get('pubsub.max_pending_deliveries', 0)
            if max_pending and self._pending + len(accepted) > max_pending:
                raise CapacityExceededError(
                    f"{self._pending} deliveries pending, cannot dispatch {len(accepted)} more (max {max_pending})",
                    max_pending
                )

            self._published += 1
            self._pending += len(accepted)
            for subscription in accepted:
                self._executor.submit(self._deliver_attempt, subscription, body, 1)

        logger.debug(f"Published to {topic}: dispatched to {len(accepted)} of {len(subscriptions)} subscriptions")
        return len(accepted)

    def _accepts(self, subscription: Subscription, body: Any) -> bool:
        try:
            return subscription.accepts(body)
        except Exception as e:
            logger.warning(f"Filter for subscription {subscription.subscription_id} raised {e!r}, skipping delivery")
            return False

    def _deliver_attempt(self, subscription: Subscription, body: Any, attempt: int) -> None:
        """Run one delivery attempt on a pool worker"""
        max_attempts = max(subscription.max_retries, 1)
        retry_scheduled = False
        try:
            with self._delivery_cond:
                subscription.attempts_so_far += 1

            try:
                if subscription.subscriber.deliver(body) is False:
                    raise HandlerFailure("Handler reported failure")
            except Exception as e:
                final = attempt >= max_attempts
                self._record_failure(subscription, attempt, e, final)
                if not final:
                    delay = self.backoff_delay(attempt)
                    logger.warning(f"Delivery to subscription {subscription.subscription_id} failed "
                                   f"(attempt {attempt}/{max_attempts}): {e!r}; retrying in {delay:.2f}s")
                    self._schedule_retry(subscription, body, attempt + 1, delay)
                    retry_scheduled = True
            else:
                with self._delivery_cond:
                    subscription.delivered += 1
                    self._delivered += 1
                logger.debug(f"Delivered to subscription {subscription.subscription_id} on attempt {attempt}")
        finally:
            if not retry_scheduled:
                self._finish_delivery()

    def _schedule_retry(self, subscription: Subscription, body: Any, attempt: int, delay: float) -> None:
        timer = threading.Timer(delay, self._submit_retry, (subscription, body, attempt))
        timer.daemon = True
        timer.name = f"PubSubRetry-{subscription.subscription_id[:8]}"
        with self._delivery_cond:
            self._retries_scheduled += 1
        try:
            timer.start()
        except RuntimeError:
            with self._delivery_cond:
                self._retries_scheduled -= 1
            raise

    def _submit_retry(self, subscription: Subscription, body: Any, attempt: int) -> None:
        # stop() keeps the pool alive until nothing is pending, so it is still running here
        with self._delivery_cond:
            self._retries_scheduled -= 1
            executor = self._executor
        try:
            executor.submit(self._deliver_attempt, subscription, body, attempt)
        except Exception as e:
            logger.error(f"Could not dispatch retry {attempt} to subscription {subscription.subscription_id}: {e!r}")
            self._finish_delivery()
            raise

    def _finish_delivery(self) -> None:
        with self._delivery_cond:
            self._pending -= 1
            if self._pending == 0:
                self._delivery_cond.notify_all()

    def _record_failure(self, subscription: Subscription, attempt: int, error: Exception, final: bool) -> None:
        record = DeliveryFailed(
            subscription_id=subscription.subscription_id,
            topic=subscription.topic,
            attempt=attempt,
            error_type=type(error).__name__,
            error=str(error),
            final=final
        )
        with self._delivery_cond:
            subscription.failures.append(record)
            if final:
                subscription.failed += 1
                self._delivery_failed += 1

        if final:
            logger.error(f"Delivery to subscription {subscription.subscription_id} on topic {subscription.topic} "
                         f"gave up after {attempt} attempts: {error!r}")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry that follows the given failed attempt"""
        base = self.config.get('pubsub.retry_base_delay', 0.1)
        cap = self.config.get('pubsub.retry_max_delay', 5.0)
        return min(base * (2 ** (attempt - 1)), cap)

    def wait_for_deliveries(self, timeout: Optional[float] = None) -> bool:
        """Block until every dispatched delivery has finished; False on timeout"""
        with self._delivery_cond:
            return self._delivery_cond.wait_for(lambda: self._pending == 0, timeout)

    # Inspection

    def list_topics(self) -> List[str]:
        with self.store.topic_lock:
            return list(self.store.topics.keys())

    def subscription_stats(self, subscription_id: str) -> Dict[str, Any]:
        subscription = self._get_subscription(subscription_id)
        with self._delivery_cond:
            return {
                'subscription_id': subscription.subscription_id,
                'topic': subscription.topic,
                'owner': subscription.owner,
                'max_retries': subscription.max_retries,
                'attempts_so_far': subscription.attempts_so_far,
                'delivered': subscription.delivered,
                'failed': subscription.failed,
                'created_at': subscription.created_at,
            }

    def delivery_failures(self, subscription_id: str) -> List[DeliveryFailed]:
        subscription = self._get_subscription(subscription_id)
        with self._delivery_cond:
            return list(subscription.failures)

    def stats(self) -> Dict[str, int]:
        with self.store.topic_lock:
            topics = len(self.store.topics)
            subscriptions = len(self.store.subscription_topics)
        with self._delivery_cond:
            return {
                'published': self._published,
                'delivered': self._delivered,
                'delivery_failed': self._delivery_failed,
                'pending_deliveries': self._pending,
                'retries_scheduled': self._retries_scheduled,
                'topics': topics,
                'subscriptions': subscriptions,
            }


class _FilteredSubscriber(Subscriber):
    """A Subscriber narrowed by an extra predicate given at subscribe time"""

    def __init__(self, inner: Subscriber, predicate: Callable[[Any], bool]):
        self.inner = inner
        self.predicate = predicate

    def can_handle(self, body: Any) -> bool:
        return bool(self.predicate(body)) and self.inner.can_handle(body)

    def deliver(self, body: Any) -> Optional[bool]:
        return self.inner.deliver(body)

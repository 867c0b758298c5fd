"""
Envelope store: the broker's shared mutable state.

The store holds the work queue structures (ready queue, in-flight map,
dead-letter store) guarded by ``queue_lock`` and the topic/subscription table
guarded by ``topic_lock``. Engines take the lock for the structures they touch;
nothing outside the broker mutates the store directly.
"""
import bisect
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, List, Optional

from .envelope import Envelope, InFlightRecord, DeadLetterEntry


class ReadyQueue:
    """Priority buckets of FIFO deques; higher priority first, FIFO within a tier"""

    def __init__(self):
        self._buckets: Dict[int, Deque[Envelope]] = {}
        self._priorities: List[int] = []  # ascending
        self._size = 0

    def push(self, envelope: Envelope) -> None:
        """Append to the back of the envelope's priority tier"""
        self._bucket(envelope.priority).append(envelope)
        self._size += 1

    def push_front(self, envelope: Envelope) -> None:
        """Insert at the front of the envelope's priority tier (used for retries)"""
        self._bucket(envelope.priority).appendleft(envelope)
        self._size += 1

    def pop(self) -> Optional[Envelope]:
        if not self._priorities:
            return None

        priority = self._priorities[-1]
        bucket = self._buckets[priority]
        envelope = bucket.popleft()
        if not bucket:
            del self._buckets[priority]
            self._priorities.pop()

        self._size -= 1
        return envelope

    def peek(self) -> Optional[Envelope]:
        if not self._priorities:
            return None
        return self._buckets[self._priorities[-1]][0]

    def _bucket(self, priority: int) -> Deque[Envelope]:
        bucket = self._buckets.get(priority)
        if bucket is None:
            bucket = deque()
            self._buckets[priority] = bucket
            bisect.insort(self._priorities, priority)
        return bucket

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[Envelope]:
        """Iterate in dequeue order without consuming"""
        for priority in reversed(self._priorities):
            yield from self._buckets[priority]


@dataclass
class Topic:
    """A topic namespace and the subscriptions attached to it"""
    name: str
    subscriptions: Dict[str, Any] = field(default_factory=dict)  # subscription_id -> Subscription


class EnvelopeStore:
    """Owned state of a single broker instance"""

    def __init__(self, acked_history: int = 10000):
        # Work queue structures, guarded by queue_lock
        self.queue_lock = threading.RLock()
        self.ready = ReadyQueue()
        self.in_flight: Dict[str, InFlightRecord] = {}
        self.dead_letters: 'OrderedDict[str, DeadLetterEntry]' = OrderedDict()
        self.acked: 'OrderedDict[str, None]' = OrderedDict()
        self.acked_history = acked_history

        # Topic table, guarded by topic_lock
        self.topic_lock = threading.RLock()
        self.topics: Dict[str, Topic] = {}
        self.subscription_topics: Dict[str, str] = {}  # subscription_id -> topic name

    def remember_acked(self, envelope_id: str) -> None:
        """Record an acked id, forgetting the oldest beyond the history bound"""
        self.acked[envelope_id] = None
        while len(self.acked) > self.acked_history:
            self.acked.popitem(last=False)

    def get_or_create_topic(self, name: str) -> Topic:
        topic = self.topics.get(name)
        if topic is None:
            topic = Topic(name=name)
            self.topics[name] = topic
        return topic

"""
In-process message broker: a priority work queue with visibility timeouts and
dead-lettering, plus topic based publish/subscribe fanout.
"""

from .config import Config, get_config, initialize_config
from .errors import BrokerError, InvalidStateError, CapacityExceededError, HandlerFailure
from .envelope import Envelope, EnvelopeState, InFlightRecord, DeadLetterEntry
from .store import EnvelopeStore, ReadyQueue, Topic
from .work_queue import WorkQueue
from .sweeper import ExpirySweeper
from .pubsub import PubSubEngine, Subscriber, FunctionSubscriber, Subscription, DeliveryFailed
from .consumer import QueueConsumer
from .broker import MessageBroker

__all__ = [
    'Config', 'get_config', 'initialize_config',
    'BrokerError', 'InvalidStateError', 'CapacityExceededError', 'HandlerFailure',
    'Envelope', 'EnvelopeState', 'InFlightRecord', 'DeadLetterEntry',
    'EnvelopeStore', 'ReadyQueue', 'Topic',
    'WorkQueue', 'ExpirySweeper',
    'PubSubEngine', 'Subscriber', 'FunctionSubscriber', 'Subscription', 'DeliveryFailed',
    'QueueConsumer',
    'MessageBroker'
]

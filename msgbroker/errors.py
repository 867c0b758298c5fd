"""
Exceptions raised by the message broker.
"""


class BrokerError(Exception):
    """Base class for broker errors"""


class InvalidStateError(BrokerError):
    """Operation on an id that is unknown or not in the required state"""
    
    def __init__(self, message: str, item_id: str = None):
        super().__init__(message)
        self.item_id = item_id


class CapacityExceededError(BrokerError):
    """A configured bound would be exceeded; the producer should back off"""
    
    def __init__(self, message: str, limit: int = 0):
        super().__init__(message)
        self.limit = limit


class HandlerFailure(BrokerError):
    """A consumer or subscriber handler reported failure"""

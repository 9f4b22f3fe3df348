"""
Error taxonomy for stream queues.

Cancellation is not an error: a cancelled live-tail simply stops iterating.
"""


class StreamQueueError(Exception):
    """Base class for every stream queue failure."""


class QueueNotFound(StreamQueueError, KeyError):
    """Run id is neither registered locally nor known to the backend."""

    def __init__(self, queue_id: str):
        self.queue_id = queue_id
        super().__init__(f"Queue with id '{queue_id}' does not exist")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class BackendUnavailable(StreamQueueError, ConnectionError):
    """Shared store could not be reached. Never retried here; the caller decides."""


class CorruptMessage(StreamQueueError, ValueError):
    """Stored or published bytes do not decode to an EventMessage."""

"""Exception hierarchy for the generation queue.

Validation and not-found errors are raised synchronously to callers.
Provider errors never escape the processor; they are recorded as ``failed``
state on the queue item and its generation.
"""


class RemixerError(Exception):
    """Base class for all Remixer errors."""


class NotFoundError(RemixerError, LookupError):
    """An id did not match any stored record."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class GenerationNotFoundError(NotFoundError):
    def __init__(self, generation_id: str):
        super().__init__("Generation", generation_id)


class QueueItemNotFoundError(NotFoundError):
    def __init__(self, queue_item_id: str):
        super().__init__("Queue item", queue_item_id)


class RemixValidationError(RemixerError, ValueError):
    """A submission was rejected before any state was written."""


class ProviderError(RemixerError, RuntimeError):
    """The image provider failed or returned unusable output."""


class InvalidImageError(ProviderError):
    """Provider output could not be decoded as an image."""

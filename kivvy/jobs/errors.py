"""
Kivvy job errors.

Producer-facing errors (raised by the dispatcher) and processor-facing errors
(raised inside a processor to steer what the worker does with the task).
"""

from __future__ import annotations

from typing import Any, List, Optional


class QueueError(Exception):
    """Base class for every queue layer error."""


class QueueUnavailable(QueueError):
    """The queue store could not be reached."""

    def __init__(self, message: str = "queue store unavailable", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class UnknownQueue(QueueError):
    def __init__(self, queue_name: str):
        super().__init__(f"Unknown queue: {queue_name}")
        self.queue_name = queue_name


class InvalidTaskKind(QueueError):
    """The kind does not exist or is not served by the queue it was sent to."""

    def __init__(self, queue_name: str, kind: str):
        super().__init__(f"Task kind {kind!r} is not served by queue {queue_name!r}")
        self.queue_name = queue_name
        self.kind = kind


class PayloadValidationError(QueueError):
    def __init__(self, kind: str, errors: List[Any]):
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}"
            if isinstance(e, dict) else str(e)
            for e in errors
        )
        super().__init__(f"Invalid payload for {kind}: {details}")
        self.kind = kind
        self.errors = errors


class TerminalTaskError(Exception):
    """
    Raised by a processor when retrying cannot help.

    The worker moves the task straight to failed regardless of the attempts
    left in its retry policy.
    """


class RecordNotFound(TerminalTaskError):
    def __init__(self, record_type: str, record_id: str):
        super().__init__(f"{record_type} not found: {record_id}")
        self.record_type = record_type
        self.record_id = record_id


class PaymentRejected(TerminalTaskError):
    """The payment gateway refused the operation (4xx, card declined, bad state)."""


class DeliveryRejected(TerminalTaskError):
    """A delivery provider refused the message (invalid address, 4xx)."""

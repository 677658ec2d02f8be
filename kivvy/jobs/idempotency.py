"""
Idempotency guard for processors with external side effects.

Markers are stored in the queue store with a TTL (SET NX EX on Redis), so a
retried or redelivered task can tell that its side effect already happened.
The same key is handed to the external provider as its idempotency key,
which covers a crash between the provider call and the marker write.
"""

from __future__ import annotations

from typing import Optional

import structlog

from kivvy.jobs.backends import QueueStore

logger = structlog.get_logger(__name__)

# A week comfortably exceeds every retry/stall window
DEFAULT_TTL_SEC = 60 * 60 * 24 * 7


def payment_key(booking_id: str, action: str, task_id: Optional[str] = None) -> str:
    """
    Idempotency key for a payment side effect.

    Capture happens at most once per booking, so booking + action is enough.
    Refunds may legitimately repeat (partial refunds), so each refund task
    gets its own key.
    """
    if action == "refund":
        return f"payment:{booking_id}:{action}:{task_id}"
    return f"payment:{booking_id}:{action}"


class IdempotencyGuard:
    """Check-then-record markers around a side effect."""

    def __init__(self, store: QueueStore, ttl_seconds: int = DEFAULT_TTL_SEC, scope: str = "idem"):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.scope = scope

    def _key(self, key: str) -> str:
        return f"{self.scope}:{key}"

    async def seen(self, key: str) -> bool:
        return await self.store.has_marker(self._key(key))

    async def record(self, key: str) -> bool:
        """Record that the side effect for ``key`` succeeded. False if already recorded."""
        created = await self.store.set_marker(self._key(key), self.ttl_seconds)
        if not created:
            logger.debug("Idempotency marker already present", key=key)
        return created

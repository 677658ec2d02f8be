"""
Kivvy Payment Gateway

Capture and refund of Stripe payment intents. The Stripe SDK is synchronous,
so every call runs in a worker thread. Card declines and invalid requests
raise PaymentRejected (terminal); connection problems and provider 5xx
errors propagate so the queue retries them.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
import structlog

from kivvy.core.config import PaymentConfig
from kivvy.jobs.errors import PaymentRejected

logger = structlog.get_logger(__name__)


@dataclass
class RefundRecord:
    id: str
    amount: float
    status: str


def to_minor_units(amount: float) -> int:
    """Euros to cents."""
    return int(round(amount * 100))


class PaymentGateway(ABC):
    @abstractmethod
    async def capture(self, intent_id: str, idempotency_key: str) -> str:
        """Capture an authorised intent. Returns the provider status."""

    @abstractmethod
    async def refund(
        self,
        intent_id: str,
        amount: Optional[float],
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundRecord:
        """Refund ``amount`` (or the full charge when None)."""

    @abstractmethod
    async def retrieve_status(self, intent_id: str) -> str:
        ...


class StripeGateway(PaymentGateway):
    def __init__(self, config: PaymentConfig):
        self.config = config
        if not config.stripe_secret_key:
            logger.warning("Stripe secret key not configured, payment jobs will fail")

    def _options(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self.config.stripe_secret_key}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    async def _call(self, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (stripe.CardError, stripe.InvalidRequestError) as e:
            raise PaymentRejected(e.user_message or str(e)) from e
        except stripe.StripeError as e:
            status = e.http_status or 0
            if 400 <= status < 500 and status != 429:
                raise PaymentRejected(str(e)) from e
            raise

    async def capture(self, intent_id: str, idempotency_key: str) -> str:
        intent = await self._call(
            stripe.PaymentIntent.capture, intent_id, **self._options(idempotency_key)
        )
        logger.info("Payment intent captured", intent_id=intent_id, status=intent.status)
        return intent.status

    async def refund(
        self,
        intent_id: str,
        amount: Optional[float],
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundRecord:
        params: Dict[str, Any] = {"payment_intent": intent_id, "reason": "requested_by_customer"}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if reason:
            params["metadata"] = {"reason": reason}

        refund = await self._call(stripe.Refund.create, **params, **self._options(idempotency_key))
        logger.info("Refund created", intent_id=intent_id, refund_id=refund.id, amount=refund.amount)
        return RefundRecord(id=refund.id, amount=refund.amount / 100, status=refund.status)

    async def retrieve_status(self, intent_id: str) -> str:
        intent = await self._call(stripe.PaymentIntent.retrieve, intent_id, **self._options())
        return intent.status

"""
Payment processor: capture and refund of booking payments.

Every side effect is keyed. The key goes to the gateway as its idempotency
key and is recorded in the queue store once the database is updated, so a
redelivered task never charges or refunds twice. A refund key is also saved
on the payment record in the same update that adds its amount, so the local
refund total stays right when the marker write is lost.
"""

from __future__ import annotations

from kivvy.jobs.errors import PaymentRejected, RecordNotFound
from kivvy.jobs.envelope import utcnow
from kivvy.jobs.idempotency import payment_key
from kivvy.jobs.payloads import ProcessPaymentPayload
from kivvy.jobs.worker import TaskContext
from kivvy.services.repository import Booking, BookingStatus, Payment, PaymentStatus

# refunds below a cent are float noise
_EPSILON = 0.005


async def process_payment(payload: ProcessPaymentPayload, ctx: TaskContext) -> None:
    repo = ctx.services.repository

    booking = await repo.get_booking(payload.booking_id)
    if booking is None:
        raise RecordNotFound("Booking", payload.booking_id)
    payment = await repo.get_payment_for_booking(booking.id)
    if payment is None:
        raise RecordNotFound("Payment", booking.id)
    if not payment.stripe_payment_intent_id:
        raise PaymentRejected(f"No payment intent found for booking {booking.id}")

    if payload.action == "refund":
        await _refund(booking, payment, payload, ctx)
    else:
        await _capture(booking, payment, ctx)


async def _capture(booking: Booking, payment: Payment, ctx: TaskContext) -> None:
    repo = ctx.services.repository
    key = payment_key(booking.id, "capture")

    if payment.status == PaymentStatus.SUCCEEDED or await ctx.idempotency.seen(key):
        ctx.log.info("Payment already captured, skipping", payment_id=payment.id)
        return
    if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        raise PaymentRejected(f"Cannot capture payment in status {payment.status.value}")

    await ctx.services.payments.capture(payment.stripe_payment_intent_id, idempotency_key=key)

    await repo.update_payment(payment.id, status=PaymentStatus.SUCCEEDED, captured_at=utcnow())
    await repo.update_booking(booking.id, status=BookingStatus.CONFIRMED)
    await ctx.idempotency.record(key)

    ctx.log.info("Payment captured", payment_id=payment.id, amount=payment.amount)


async def _refund(booking: Booking, payment: Payment, payload: ProcessPaymentPayload, ctx: TaskContext) -> None:
    repo = ctx.services.repository
    key = payment_key(booking.id, "refund", ctx.task.id)

    if await ctx.idempotency.seen(key):
        ctx.log.info("Refund already applied, skipping", payment_id=payment.id)
        return
    if key in payment.refund_keys:
        ctx.log.info("Refund already recorded on payment, skipping", payment_id=payment.id)
        if payment.status == PaymentStatus.REFUNDED and booking.status != BookingStatus.CANCELLED:
            await _cancel_booking(booking, ctx)
        await ctx.idempotency.record(key)
        return
    if payment.status not in (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED):
        raise PaymentRejected(f"Payment must be completed to issue refund (status {payment.status.value})")

    remaining = payment.amount - payment.refund_amount
    amount = payload.amount if payload.amount is not None else remaining
    if amount > remaining + _EPSILON:
        raise PaymentRejected(f"Refund amount {amount:.2f} exceeds refundable {remaining:.2f}")

    refund = await ctx.services.payments.refund(
        payment.stripe_payment_intent_id,
        amount=amount,
        reason=payload.reason,
        idempotency_key=key,
    )

    refunded_total = payment.refund_amount + amount
    full = refunded_total >= payment.amount - _EPSILON

    await repo.update_payment(
        payment.id,
        status=PaymentStatus.REFUNDED if full else PaymentStatus.PARTIALLY_REFUNDED,
        refund_amount=round(refunded_total, 2),
        refund_keys=[*payment.refund_keys, key],
        refunded_at=utcnow(),
    )
    if full:
        await _cancel_booking(booking, ctx)
    await ctx.idempotency.record(key)

    ctx.log.info(
        "Refund processed",
        payment_id=payment.id,
        refund_id=refund.id,
        amount=amount,
        refunded_total=refunded_total,
        full=full,
    )


async def _cancel_booking(booking: Booking, ctx: TaskContext) -> None:
    repo = ctx.services.repository
    await repo.update_booking(booking.id, status=BookingStatus.CANCELLED)
    spots = await repo.adjust_available_spots(booking.session_id, booking.quantity)
    ctx.log.info("Booking cancelled, spots released", session_id=booking.session_id, available_spots=spots)

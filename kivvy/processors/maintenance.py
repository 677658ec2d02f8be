"""
Maintenance and fan-out processors.

All of them are safe to run twice: cleanup deletes by cutoff, stats are
recomputed from scratch, reconciliation only moves payments towards the
gateway's state, and reminder sub-sends are deduplicated per booking and day.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Dict

from kivvy.jobs.dispatcher import JobOptions
from kivvy.jobs.envelope import utcnow
from kivvy.jobs.payloads import (
    BookingReminderPayload,
    CleanupSessionsPayload,
    ImageUploadPayload,
    SyncExternalDataPayload,
    UpdateActivityStatsPayload,
)
from kivvy.jobs.worker import TaskContext
from kivvy.services.repository import BookingStatus, PaymentStatus

# Stripe PaymentIntent status -> local payment status
INTENT_STATUS: Dict[str, PaymentStatus] = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.FAILED,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
}


async def cleanup_expired_sessions(payload: CleanupSessionsPayload, ctx: TaskContext) -> int:
    cutoff = utcnow() - timedelta(days=payload.older_than_days)
    deleted = await ctx.services.repository.delete_auth_sessions_expired_before(cutoff)
    ctx.log.info("Expired sessions cleaned up", deleted=deleted, cutoff=cutoff.isoformat())
    return deleted


async def sync_external_data(payload: SyncExternalDataPayload, ctx: TaskContext) -> int:
    """Reconcile pending payments with the payment provider."""
    repo = ctx.services.repository
    updated = 0

    for status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        for payment in await repo.list_payments(status=status):
            if not payment.stripe_payment_intent_id:
                continue
            remote = await ctx.services.payments.retrieve_status(payment.stripe_payment_intent_id)
            target = INTENT_STATUS.get(remote)
            if target is None or target == payment.status:
                continue

            changes = {"status": target}
            if target == PaymentStatus.SUCCEEDED:
                changes["captured_at"] = utcnow()
            await repo.update_payment(payment.id, **changes)
            if target == PaymentStatus.SUCCEEDED:
                await repo.update_booking(payment.booking_id, status=BookingStatus.CONFIRMED)
            updated += 1
            ctx.log.info("Payment reconciled", payment_id=payment.id, remote_status=remote, status=target.value)

    ctx.log.info("External data sync completed", source=payload.source, updated=updated)
    return updated


async def update_activity_stats(payload: UpdateActivityStatsPayload, ctx: TaskContext) -> int:
    repo = ctx.services.repository
    activities = await repo.list_activities()

    for activity in activities:
        session_ids = {s.id for s in await repo.list_sessions(activity_id=activity.id)}
        total_bookings = sum(1 for b in await repo.list_bookings() if b.session_id in session_ids)
        reviews = await repo.list_reviews(activity_id=activity.id)
        average = sum(r.rating for r in reviews) / len(reviews) if reviews else 0.0

        await repo.update_activity(
            activity.id,
            total_bookings=total_bookings,
            total_reviews=len(reviews),
            average_rating=round(average, 2),
        )

    ctx.log.info("Activity stats updated", activities=len(activities))
    return len(activities)


async def send_booking_reminder(payload: BookingReminderPayload, ctx: TaskContext) -> int:
    """
    Fan out one send-email task per confirmed booking starting in the window.

    The window defaults to tomorrow (UTC) and is ``window_hours`` long. Each
    email is its own task so a failed send is retried alone.
    """
    repo = ctx.services.repository
    start = payload.window_start
    if start is None:
        start = (utcnow() + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(hours=payload.window_hours)

    bookings = await repo.list_bookings(
        status=BookingStatus.CONFIRMED,
        session_start_from=start,
        session_start_to=end,
    )

    enqueued = 0
    for booking in bookings:
        user = await repo.get_user(booking.user_id)
        session = await repo.get_session(booking.session_id)
        activity = await repo.get_activity(session.activity_id) if session else None
        if user is None or activity is None:
            ctx.log.warning("Skipping reminder, booking data incomplete", booking_id=booking.id)
            continue

        handle = await ctx.dispatcher.add_email_job(
            {
                "to": user.email,
                "subject": "Lembrete: Atividade amanhã",
                "template": "booking-reminder",
                "context": {
                    "userName": user.name,
                    "activityTitle": activity.title,
                    "sessionDate": session.start_time.isoformat(),
                    "location": activity.location,
                },
            },
            JobOptions(dedup_key=f"reminder:{booking.id}:{session.start_time.date().isoformat()}"),
            user_id=user.id,
            booking_id=booking.id,
            activity_id=activity.id,
        )
        if not handle.deduplicated:
            enqueued += 1

    ctx.log.info("Booking reminders enqueued", found=len(bookings), enqueued=enqueued)
    return enqueued


async def process_image_upload(payload: ImageUploadPayload, ctx: TaskContext) -> str:
    url = await ctx.services.media.upload(payload.path, payload.folder)
    if payload.activity_id:
        await ctx.services.repository.update_activity(payload.activity_id, image_url=url)
    ctx.log.info("Image processed", path=payload.path, url=url, activity_id=payload.activity_id)
    return url

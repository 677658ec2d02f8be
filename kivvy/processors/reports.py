"""
Report processor.

Aggregates bookings, payments and users over the period window and saves the
result under an id derived from the task id, so a retried task overwrites its
own report instead of adding another.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from kivvy.jobs.envelope import utcnow
from kivvy.jobs.payloads import GenerateReportPayload
from kivvy.jobs.worker import TaskContext
from kivvy.services.repository import BookingStatus, PaymentStatus, Report, Repository

PERIOD_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}


def report_id_for(task_id: str) -> str:
    return f"report-{task_id}"


def period_window(period: str, date: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    [start, end) covered by a report.

    With an explicit ``date`` the window ends at the end of that day;
    otherwise it ends at the start of today (the last complete period).
    """
    if date is None:
        anchor = utcnow()
        end = anchor.replace(hour=0, minute=0, second=0, microsecond=0)
    else:
        if date.tzinfo is None:
            date = date.replace(tzinfo=timezone.utc)
        end = date.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
    return end - timedelta(days=PERIOD_DAYS[period]), end


async def activity_stats(repo: Repository, payload: GenerateReportPayload, start: datetime, end: datetime) -> Dict[str, Any]:
    activities = await repo.list_activities(provider_id=payload.provider_id)
    bookings = await repo.list_bookings(
        status=BookingStatus.CONFIRMED,
        provider_id=payload.provider_id,
        created_from=start,
        created_to=end,
    )
    payments = await repo.list_payments(
        status=PaymentStatus.SUCCEEDED,
        provider_id=payload.provider_id,
        created_from=start,
        created_to=end,
    )
    return {
        "totalActivities": len(activities),
        "totalBookings": len(bookings),
        "totalRevenue": round(sum(p.amount for p in payments), 2),
    }


async def revenue_report(repo: Repository, payload: GenerateReportPayload, start: datetime, end: datetime) -> Dict[str, Any]:
    payments = await repo.list_payments(
        status=PaymentStatus.SUCCEEDED,
        provider_id=payload.provider_id,
        created_from=start,
        created_to=end,
    )
    revenue = round(sum(p.amount for p in payments), 2)
    return {
        "totalRevenue": revenue,
        "totalBookings": len(payments),
        "averageOrderValue": round(revenue / len(payments), 2) if payments else 0,
    }


async def user_engagement(repo: Repository, payload: GenerateReportPayload, start: datetime, end: datetime) -> Dict[str, Any]:
    users = await repo.list_users()
    new_users = [u for u in users if start <= u.created_at < end]
    bookings = await repo.list_bookings(created_from=start, created_to=end)
    active = {b.user_id for b in bookings}
    return {
        "totalUsers": len(users),
        "activeUsers": len(active),
        "newUsers": len(new_users),
        "engagementRate": round(len(active) / len(users) * 100, 2) if users else 0,
    }


GENERATORS: Dict[str, Callable[..., Awaitable[Dict[str, Any]]]] = {
    "activity-stats": activity_stats,
    "revenue-report": revenue_report,
    "user-engagement": user_engagement,
}


async def generate_report(payload: GenerateReportPayload, ctx: TaskContext) -> Report:
    repo = ctx.services.repository
    start, end = period_window(payload.period, payload.date)

    data = await GENERATORS[payload.type](repo, payload, start, end)
    data.update(period=payload.period, windowStart=start.isoformat(), windowEnd=end.isoformat())

    report = await repo.save_report(
        Report(
            id=report_id_for(ctx.task.id),
            type=payload.type,
            period=payload.period,
            data=data,
            provider_id=payload.provider_id,
        )
    )
    ctx.log.info("Report generated", report_id=report.id, type=payload.type, period=payload.period)
    return report

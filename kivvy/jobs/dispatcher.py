"""
Kivvy Dispatcher

The enqueue API used by producers (route handlers, processors, the
scheduler). Validates queue, kind and payload, attaches the queue's retry
policy, persists the task and returns immediately.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

import structlog
from redis.exceptions import RedisError

from kivvy.jobs.backends import QueueStore
from kivvy.jobs.envelope import (
    BackoffType,
    QueueName,
    RetryPolicy,
    Task,
    TaskHandle,
    TaskKind,
    TaskPriority,
    TaskState,
    resolve_kind,
    utcnow,
)
from kivvy.jobs.errors import InvalidTaskKind, QueueError, QueueUnavailable
from kivvy.jobs.events import TaskEvent, TaskEventBus, TaskEventType
from kivvy.jobs.payloads import JobPayload, dump_payload, parse_payload
from kivvy.jobs.scheduler import RecurringScheduler

logger = structlog.get_logger(__name__)

PayloadInput = Union[Dict[str, Any], JobPayload]

MAINTENANCE_TASKS: Dict[str, TaskKind] = {
    "cleanup-sessions": TaskKind.CLEANUP_EXPIRED_SESSIONS,
    "sync-data": TaskKind.SYNC_EXTERNAL_DATA,
    "update-stats": TaskKind.UPDATE_ACTIVITY_STATS,
}


@dataclass
class JobOptions:
    """Per-enqueue overrides."""
    delay_ms: int = 0
    repeat: Optional[str] = None  # cron expression
    priority: Union[TaskPriority, int] = TaskPriority.NORMAL
    max_attempts: Optional[int] = None
    backoff_ms: Optional[int] = None
    backoff_type: Optional[str] = None
    dedup_key: Optional[str] = None


def _get(data: Dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return default


class Dispatcher:
    """Validates and persists tasks; the only way work enters a queue."""

    def __init__(
        self,
        store: QueueStore,
        config,
        events: Optional[TaskEventBus] = None,
        scheduler: Optional[RecurringScheduler] = None,
    ):
        self.store = store
        self.config = config
        self.events = events or TaskEventBus()
        self.scheduler = scheduler

    def _retry_policy(self, queue: QueueName, options: JobOptions) -> RetryPolicy:
        defaults = self.config.queue_policy(queue.value).retry
        return RetryPolicy(
            max_attempts=options.max_attempts or defaults.max_attempts,
            backoff_type=BackoffType(options.backoff_type or defaults.backoff_type),
            backoff_ms=defaults.backoff_ms if options.backoff_ms is None else options.backoff_ms,
        )

    async def enqueue(
        self,
        queue: Union[QueueName, str],
        kind: Union[TaskKind, str],
        payload: Optional[PayloadInput] = None,
        options: Optional[JobOptions] = None,
        *,
        user_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        activity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TaskHandle:
        """
        Enqueue one task.

        Raises:
            UnknownQueue: the queue name does not exist
            InvalidTaskKind: the kind is unknown or not served by the queue
            PayloadValidationError: the payload does not match the kind
            QueueUnavailable: the store could not be reached
        """
        queue_name, task_kind = resolve_kind(queue, kind)
        model = parse_payload(task_kind, payload)
        options = options or JobOptions()
        data = dump_payload(model)

        if options.repeat:
            if self.scheduler is None:
                raise QueueError("Recurring tasks need a scheduler attached to the dispatcher")
            schedule = await self.scheduler.add_schedule(
                queue_name,
                task_kind,
                data,
                options.repeat,
                options=options,
                correlation={"user_id": user_id, "booking_id": booking_id, "activity_id": activity_id},
                metadata=metadata,
            )
            return TaskHandle(
                task_id=None,
                queue=queue_name,
                kind=task_kind,
                state=TaskState.DELAYED,
                schedule_id=schedule.id,
            )

        task = Task(
            queue=queue_name,
            kind=task_kind,
            payload=data,
            priority=TaskPriority(options.priority),
            retry=self._retry_policy(queue_name, options),
            user_id=user_id,
            booking_id=booking_id,
            activity_id=activity_id,
            metadata=dict(metadata or {}),
            dedup_key=options.dedup_key,
        )
        if options.delay_ms and options.delay_ms > 0:
            task.run_at = utcnow() + timedelta(milliseconds=options.delay_ms)

        try:
            created = await self.store.push(task)
        except (RedisError, OSError) as e:
            logger.error("Enqueue failed, store unreachable", queue=queue_name.value, kind=task_kind.value, error=str(e))
            raise QueueUnavailable(f"Cannot enqueue {task_kind.value}: {e}", cause=e) from e

        if not created:
            logger.info(
                "Task deduplicated",
                queue=queue_name.value,
                kind=task_kind.value,
                dedup_key=options.dedup_key,
            )
            return TaskHandle(
                task_id=None,
                queue=queue_name,
                kind=task_kind,
                state=TaskState.WAITING,
                deduplicated=True,
            )

        event = TaskEventType.DELAYED if task.state == TaskState.DELAYED else TaskEventType.WAITING
        await self.events.emit(TaskEvent.for_task(task, event))
        return TaskHandle(task_id=task.id, queue=queue_name, kind=task_kind, state=task.state)

    async def enqueue_best_effort(self, *args: Any, **kwargs: Any) -> Optional[TaskHandle]:
        """
        Same as ``enqueue`` but a down store is logged instead of raised.

        For side-effect tasks (emails, pushes) that must never abort the
        producer's own transaction. Validation errors still propagate.
        """
        try:
            return await self.enqueue(*args, **kwargs)
        except QueueUnavailable as e:
            logger.warning("Best-effort enqueue dropped", error=str(e))
            return None

    # Producer helpers

    async def add_email_job(self, data: PayloadInput, options: Optional[JobOptions] = None, **correlation: Any) -> TaskHandle:
        return await self.enqueue(QueueName.EMAIL, TaskKind.SEND_EMAIL, data, options, **correlation)

    async def add_notification_job(self, data: Dict[str, Any], options: Optional[JobOptions] = None) -> TaskHandle:
        """
        Push or SMS notification.

        ``data`` carries ``type`` (push or sms), ``userId``, ``title``,
        ``message`` and optional ``data``; SMS also needs ``phoneNumber``.
        """
        channel = _get(data, "type", default="push")
        user_id = _get(data, "user_id", "userId")

        if channel == "push":
            payload = {
                "user_id": user_id,
                "title": _get(data, "title"),
                "message": _get(data, "message"),
                "data": _get(data, "data", default={}),
            }
            kind = TaskKind.SEND_PUSH_NOTIFICATION
        elif channel == "sms":
            payload = {
                "to": _get(data, "to", "phone_number", "phoneNumber"),
                "message": _get(data, "message"),
            }
            kind = TaskKind.SEND_SMS
        else:
            raise InvalidTaskKind(QueueName.NOTIFICATION.value, str(channel))

        return await self.enqueue(QueueName.NOTIFICATION, kind, payload, options, user_id=user_id)

    async def add_payment_job(self, data: PayloadInput, options: Optional[JobOptions] = None) -> TaskHandle:
        model = parse_payload(TaskKind.PROCESS_PAYMENT, data)
        return await self.enqueue(
            QueueName.PAYMENT,
            TaskKind.PROCESS_PAYMENT,
            model,
            options,
            booking_id=model.booking_id,
        )

    async def add_report_job(self, data: PayloadInput, options: Optional[JobOptions] = None) -> TaskHandle:
        return await self.enqueue(QueueName.REPORT, TaskKind.GENERATE_REPORT, data, options)

    async def add_maintenance_job(self, data: Dict[str, Any], options: Optional[JobOptions] = None) -> TaskHandle:
        """
        Maintenance task by name: cleanup-sessions, sync-data or update-stats.

        ``parameters`` become the payload of the resulting kind.
        """
        task_name = _get(data, "task")
        kind = MAINTENANCE_TASKS.get(task_name)
        if kind is None:
            raise InvalidTaskKind(QueueName.MAINTENANCE.value, str(task_name))

        parameters = dict(_get(data, "parameters", default={}))
        if kind == TaskKind.SYNC_EXTERNAL_DATA:
            payload = {"source": parameters.pop("source", None), "parameters": parameters}
        else:
            payload = parameters
        return await self.enqueue(QueueName.MAINTENANCE, kind, payload, options)

    async def schedule_booking_reminders(self, delay_ms: int = 0, window_start: Optional[datetime] = None) -> TaskHandle:
        """Enqueue one reminder fan-out run (one per day thanks to its dedup key)."""
        payload: Dict[str, Any] = {}
        if window_start is not None:
            payload["window_start"] = window_start
        day = (window_start or utcnow()).date().isoformat()
        return await self.enqueue(
            QueueName.NOTIFICATION,
            TaskKind.SEND_BOOKING_REMINDER,
            payload,
            JobOptions(delay_ms=delay_ms, dedup_key=f"reminder-run:{day}"),
        )

    async def schedule_default_jobs(self) -> Dict[str, TaskHandle]:
        """Register the recurring maintenance and reminder schedules."""
        cfg = self.config.scheduler
        return {
            "update-activity-stats": await self.enqueue(
                QueueName.MAINTENANCE,
                TaskKind.UPDATE_ACTIVITY_STATS,
                {},
                JobOptions(repeat=cfg.stats_cron, priority=TaskPriority.LOW),
            ),
            "cleanup-expired-sessions": await self.enqueue(
                QueueName.MAINTENANCE,
                TaskKind.CLEANUP_EXPIRED_SESSIONS,
                {"older_than_days": 7},
                JobOptions(repeat=cfg.cleanup_cron, priority=TaskPriority.BACKGROUND),
            ),
            "send-booking-reminder": await self.enqueue(
                QueueName.NOTIFICATION,
                TaskKind.SEND_BOOKING_REMINDER,
                {},
                JobOptions(repeat=cfg.reminder_cron),
            ),
        }

"""
Kivvy Recurring Scheduler

Cron-driven re-enqueue of recurring tasks.

Every worker process may run a scheduler. Schedule ids are derived from the
schedule definition and each firing is enqueued with the dedup key
``schedule:<id>:<fire time>``, so when several processes fire the same entry
only one task is created. Schedules live in memory and are re-registered at
startup; firings missed while no process was running are not caught up.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog
from croniter import croniter

from kivvy.jobs.envelope import QueueName, TaskKind, TaskPriority, utcnow

if TYPE_CHECKING:
    from kivvy.jobs.dispatcher import Dispatcher, JobOptions

logger = structlog.get_logger(__name__)


def schedule_id_for(queue: QueueName, kind: TaskKind, cron_expression: str, payload: Dict[str, Any]) -> str:
    """Stable id so every process registering the same schedule agrees on it."""
    digest = hashlib.sha1(
        json.dumps([queue.value, kind.value, cron_expression, payload], sort_keys=True, default=str).encode()
    ).hexdigest()
    return f"{kind.value}:{digest[:12]}"


@dataclass
class ScheduleEntry:
    """A recurring task definition."""
    id: str
    name: str
    queue: QueueName
    kind: TaskKind
    payload: Dict[str, Any]
    cron_expression: str

    priority: TaskPriority = TaskPriority.NORMAL
    max_attempts: Optional[int] = None
    backoff_ms: Optional[int] = None
    backoff_type: Optional[str] = None
    correlation: Dict[str, Optional[str]] = field(default_factory=dict)

    # State
    enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0
    failure_count: int = 0

    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def calculate_next_run(self, from_time: Optional[datetime] = None, tz: Optional[ZoneInfo] = None) -> datetime:
        """Next firing strictly after ``from_time``, evaluated in ``tz``."""
        base = (from_time or utcnow()).astimezone(tz or timezone.utc)
        return croniter(self.cron_expression, base).get_next(datetime).astimezone(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "queue": self.queue.value,
            "kind": self.kind.value,
            "payload": self.payload,
            "cron_expression": self.cron_expression,
            "priority": self.priority.value,
            "enabled": self.enabled,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }


class RecurringScheduler:
    """
    In-process cron scheduler.

    Features:
    - Cron-based scheduling (croniter)
    - Duplicate-free firing across processes via dispatcher dedup keys
    - Enable/disable and manual trigger
    """

    def __init__(
        self,
        dispatcher: "Dispatcher",
        check_interval: float = 1.0,
        timezone_name: str = "UTC",
    ):
        self.dispatcher = dispatcher
        self.check_interval = check_interval
        self.tz = ZoneInfo(timezone_name)

        self._schedules: Dict[str, ScheduleEntry] = {}
        self._shutdown_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._loop_task is not None:
            return
        self._shutdown_event.clear()
        self._loop_task = asyncio.create_task(self._scheduler_loop())
        logger.info("Recurring scheduler started", schedules=len(self._schedules))

    async def stop(self) -> None:
        self._shutdown_event.set()
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Recurring scheduler stopped")

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _scheduler_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.run_due()
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Scheduler loop error", error=str(e))
                await asyncio.sleep(1)

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Fire every enabled schedule whose next run is due. Returns how many fired."""
        now = now or utcnow()
        fired = 0
        for schedule in list(self._schedules.values()):
            if schedule.enabled and schedule.next_run and schedule.next_run <= now:
                await self._trigger_schedule(schedule, now)
                fired += 1
        return fired

    async def _trigger_schedule(
        self,
        schedule: ScheduleEntry,
        now: datetime,
        fire_time: Optional[datetime] = None,
    ) -> None:
        from kivvy.jobs.dispatcher import JobOptions

        fire_time = fire_time or schedule.next_run or now
        logger.info(
            "Triggering scheduled task",
            schedule_id=schedule.id,
            name=schedule.name,
            kind=schedule.kind.value,
            scheduled_at=fire_time.isoformat(),
        )

        try:
            await self.dispatcher.enqueue(
                schedule.queue,
                schedule.kind,
                schedule.payload,
                JobOptions(
                    priority=schedule.priority,
                    max_attempts=schedule.max_attempts,
                    backoff_ms=schedule.backoff_ms,
                    backoff_type=schedule.backoff_type,
                    dedup_key=f"schedule:{schedule.id}:{int(fire_time.timestamp())}",
                ),
                metadata={
                    "schedule_id": schedule.id,
                    "schedule_name": schedule.name,
                    "scheduled_at": fire_time.isoformat(),
                },
                **schedule.correlation,
            )
            schedule.last_run = now
            schedule.run_count += 1
        except Exception as e:
            logger.error("Failed to trigger schedule", schedule_id=schedule.id, error=str(e))
            schedule.failure_count += 1
        finally:
            # Missed firings are skipped, never replayed
            schedule.next_run = schedule.calculate_next_run(now, self.tz)

    async def add_schedule(
        self,
        queue: QueueName,
        kind: TaskKind,
        payload: Dict[str, Any],
        cron_expression: str,
        name: Optional[str] = None,
        options: Optional["JobOptions"] = None,
        correlation: Optional[Dict[str, Optional[str]]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ScheduleEntry:
        """Register (or refresh) a recurring schedule."""
        if not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression!r}")

        schedule_id = schedule_id_for(queue, kind, cron_expression, payload)
        schedule = ScheduleEntry(
            id=schedule_id,
            name=name or kind.value,
            queue=queue,
            kind=kind,
            payload=payload,
            cron_expression=cron_expression,
            correlation={k: v for k, v in (correlation or {}).items() if v},
            metadata=metadata or {},
        )
        if options is not None:
            schedule.priority = TaskPriority(options.priority)
            schedule.max_attempts = options.max_attempts
            schedule.backoff_ms = options.backoff_ms
            schedule.backoff_type = options.backoff_type

        existing = self._schedules.get(schedule_id)
        if existing is not None:
            schedule.run_count = existing.run_count
            schedule.failure_count = existing.failure_count
            schedule.last_run = existing.last_run
            schedule.enabled = existing.enabled

        schedule.next_run = schedule.calculate_next_run(tz=self.tz)
        self._schedules[schedule_id] = schedule

        logger.info(
            "Schedule added",
            schedule_id=schedule_id,
            name=schedule.name,
            cron=cron_expression,
            next_run=schedule.next_run.isoformat(),
        )
        return schedule

    async def remove_schedule(self, schedule_id: str) -> bool:
        if self._schedules.pop(schedule_id, None) is None:
            return False
        logger.info("Schedule removed", schedule_id=schedule_id)
        return True

    async def enable_schedule(self, schedule_id: str) -> bool:
        schedule = self._schedules.get(schedule_id)
        if not schedule:
            return False
        schedule.enabled = True
        schedule.next_run = schedule.calculate_next_run(tz=self.tz)
        return True

    async def disable_schedule(self, schedule_id: str) -> bool:
        schedule = self._schedules.get(schedule_id)
        if not schedule:
            return False
        schedule.enabled = False
        return True

    def get_schedule(self, schedule_id: str) -> Optional[ScheduleEntry]:
        return self._schedules.get(schedule_id)

    def list_schedules(self, enabled_only: bool = False) -> List[ScheduleEntry]:
        schedules = list(self._schedules.values())
        if enabled_only:
            schedules = [s for s in schedules if s.enabled]
        return schedules

    async def trigger_now(self, schedule_id: str) -> bool:
        """Manually trigger a schedule immediately."""
        schedule = self._schedules.get(schedule_id)
        if not schedule:
            return False
        now = utcnow()
        await self._trigger_schedule(schedule, now, fire_time=now)
        return True

    def get_stats(self) -> Dict[str, Any]:
        schedules = list(self._schedules.values())
        return {
            "running": self.running,
            "total_schedules": len(schedules),
            "enabled_schedules": len([s for s in schedules if s.enabled]),
            "total_runs": sum(s.run_count for s in schedules),
            "total_failures": sum(s.failure_count for s in schedules),
        }

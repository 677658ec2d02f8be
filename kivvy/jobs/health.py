"""
Kivvy Queue Health

Health and stats surface for operators: store reachability, durability,
per-queue counts and pause flags, and worker pool stats when one runs in
this process.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from redis.exceptions import RedisError

from kivvy.jobs.backends import QueueStore
from kivvy.jobs.envelope import QueueName, utcnow

logger = structlog.get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class QueueReport:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False
    reachable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "paused": self.paused,
            "reachable": self.reachable,
        }


@dataclass
class HealthReport:
    status: HealthStatus
    store_reachable: bool
    durable: bool
    mode: str
    queues: Dict[str, QueueReport] = field(default_factory=dict)
    workers: Optional[Dict[str, Any]] = None
    scheduler: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "store_reachable": self.store_reachable,
            "durable": self.durable,
            "mode": self.mode,
            "queues": {name: q.to_dict() for name, q in self.queues.items()},
            "workers": self.workers,
            "scheduler": self.scheduler,
            "timestamp": self.timestamp.isoformat(),
        }


class QueueHealth:
    """
    Builds HealthReports.

    Status is ``unhealthy`` when the store does not answer, ``degraded`` when
    it answers but is not durable (in-memory fallback), ``healthy`` otherwise.
    """

    def __init__(self, store: QueueStore, pool=None, scheduler=None):
        self.store = store
        self.pool = pool
        self.scheduler = scheduler

    async def check(self) -> HealthReport:
        reachable = await self.store.ping()
        queues: Dict[str, QueueReport] = {}

        for queue in QueueName:
            report = QueueReport(reachable=reachable)
            if reachable:
                try:
                    counts = await self.store.get_counts(queue)
                    report = QueueReport(paused=await self.store.is_paused(queue), **counts)
                except (RedisError, OSError) as e:
                    logger.warning("Queue stats unavailable", queue=queue.value, error=str(e))
                    report.reachable = False
            queues[queue.value] = report

        if not reachable or not all(q.reachable for q in queues.values()):
            status = HealthStatus.UNHEALTHY
        elif not self.store.durable:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return HealthReport(
            status=status,
            store_reachable=reachable,
            durable=self.store.durable,
            mode=self.store.mode,
            queues=queues,
            workers=self.pool.get_stats() if self.pool is not None else None,
            scheduler=self.scheduler.get_stats() if self.scheduler is not None else None,
        )

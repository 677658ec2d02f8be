"""
Kivvy Task Envelope

The persisted unit of work: kinds, queues, routing, retry policy and the
serializable Task record shared by every store implementation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from kivvy.jobs.errors import InvalidTaskKind, UnknownQueue


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueName(str, Enum):
    """Named queues. Each one owns its retry/retention policy."""
    EMAIL = "email"
    NOTIFICATION = "notification"
    PAYMENT = "payment"
    REPORT = "report"
    MAINTENANCE = "maintenance"


class TaskKind(str, Enum):
    """Task kinds. A kind is served by exactly one queue."""
    SEND_EMAIL = "send-email"
    SEND_SMS = "send-sms"
    SEND_PUSH_NOTIFICATION = "send-push-notification"
    PROCESS_PAYMENT = "process-payment"
    GENERATE_REPORT = "generate-report"
    CLEANUP_EXPIRED_SESSIONS = "cleanup-expired-sessions"
    SYNC_EXTERNAL_DATA = "sync-external-data"
    UPDATE_ACTIVITY_STATS = "update-activity-stats"
    SEND_BOOKING_REMINDER = "send-booking-reminder"
    PROCESS_IMAGE_UPLOAD = "process-image-upload"


KIND_QUEUE: Dict[TaskKind, QueueName] = {
    TaskKind.SEND_EMAIL: QueueName.EMAIL,
    TaskKind.SEND_SMS: QueueName.NOTIFICATION,
    TaskKind.SEND_PUSH_NOTIFICATION: QueueName.NOTIFICATION,
    TaskKind.SEND_BOOKING_REMINDER: QueueName.NOTIFICATION,
    TaskKind.PROCESS_PAYMENT: QueueName.PAYMENT,
    TaskKind.GENERATE_REPORT: QueueName.REPORT,
    TaskKind.CLEANUP_EXPIRED_SESSIONS: QueueName.MAINTENANCE,
    TaskKind.SYNC_EXTERNAL_DATA: QueueName.MAINTENANCE,
    TaskKind.UPDATE_ACTIVITY_STATS: QueueName.MAINTENANCE,
    TaskKind.PROCESS_IMAGE_UPLOAD: QueueName.MAINTENANCE,
}


def kinds_for_queue(queue: QueueName) -> Tuple[TaskKind, ...]:
    return tuple(kind for kind, q in KIND_QUEUE.items() if q == queue)


def resolve_queue(name: Any) -> QueueName:
    """Map a queue name to QueueName, raising UnknownQueue."""
    if isinstance(name, QueueName):
        return name
    try:
        return QueueName(str(name))
    except ValueError:
        raise UnknownQueue(str(name)) from None


def resolve_kind(queue: Any, kind: Any) -> Tuple[QueueName, TaskKind]:
    """Validate that ``kind`` exists and is routed to ``queue``."""
    queue_name = resolve_queue(queue)
    try:
        task_kind = kind if isinstance(kind, TaskKind) else TaskKind(str(kind))
    except ValueError:
        raise InvalidTaskKind(queue_name.value, str(kind)) from None
    if KIND_QUEUE[task_kind] != queue_name:
        raise InvalidTaskKind(queue_name.value, task_kind.value)
    return queue_name, task_kind


class TaskState(str, Enum):
    """Task execution state."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(int, Enum):
    """Task priority levels. Lower is claimed first."""
    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3
    BACKGROUND = 4


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass
class RetryPolicy:
    """Attempt budget and backoff for a task."""
    max_attempts: int = 3
    backoff_type: BackoffType = BackoffType.EXPONENTIAL
    backoff_ms: int = 2000

    def delay_ms(self, attempts_made: int) -> int:
        """Delay before the next attempt once ``attempts_made`` attempts have run."""
        if self.backoff_type == BackoffType.FIXED:
            return self.backoff_ms
        return int(self.backoff_ms * (2 ** max(attempts_made - 1, 0)))

    def exhausted(self, attempts_made: int) -> bool:
        return attempts_made >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_type": self.backoff_type.value,
            "backoff_ms": self.backoff_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            backoff_type=BackoffType(data.get("backoff_type", BackoffType.EXPONENTIAL.value)),
            backoff_ms=int(data.get("backoff_ms", 2000)),
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Task:
    """
    A unit of background work.

    Tasks are created by the dispatcher, persisted by a QueueStore and claimed
    by exactly one worker slot at a time. The payload is never mutated after
    enqueue.
    """
    queue: QueueName
    kind: TaskKind
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    priority: TaskPriority = TaskPriority.NORMAL
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Correlation (logs and alerts only)
    user_id: Optional[str] = None
    booking_id: Optional[str] = None
    activity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    dedup_key: Optional[str] = None

    # Execution tracking
    state: TaskState = TaskState.WAITING
    attempts_made: int = 0
    stalled_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    run_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    error: Optional[str] = None
    error_traceback: Optional[str] = None

    @property
    def correlation(self) -> Dict[str, str]:
        """Non-empty correlation ids, ready to bind into a logger."""
        ids = {
            "user_id": self.user_id,
            "booking_id": self.booking_id,
            "activity_id": self.activity_id,
        }
        return {k: v for k, v in ids.items() if v}

    @property
    def is_finished(self) -> bool:
        return self.state in (TaskState.COMPLETED, TaskState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize task to dictionary."""
        return {
            "id": self.id,
            "queue": self.queue.value,
            "kind": self.kind.value,
            "payload": self.payload,
            "priority": self.priority.value,
            "retry": self.retry.to_dict(),
            "user_id": self.user_id,
            "booking_id": self.booking_id,
            "activity_id": self.activity_id,
            "metadata": self.metadata,
            "dedup_key": self.dedup_key,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "stalled_count": self.stalled_count,
            "created_at": _iso(self.created_at),
            "run_at": _iso(self.run_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "worker_id": self.worker_id,
            "error": self.error,
            "error_traceback": self.error_traceback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Deserialize task from dictionary."""
        return cls(
            id=data["id"],
            queue=QueueName(data["queue"]),
            kind=TaskKind(data["kind"]),
            payload=data.get("payload") or {},
            priority=TaskPriority(data.get("priority", TaskPriority.NORMAL.value)),
            retry=RetryPolicy.from_dict(data.get("retry") or {}),
            user_id=data.get("user_id"),
            booking_id=data.get("booking_id"),
            activity_id=data.get("activity_id"),
            metadata=data.get("metadata") or {},
            dedup_key=data.get("dedup_key"),
            state=TaskState(data.get("state", TaskState.WAITING.value)),
            attempts_made=int(data.get("attempts_made", 0)),
            stalled_count=int(data.get("stalled_count", 0)),
            created_at=_parse(data.get("created_at")) or utcnow(),
            run_at=_parse(data.get("run_at")),
            started_at=_parse(data.get("started_at")),
            finished_at=_parse(data.get("finished_at")),
            worker_id=data.get("worker_id"),
            error=data.get("error"),
            error_traceback=data.get("error_traceback"),
        )


@dataclass
class TaskHandle:
    """
    What a producer gets back from enqueue.

    ``task_id`` is None when nothing was stored: a deduplicated enqueue, or a
    recurring registration (see ``schedule_id``).
    """
    task_id: Optional[str]
    queue: QueueName
    kind: TaskKind
    state: TaskState
    deduplicated: bool = False
    schedule_id: Optional[str] = None

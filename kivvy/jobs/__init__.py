"""
Kivvy Background Jobs

Multi-queue, multi-worker task system:
- Typed task envelopes and payloads
- Durable (Redis) and ephemeral (memory) queue stores
- Dispatcher with delays, dedup and recurring schedules
- Worker pool with retries, backoff and stall recovery
"""

from kivvy.jobs.backends import InMemoryQueueStore, QueueStore, RedisQueueStore, open_queue_store
from kivvy.jobs.dispatcher import Dispatcher, JobOptions
from kivvy.jobs.envelope import (
    KIND_QUEUE,
    BackoffType,
    QueueName,
    RetryPolicy,
    Task,
    TaskHandle,
    TaskKind,
    TaskPriority,
    TaskState,
)
from kivvy.jobs.errors import (
    DeliveryRejected,
    InvalidTaskKind,
    PaymentRejected,
    PayloadValidationError,
    QueueError,
    QueueUnavailable,
    RecordNotFound,
    TerminalTaskError,
    UnknownQueue,
)
from kivvy.jobs.events import LogSubscriber, TaskEvent, TaskEventBus, TaskEventType
from kivvy.jobs.health import HealthReport, QueueHealth
from kivvy.jobs.scheduler import RecurringScheduler, ScheduleEntry
from kivvy.jobs.worker import QueueWorker, TaskContext, WorkerPool

__all__ = [
    # Envelope
    "Task",
    "TaskHandle",
    "TaskKind",
    "TaskPriority",
    "TaskState",
    "QueueName",
    "RetryPolicy",
    "BackoffType",
    "KIND_QUEUE",
    # Stores
    "QueueStore",
    "InMemoryQueueStore",
    "RedisQueueStore",
    "open_queue_store",
    # Producing
    "Dispatcher",
    "JobOptions",
    "RecurringScheduler",
    "ScheduleEntry",
    # Consuming
    "QueueWorker",
    "WorkerPool",
    "TaskContext",
    # Events and health
    "TaskEvent",
    "TaskEventBus",
    "TaskEventType",
    "LogSubscriber",
    "QueueHealth",
    "HealthReport",
    # Errors
    "QueueError",
    "QueueUnavailable",
    "UnknownQueue",
    "InvalidTaskKind",
    "PayloadValidationError",
    "TerminalTaskError",
    "RecordNotFound",
    "PaymentRejected",
    "DeliveryRejected",
]

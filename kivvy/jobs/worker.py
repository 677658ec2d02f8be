"""
Kivvy Workers

Cooperative worker slots that claim tasks from the queue store and run the
matching processor.

A QueueWorker runs N slots per kind its queue serves (N from the concurrency
table); a WorkerPool owns one QueueWorker per queue plus the stall monitor.
Delivery is at-least-once: a slot that dies mid-task leaves its lease to
expire and the stall monitor hands the task out again.
"""

from __future__ import annotations

import asyncio
import socket
import time
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog
from redis.exceptions import RedisError

from kivvy.core.config import WorkerConfig
from kivvy.jobs.backends import STALLED_ERROR, QueueStore
from kivvy.jobs.dispatcher import Dispatcher
from kivvy.jobs.envelope import QueueName, Task, TaskKind, TaskState, kinds_for_queue, utcnow
from kivvy.jobs.errors import PayloadValidationError, TerminalTaskError
from kivvy.jobs.events import TaskEvent, TaskEventBus, TaskEventType
from kivvy.jobs.idempotency import IdempotencyGuard
from kivvy.jobs.payloads import parse_payload

logger = structlog.get_logger(__name__)


@dataclass
class TaskContext:
    """What a processor gets besides its payload."""
    task: Task
    services: Any
    dispatcher: Dispatcher
    store: QueueStore
    log: Any

    @property
    def attempt(self) -> int:
        return self.task.attempts_made

    @property
    def idempotency(self) -> IdempotencyGuard:
        return IdempotencyGuard(self.store)


Processor = Callable[[Any, TaskContext], Awaitable[Any]]


class WorkerStatus(str, Enum):
    """Worker status."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class WorkerStats:
    """Worker statistics."""
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_retried: int = 0
    total_execution_time_ms: float = 0.0
    last_task_at: Optional[datetime] = None
    started_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_retried": self.tasks_retried,
            "avg_execution_time_ms": (
                self.total_execution_time_ms / self.tasks_completed
                if self.tasks_completed > 0 else 0
            ),
            "last_task_at": self.last_task_at.isoformat() if self.last_task_at else None,
            "uptime_seconds": (utcnow() - self.started_at).total_seconds() if self.started_at else 0.0,
        }


class QueueWorker:
    """
    Runs the slots of one queue.

    Each slot loops: claim, emit ``active``, run the processor while renewing
    the lease, then complete, retry with backoff, or fail.
    """

    def __init__(
        self,
        queue: QueueName,
        store: QueueStore,
        processors: Dict[TaskKind, Processor],
        dispatcher: Dispatcher,
        services: Any = None,
        events: Optional[TaskEventBus] = None,
        worker_config: Optional[WorkerConfig] = None,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.store = store
        self.processors = processors
        self.dispatcher = dispatcher
        self.services = services
        self.events = events or dispatcher.events
        self.config = worker_config or WorkerConfig()
        self.worker_id = worker_id or f"worker-{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

        self.status = WorkerStatus.STOPPED
        self.stats = WorkerStats()
        self.current_tasks: Dict[str, Task] = {}

        self._shutdown_event = asyncio.Event()
        self._slots: List[asyncio.Task] = []

    def slot_counts(self) -> Dict[TaskKind, int]:
        counts = {}
        for kind in kinds_for_queue(self.queue):
            if kind not in self.processors:
                continue
            counts[kind] = max(int(self.config.concurrency.get(kind.value, 1)), 0)
        return counts

    async def start(self) -> None:
        if self.status != WorkerStatus.STOPPED:
            raise RuntimeError(f"Worker already in state: {self.status}")

        self._shutdown_event.clear()
        self.stats.started_at = utcnow()
        counts = self.slot_counts()

        for kind, slots in counts.items():
            for index in range(slots):
                self._slots.append(
                    asyncio.create_task(
                        self._slot_loop(kind, index),
                        name=f"{self.worker_id}-{kind.value}-{index}",
                    )
                )

        missing = [k.value for k in kinds_for_queue(self.queue) if k not in self.processors]
        if missing:
            logger.warning("No processor registered", queue=self.queue.value, kinds=missing)

        self.status = WorkerStatus.RUNNING
        logger.info(
            "Queue worker started",
            queue=self.queue.value,
            worker_id=self.worker_id,
            slots={k.value: n for k, n in counts.items()},
        )

    def request_stop(self) -> None:
        """Stop claiming; in-flight tasks keep running."""
        if self.status == WorkerStatus.RUNNING:
            self.status = WorkerStatus.STOPPING
        self._shutdown_event.set()

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop claiming, let in-flight tasks finish, cancel them after ``timeout``."""
        if self.status == WorkerStatus.STOPPED:
            return

        self.request_stop()
        logger.info("Stopping queue worker", queue=self.queue.value, active_tasks=len(self.current_tasks))

        if self._slots:
            _, pending = await asyncio.wait(self._slots, timeout=timeout)
            for slot in pending:
                slot.cancel()
            if pending:
                logger.warning(
                    "Cancelled in-flight tasks at shutdown",
                    queue=self.queue.value,
                    cancelled=len(pending),
                )
                await asyncio.gather(*pending, return_exceptions=True)
        self._slots = []

        self.status = WorkerStatus.STOPPED
        logger.info("Queue worker stopped", queue=self.queue.value)

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.config.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _slot_loop(self, kind: TaskKind, index: int) -> None:
        slot_id = f"{self.worker_id}:{kind.value}:{index}"
        while not self._shutdown_event.is_set():
            try:
                task = await self.store.claim_next(self.queue, kind, slot_id, self.config.lease_seconds)
                if task is None:
                    await self._idle()
                    continue
                await self._execute_task(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Worker slot error",
                    queue=self.queue.value,
                    kind=kind.value,
                    slot=index,
                    error=str(e),
                )
                await self._idle()

    async def _renew_lease(self, task: Task) -> None:
        while True:
            await asyncio.sleep(self.config.lease_renew_interval)
            try:
                if not await self.store.extend_lease(task, self.config.lease_seconds):
                    logger.warning("Task lease lost", task_id=task.id, queue=task.queue.value)
                    return
            except (RedisError, OSError) as e:
                logger.warning("Lease renewal failed", task_id=task.id, error=str(e))

    async def _execute_task(self, task: Task) -> None:
        """Run one claimed task to a final or retry state."""
        self.current_tasks[task.id] = task
        await self.events.emit(TaskEvent.for_task(task, TaskEventType.ACTIVE))

        log = logger.bind(task_id=task.id, queue=task.queue.value, kind=task.kind.value, attempt=task.attempts_made, **task.correlation)
        started = time.monotonic()
        renewer = asyncio.create_task(self._renew_lease(task))

        try:
            processor = self.processors.get(task.kind)
            if processor is None:
                raise TerminalTaskError(f"No processor for task kind: {task.kind.value}")
            payload = parse_payload(task.kind, task.payload)
            ctx = TaskContext(task=task, services=self.services, dispatcher=self.dispatcher, store=self.store, log=log)
            await processor(payload, ctx)
        except asyncio.CancelledError:
            # The lease expires and the stall monitor requeues the task
            log.warning("Task cancelled mid-flight")
            raise
        except Exception as e:
            duration_ms = (time.monotonic() - started) * 1000
            await self._handle_failure(task, e, duration_ms, log)
        else:
            duration_ms = (time.monotonic() - started) * 1000
            await self._handle_success(task, duration_ms, log)
        finally:
            renewer.cancel()
            self.current_tasks.pop(task.id, None)

    async def _handle_success(self, task: Task, duration_ms: float, log: Any) -> None:
        task.finished_at = utcnow()
        if not await self.store.complete(task):
            log.warning("Completed task no longer owned; result not recorded")
            return

        self.stats.tasks_completed += 1
        self.stats.total_execution_time_ms += duration_ms
        self.stats.last_task_at = task.finished_at
        await self.events.emit(TaskEvent.for_task(task, TaskEventType.COMPLETED, duration_ms=duration_ms))

    async def _handle_failure(self, task: Task, error: Exception, duration_ms: float, log: Any) -> None:
        task.error = str(error) or error.__class__.__name__
        task.error_traceback = traceback.format_exc()
        terminal = isinstance(error, (TerminalTaskError, PayloadValidationError)) or task.retry.exhausted(task.attempts_made)

        if terminal:
            owned = await self.store.fail(task)
            self.stats.tasks_failed += 1
        else:
            delay_ms = task.retry.delay_ms(task.attempts_made)
            owned = await self.store.retry(task, delay_ms)
            self.stats.tasks_retried += 1
            log = log.bind(retry_in_ms=delay_ms)

        if not owned:
            log.warning("Failed task no longer owned; outcome not recorded", error=task.error)
            return

        self.stats.last_task_at = utcnow()
        await self.events.emit(
            TaskEvent.for_task(
                task,
                TaskEventType.FAILED,
                duration_ms=duration_ms,
                error=task.error,
                terminal=terminal,
            )
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queue": self.queue.value,
            "worker_id": self.worker_id,
            "status": self.status.value,
            "slots": {k.value: n for k, n in self.slot_counts().items()},
            "active_tasks": len(self.current_tasks),
            **self.stats.to_dict(),
        }


class WorkerPool:
    """
    One QueueWorker per queue plus the stall monitor.

    Features:
    - Per-(queue, kind) concurrency
    - Stall detection and recovery
    - Pause/resume per queue (shared through the store)
    - Graceful shutdown
    """

    def __init__(
        self,
        store: QueueStore,
        processors: Dict[TaskKind, Processor],
        dispatcher: Dispatcher,
        services: Any = None,
        events: Optional[TaskEventBus] = None,
        worker_config: Optional[WorkerConfig] = None,
        queues: Optional[Sequence[QueueName]] = None,
        pool_id: Optional[str] = None,
    ):
        self.store = store
        self.events = events or dispatcher.events
        self.config = worker_config or WorkerConfig()
        self.pool_id = pool_id or f"pool-{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

        self.workers: Dict[QueueName, QueueWorker] = {
            queue: QueueWorker(
                queue,
                store,
                processors,
                dispatcher,
                services=services,
                events=self.events,
                worker_config=self.config,
                worker_id=f"{self.pool_id}-{queue.value}",
            )
            for queue in (queues or list(QueueName))
        }

        self._stall_task: Optional[asyncio.Task] = None
        self._running = False
        self.stalled_recovered = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        for worker in self.workers.values():
            await worker.start()
        self._stall_task = asyncio.create_task(self._stall_monitor_loop(), name=f"{self.pool_id}-stall-monitor")
        self._running = True
        logger.info("Worker pool started", pool_id=self.pool_id, queues=[q.value for q in self.workers])

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop every queue worker; in-flight tasks get ``timeout`` seconds to finish."""
        if not self._running:
            return
        timeout = self.config.shutdown_timeout if timeout is None else timeout

        for worker in self.workers.values():
            worker.request_stop()
        await asyncio.gather(*(w.stop(timeout) for w in self.workers.values()))

        if self._stall_task:
            self._stall_task.cancel()
            try:
                await self._stall_task
            except asyncio.CancelledError:
                pass
            self._stall_task = None

        self._running = False
        logger.info("Worker pool stopped", pool_id=self.pool_id)

    async def pause(self, queue: QueueName) -> None:
        await self.store.set_paused(queue, True)
        logger.info("Queue paused", queue=queue.value)

    async def resume(self, queue: QueueName) -> None:
        await self.store.set_paused(queue, False)
        logger.info("Queue resumed", queue=queue.value)

    async def _stall_monitor_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.stall_check_interval)
                await self.check_stalled()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Stall monitor error", error=str(e))

    async def check_stalled(self, now: Optional[float] = None) -> List[Task]:
        """Recover expired leases once; emits ``stalled`` (and ``failed`` past the limit)."""
        recovered = await self.store.recover_stalled(now)
        for task in recovered:
            self.stalled_recovered += 1
            await self.events.emit(TaskEvent.for_task(task, TaskEventType.STALLED))
            if task.state == TaskState.FAILED:
                await self.events.emit(
                    TaskEvent.for_task(task, TaskEventType.FAILED, error=STALLED_ERROR, terminal=True)
                )
        return recovered

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "running": self._running,
            "stalled_recovered": self.stalled_recovered,
            "workers": {q.value: w.get_stats() for q, w in self.workers.items()},
        }

"""
Task lifecycle events.

Process-local pub/sub: the dispatcher, workers and stall monitor emit a
TaskEvent for every state transition; subscribers (the log subscriber, the
payment alert hook, tests) receive them in order. A failing subscriber is
logged and skipped, never propagated into the worker.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from kivvy.jobs.envelope import Task, utcnow

logger = structlog.get_logger(__name__)


class TaskEventType(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


@dataclass
class TaskEvent:
    """A single lifecycle transition of a task."""
    queue: str
    task_id: str
    kind: str
    event: TaskEventType
    attempt: int = 0
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    terminal: bool = False
    timestamp: datetime = field(default_factory=utcnow)
    correlation: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def for_task(cls, task: Task, event: TaskEventType, **kwargs: Any) -> "TaskEvent":
        return cls(
            queue=task.queue.value,
            task_id=task.id,
            kind=task.kind.value,
            event=event,
            attempt=task.attempts_made,
            correlation=task.correlation,
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue": self.queue,
            "task_id": self.task_id,
            "kind": self.kind,
            "event": self.event.value,
            "attempt": self.attempt,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "terminal": self.terminal,
            "timestamp": self.timestamp.isoformat(),
            **self.correlation,
        }


EventHandler = Callable[[TaskEvent], Union[None, Awaitable[None]]]


class TaskEventBus:
    """Fan-out of task events to subscribers."""

    def __init__(self):
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler``; returns a function that unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def emit(self, event: TaskEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    "Task event subscriber failed",
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    event=event.event.value,
                    task_id=event.task_id,
                    error=str(e),
                )


class LogSubscriber:
    """Writes every lifecycle event to the structured log."""

    def __call__(self, event: TaskEvent) -> None:
        fields = event.to_dict()
        name = f"task_{fields.pop('event')}"
        fields.pop("timestamp")
        if event.event == TaskEventType.FAILED:
            if event.terminal:
                logger.error(name, **fields)
            else:
                logger.warning(name, **fields)
        elif event.event == TaskEventType.STALLED:
            logger.warning(name, **fields)
        else:
            logger.info(name, **fields)

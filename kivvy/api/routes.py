"""
Kivvy Queue API Routes

Health and admin endpoints for the job queues:
- GET  /health/queues   store reachability, durability and per-queue counts
- GET  /admin/queues    health plus worker and schedule stats
- POST /admin/queues    pause, resume or clean a queue
"""

from __future__ import annotations

from typing import Any, Dict, Literal

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from redis.exceptions import RedisError

import structlog

from kivvy.jobs.envelope import resolve_queue
from kivvy.jobs.errors import UnknownQueue
from kivvy.jobs.health import HealthStatus

logger = structlog.get_logger(__name__)


class QueueActionRequest(BaseModel):
    """Admin action on one queue."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: Literal["pause", "resume", "clean"]
    queue_name: str = Field(..., description="email, notification, payment, report or maintenance")


def create_queue_router(runtime) -> APIRouter:
    """
    Build the queue router bound to a JobRuntime.

    The runtime must be initialized before the first request.
    """
    router = APIRouter(tags=["Queues"])

    @router.get("/health/queues")
    async def queue_health():
        report = await runtime.check_health()
        status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
        return JSONResponse(status_code=status_code, content=report.to_dict())

    @router.get("/admin/queues", response_model=Dict[str, Any])
    async def admin_queues():
        report = await runtime.check_health()
        return {
            **report.to_dict(),
            "schedules": [s.to_dict() for s in runtime.scheduler.list_schedules()] if runtime.scheduler else [],
        }

    @router.post("/admin/queues", response_model=Dict[str, Any])
    async def queue_action(request: QueueActionRequest):
        try:
            queue = resolve_queue(request.queue_name)
        except UnknownQueue as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            if request.action == "pause":
                await runtime.store.set_paused(queue, True)
                message = f"Queue {queue.value} paused"
                result: Dict[str, Any] = {}
            elif request.action == "resume":
                await runtime.store.set_paused(queue, False)
                message = f"Queue {queue.value} resumed"
                result = {}
            else:
                removed = await runtime.store.clean(queue)
                message = f"Queue {queue.value} cleaned"
                result = {"removed": removed}
        except (RedisError, OSError) as e:
            logger.error("Queue action failed", action=request.action, queue=queue.value, error=str(e))
            raise HTTPException(status_code=503, detail="Queue store unavailable")

        logger.info("Queue action applied", action=request.action, queue=queue.value)
        return {"success": True, "message": message, **result}

    return router


def setup_queue_routes(app, runtime) -> None:
    """Mount the queue router on ``app``."""
    app.include_router(create_queue_router(runtime))

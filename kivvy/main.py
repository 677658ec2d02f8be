"""
Kivvy Jobs - HTTP entry point

Serves the queue health/admin API. With ``run_workers`` the same process also
runs the worker pool and the recurring scheduler.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI

from kivvy.api.routes import setup_queue_routes
from kivvy.core.config import KivvyConfig, get_config, set_config
from kivvy.core.logging import setup_logging
from kivvy.runtime import JobRuntime

logger = structlog.get_logger(__name__)


def create_app(
    config: Optional[KivvyConfig] = None,
    runtime: Optional[JobRuntime] = None,
    run_workers: bool = False,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config: Optional configuration override
        runtime: Pre-built runtime (tests); one is created from ``config`` otherwise
        run_workers: Also consume tasks in this process
    """
    if config:
        set_config(config)
    else:
        config = get_config()

    setup_logging(config.log_level.value, json_logs=config.log_format == "json")
    runtime = runtime or JobRuntime(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Kivvy jobs API", run_workers=run_workers)
        if run_workers:
            await runtime.start_workers()
        else:
            await runtime.initialize()
        yield
        logger.info("Shutting down Kivvy jobs API")
        await runtime.shutdown()

    app = FastAPI(
        title="Kivvy Jobs",
        description="Queue health and administration for the Kivvy background jobs.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    setup_queue_routes(app, runtime)
    return app


def run_server(
    host: str = "0.0.0.0",
    port: int = 8000,
    run_workers: bool = False,
    config: Optional[KivvyConfig] = None,
) -> None:
    """Run the API with uvicorn."""
    config = config or get_config()
    app = create_app(config, run_workers=run_workers)
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.value.lower())

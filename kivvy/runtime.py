"""
Kivvy Job Runtime

Owns the process-wide job objects: queue store, dispatcher, scheduler,
services bundle and worker pool. Producers and the admin surfaces receive
this object (or its dispatcher) explicitly; nothing here is a module global.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Dict, Optional, Sequence

import structlog

from kivvy.core.config import KivvyConfig, get_config
from kivvy.jobs.alerts import AlertManager, PaymentFailureAlerter
from kivvy.jobs.backends import QueueStore, open_queue_store
from kivvy.jobs.dispatcher import Dispatcher
from kivvy.jobs.envelope import QueueName, TaskKind
from kivvy.jobs.events import LogSubscriber, TaskEventBus
from kivvy.jobs.health import HealthReport, QueueHealth
from kivvy.jobs.scheduler import RecurringScheduler
from kivvy.jobs.worker import Processor, WorkerPool
from kivvy.processors import build_processors
from kivvy.services import Services, build_services

logger = structlog.get_logger(__name__)


class JobRuntime:
    """
    Lifecycle of the background job system in one process.

    ``initialize`` opens the store and wires producers; ``start_workers``
    additionally runs the worker pool and the recurring scheduler.
    ``shutdown`` stops claiming, drains in-flight tasks and closes the store.
    """

    def __init__(
        self,
        config: Optional[KivvyConfig] = None,
        services: Optional[Services] = None,
        processors: Optional[Dict[TaskKind, Processor]] = None,
        store: Optional[QueueStore] = None,
        alerts: Optional[AlertManager] = None,
    ):
        self.config = config or get_config()
        self.services = services
        self.processors = processors
        self.store = store
        self.alerts = alerts

        self.events = TaskEventBus()
        self.dispatcher: Optional[Dispatcher] = None
        self.scheduler: Optional[RecurringScheduler] = None
        self.pool: Optional[WorkerPool] = None

        self._unsubscribers = []
        self._initialized = False
        self._stop_event = asyncio.Event()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return

        if self.store is None:
            self.store = await open_queue_store(self.config)
        else:
            await self.store.initialize()

        if self.services is None:
            self.services = build_services(self.config)
        if self.processors is None:
            self.processors = build_processors()
        if self.alerts is None:
            self.alerts = AlertManager.from_config(self.config.alerts)

        self._unsubscribers = [
            self.events.subscribe(LogSubscriber()),
            self.events.subscribe(PaymentFailureAlerter(self.alerts)),
        ]

        self.dispatcher = Dispatcher(self.store, self.config, events=self.events)
        self.scheduler = RecurringScheduler(
            self.dispatcher,
            check_interval=self.config.scheduler.check_interval,
            timezone_name=self.config.scheduler.timezone,
        )
        self.dispatcher.scheduler = self.scheduler

        self._initialized = True
        logger.info(
            "Job runtime initialized",
            instance_id=self.config.instance_id,
            store_mode=self.store.mode,
            durable=self.store.durable,
        )

    async def start_workers(self, queues: Optional[Sequence[QueueName]] = None) -> None:
        """Run the worker pool (all queues by default) and the scheduler."""
        await self.initialize()

        self.pool = WorkerPool(
            self.store,
            self.processors,
            self.dispatcher,
            services=self.services,
            events=self.events,
            worker_config=self.config.worker,
            queues=queues,
            pool_id=self.config.instance_id,
        )
        await self.pool.start()

        if self.config.scheduler.enabled:
            if self.config.scheduler.register_defaults:
                await self.dispatcher.schedule_default_jobs()
            await self.scheduler.start()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        if not self._initialized:
            return
        logger.info("Shutting down job runtime")

        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.pool is not None:
            await self.pool.stop(timeout)
            self.pool = None
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.store.shutdown()

        self._initialized = False
        self._stop_event.set()
        logger.info("Job runtime shutdown complete")

    def health(self) -> QueueHealth:
        return QueueHealth(self.store, pool=self.pool, scheduler=self.scheduler)

    async def check_health(self) -> HealthReport:
        return await self.health().check()

    def request_shutdown(self) -> None:
        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        """SIGTERM/SIGINT trigger a graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                logger.debug("Signal handlers unavailable", signal=sig.name)

    async def run_forever(self, queues: Optional[Sequence[QueueName]] = None) -> None:
        """Worker process main: start everything, block until signalled, then drain."""
        self._stop_event.clear()
        self.install_signal_handlers()
        await self.start_workers(queues)
        logger.info("Workers running; waiting for shutdown signal")
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    def get_status(self) -> Dict[str, Any]:
        return {
            "initialized": self._initialized,
            "instance_id": self.config.instance_id,
            "store": {"mode": self.store.mode, "durable": self.store.durable} if self.store else None,
            "workers": self.pool.get_stats() if self.pool else None,
            "scheduler": self.scheduler.get_stats() if self.scheduler else None,
        }

"""
Kivvy Command Line Interface

Run workers and administer the job queues from the command line.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from kivvy.core.config import KivvyConfig, LogLevel, get_config
from kivvy.core.logging import setup_logging
from kivvy.jobs.dispatcher import JobOptions
from kivvy.jobs.envelope import QueueName, TaskPriority, resolve_queue
from kivvy.jobs.errors import QueueError
from kivvy.runtime import JobRuntime

QUEUE_CHOICES = [q.value for q in QueueName]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kivvy",
        description="Kivvy background jobs CLI",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=[level.value for level in LogLevel],
        default=None,
        help="Override KIVVY_LOG_LEVEL",
    )
    parser.add_argument(
        "--backend",
        choices=["auto", "redis", "memory"],
        default=None,
        help="Override KIVVY_QUEUE_BACKEND",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Worker command
    worker_parser = subparsers.add_parser("worker", help="Run the worker pool until SIGTERM/SIGINT")
    worker_parser.add_argument(
        "--queue",
        dest="queues",
        action="append",
        choices=QUEUE_CHOICES,
        help="Queue to consume (repeatable, default all)",
    )
    worker_parser.add_argument("--no-scheduler", action="store_true", help="Do not run recurring schedules")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Serve the queue health/admin API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port")
    serve_parser.add_argument("--with-workers", action="store_true", help="Also run workers in-process")

    # Stats command
    subparsers.add_parser("stats", help="Print queue health and counts")

    # Enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue one task")
    enqueue_parser.add_argument("queue", choices=QUEUE_CHOICES)
    enqueue_parser.add_argument("kind", help="Task kind, e.g. send-email")
    enqueue_parser.add_argument("--payload", type=json.loads, default={}, help="JSON payload")
    enqueue_parser.add_argument("--delay-ms", type=int, default=0)
    enqueue_parser.add_argument("--priority", type=int, default=int(TaskPriority.NORMAL), choices=[int(p) for p in TaskPriority])
    enqueue_parser.add_argument("--dedup-key", default=None)

    # Queue admin commands
    for name, help_text in (
        ("pause", "Pause a queue (workers stop claiming)"),
        ("resume", "Resume a paused queue"),
        ("clean", "Drop completed and failed task records"),
    ):
        admin_parser = subparsers.add_parser(name, help=help_text)
        admin_parser.add_argument("queue", choices=QUEUE_CHOICES)

    return parser


def _config_from_args(args: argparse.Namespace) -> KivvyConfig:
    config = get_config()
    updates = {}
    if args.log_level:
        updates["log_level"] = LogLevel(args.log_level)
    if args.backend:
        updates["queue_backend"] = args.backend
    if getattr(args, "no_scheduler", False):
        updates["scheduler"] = config.scheduler.model_copy(update={"enabled": False})
    return config.model_copy(update=updates) if updates else config


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = _config_from_args(args)
    setup_logging(config.log_level.value, json_logs=config.log_format == "json")

    if args.command == "serve":
        from kivvy.main import run_server
        run_server(host=args.host, port=args.port, run_workers=args.with_workers, config=config)
        return 0

    try:
        if args.command == "worker":
            queues = [resolve_queue(q) for q in args.queues] if args.queues else None
            asyncio.run(JobRuntime(config).run_forever(queues))
        elif args.command == "stats":
            asyncio.run(cmd_stats(config))
        elif args.command == "enqueue":
            asyncio.run(cmd_enqueue(config, args))
        elif args.command in ("pause", "resume", "clean"):
            asyncio.run(cmd_queue_action(config, args.command, args.queue))
    except QueueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


async def cmd_stats(config: KivvyConfig) -> None:
    """Print queue health."""
    runtime = JobRuntime(config)
    await runtime.initialize()
    try:
        report = await runtime.check_health()
        print(json.dumps(report.to_dict(), indent=2))
    finally:
        await runtime.shutdown()


async def cmd_enqueue(config: KivvyConfig, args: argparse.Namespace) -> None:
    """Enqueue a task and print its handle."""
    runtime = JobRuntime(config)
    await runtime.initialize()
    try:
        handle = await runtime.dispatcher.enqueue(
            args.queue,
            args.kind,
            args.payload,
            JobOptions(
                delay_ms=args.delay_ms,
                priority=args.priority,
                dedup_key=args.dedup_key,
            ),
        )
        print(json.dumps({
            "task_id": handle.task_id,
            "queue": handle.queue.value,
            "kind": handle.kind.value,
            "state": handle.state.value,
            "deduplicated": handle.deduplicated,
            "schedule_id": handle.schedule_id,
        }, indent=2))
    finally:
        await runtime.shutdown()


async def cmd_queue_action(config: KivvyConfig, action: str, queue_name: str) -> None:
    """Pause, resume or clean a queue."""
    queue = resolve_queue(queue_name)
    runtime = JobRuntime(config)
    await runtime.initialize()
    try:
        if action == "pause":
            await runtime.store.set_paused(queue, True)
            print(f"Queue {queue.value} paused")
        elif action == "resume":
            await runtime.store.set_paused(queue, False)
            print(f"Queue {queue.value} resumed")
        else:
            removed = await runtime.store.clean(queue)
            print(f"Queue {queue.value} cleaned ({removed} records removed)")
    finally:
        await runtime.shutdown()


if __name__ == "__main__":
    sys.exit(main())

"""
Tests for the job runtime and the command line interface.
"""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from kivvy.cli import build_parser, main
from kivvy.jobs.envelope import QueueName, TaskState, utcnow
from kivvy.runtime import JobRuntime
from kivvy.services.repository import Activity, ActivitySession, Booking, BookingStatus, Payment, PaymentStatus, User

EMAIL = {"to": "ana@example.pt", "subject": "Olá", "template": "welcome", "context": {"userName": "Ana"}}


class TestJobRuntime:
    @pytest.mark.asyncio
    async def test_initialize_wires_producers(self, config, services):
        runtime = JobRuntime(config, services=services)
        await runtime.initialize()
        try:
            assert runtime.dispatcher.scheduler is runtime.scheduler
            assert runtime.store.mode == "memory"
            assert runtime.get_status()["store"] == {"mode": "memory", "durable": False}
        finally:
            await runtime.shutdown()

        assert not runtime.initialized

    @pytest.mark.asyncio
    async def test_workers_process_enqueued_task(self, config, services, wait_until):
        runtime = JobRuntime(config, services=services)
        await runtime.start_workers([QueueName.EMAIL])
        try:
            handle = await runtime.dispatcher.add_email_job(EMAIL)

            async def completed():
                task = await runtime.store.get_task(handle.task_id)
                return task.state == TaskState.COMPLETED

            await wait_until(completed)
        finally:
            await runtime.shutdown()

        assert services.email.sent[0].to == "ana@example.pt"

    @pytest.mark.asyncio
    async def test_default_schedules_registered_at_start(self, config, services):
        runtime = JobRuntime(config, services=services)
        await runtime.start_workers([QueueName.MAINTENANCE])
        try:
            names = {s.kind.value for s in runtime.scheduler.list_schedules()}
            assert runtime.scheduler.running
        finally:
            await runtime.shutdown()

        assert names == {"update-activity-stats", "cleanup-expired-sessions", "send-booking-reminder"}

    @pytest.mark.asyncio
    async def test_scheduler_disabled(self, config, services):
        config = config.model_copy(update={"scheduler": config.scheduler.model_copy(update={"enabled": False})})
        runtime = JobRuntime(config, services=services)
        await runtime.start_workers([QueueName.EMAIL])
        try:
            assert not runtime.scheduler.running
            assert runtime.scheduler.list_schedules() == []
        finally:
            await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_in_flight_task_finishes_on_shutdown(self, config, services, wait_until):
        runtime = JobRuntime(config, services=services)
        await runtime.start_workers([QueueName.EMAIL])
        handle = await runtime.dispatcher.add_email_job(EMAIL)
        await wait_until(lambda: services.email.sent)
        store = runtime.store
        await runtime.shutdown()

        assert (await store.get_task(handle.task_id)).state == TaskState.COMPLETED


class TestCli:
    def test_worker_queues(self):
        args = build_parser().parse_args(["worker", "--queue", "email", "--queue", "payment", "--no-scheduler"])

        assert args.queues == ["email", "payment"]
        assert args.no_scheduler

    def test_enqueue_payload_parsed(self):
        args = build_parser().parse_args(["enqueue", "report", "generate-report", "--payload", '{"type": "revenue-report"}'])

        assert args.payload == {"type": "revenue-report"}
        assert args.priority == 2

    def test_unknown_queue_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["pause", "newsletters"])

    def test_log_level_case_insensitive(self):
        assert build_parser().parse_args(["--log-level", "debug", "stats"]).log_level == "DEBUG"

    def test_unknown_log_level_rejected(self, capsys):
        with pytest.raises(SystemExit):
            main(["--log-level", "loud", "stats"])
        assert "invalid choice" in capsys.readouterr().err

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_stats(self, capsys):
        assert main(["--backend", "memory", "stats"]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["mode"] == "memory"
        assert report["status"] == "degraded"

    def test_enqueue(self, capsys):
        code = main([
            "--backend", "memory",
            "enqueue", "email", "send-email",
            "--payload", json.dumps(EMAIL),
            "--delay-ms", "60000",
        ])

        assert code == 0
        handle = json.loads(capsys.readouterr().out)
        assert handle["state"] == "delayed"
        assert handle["kind"] == "send-email"

    def test_enqueue_invalid_payload(self, capsys):
        code = main(["--backend", "memory", "enqueue", "email", "send-email", "--payload", "{}"])

        assert code == 1
        assert "Invalid payload" in capsys.readouterr().err

    def test_pause(self, capsys):
        assert main(["--backend", "memory", "pause", "payment"]) == 0
        assert "Queue payment paused" in capsys.readouterr().out


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_partial_refund_through_payment_queue(self, config, services, repository, wait_until):
        user = User(email="ana@example.pt", name="Ana")
        activity = Activity(title="Surf", provider_id="prov-1")
        session = ActivitySession(activity_id=activity.id, start_time=utcnow() + timedelta(days=2), capacity=10, available_spots=9)
        booking = Booking(user_id=user.id, session_id=session.id, id="B1", total_amount=20.0, status=BookingStatus.CONFIRMED)
        payment = Payment(booking_id="B1", amount=20.0, status=PaymentStatus.SUCCEEDED, stripe_payment_intent_id="pi_e2e")
        repository.add(user, activity, session, booking, payment)

        runtime = JobRuntime(config, services=services)
        await runtime.start_workers([QueueName.PAYMENT])
        try:
            handle = await runtime.dispatcher.enqueue(
                "payment", "process-payment", {"bookingId": "B1", "action": "refund", "amount": 10.00}
            )

            async def finished():
                task = await runtime.store.get_task(handle.task_id)
                return task.state == TaskState.COMPLETED

            await wait_until(finished)
        finally:
            await runtime.shutdown()

        stored = await repository.get_payment_for_booking("B1")
        assert stored.status == PaymentStatus.PARTIALLY_REFUNDED
        assert stored.refund_amount == 10.00
        assert (await repository.get_booking("B1")).status == BookingStatus.CONFIRMED
        assert (await repository.get_session(session.id)).available_spots == 9

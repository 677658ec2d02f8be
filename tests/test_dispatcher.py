"""
Tests for the dispatcher: validation, persistence, dedup, recurring
registration and the producer helpers.
"""

from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from kivvy.jobs.backends import InMemoryQueueStore
from kivvy.jobs.dispatcher import Dispatcher, JobOptions
from kivvy.jobs.envelope import BackoffType, QueueName, TaskKind, TaskPriority, TaskState
from kivvy.jobs.errors import InvalidTaskKind, PayloadValidationError, QueueError, QueueUnavailable, UnknownQueue


class UnreachableStore(InMemoryQueueStore):
    async def push(self, task):
        raise RedisConnectionError("Connection refused")


EMAIL = {"to": "ana@example.pt", "subject": "Olá", "template": "welcome", "context": {"userName": "Ana"}}


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_queue(self, dispatcher):
        with pytest.raises(UnknownQueue):
            await dispatcher.enqueue("newsletters", "send-email", EMAIL)

    @pytest.mark.asyncio
    async def test_unknown_kind(self, dispatcher):
        with pytest.raises(InvalidTaskKind):
            await dispatcher.enqueue("email", "send-fax", {})

    @pytest.mark.asyncio
    async def test_kind_on_wrong_queue(self, dispatcher):
        with pytest.raises(InvalidTaskKind):
            await dispatcher.enqueue("payment", "send-email", EMAIL)

    @pytest.mark.asyncio
    async def test_payload_mismatch(self, dispatcher, store):
        with pytest.raises(PayloadValidationError) as exc:
            await dispatcher.enqueue("email", "send-email", {"to": "ana@example.pt"})

        assert "subject" in str(exc.value)
        assert (await store.get_counts(QueueName.EMAIL))["waiting"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_payload_field_rejected(self, dispatcher):
        with pytest.raises(PayloadValidationError):
            await dispatcher.enqueue("payment", "process-payment", {"bookingId": "b1", "action": "capture", "extra": 1})

    @pytest.mark.asyncio
    async def test_payment_action_must_be_known(self, dispatcher):
        with pytest.raises(PayloadValidationError):
            await dispatcher.enqueue("payment", "process-payment", {"bookingId": "b1", "action": "chargeback"})


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_persists_waiting_task(self, dispatcher, store, recorder):
        handle = await dispatcher.enqueue("email", "send-email", EMAIL, user_id="u1")

        task = await store.get_task(handle.task_id)
        assert handle.state == TaskState.WAITING
        assert task.payload["to"] == "ana@example.pt"
        assert task.user_id == "u1"
        assert recorder.of(handle.task_id) == ["waiting"]

    @pytest.mark.asyncio
    async def test_camel_case_payload_stored_snake_case(self, dispatcher, store):
        handle = await dispatcher.enqueue(
            QueueName.NOTIFICATION,
            TaskKind.SEND_PUSH_NOTIFICATION,
            {"userId": "u1", "title": "Olá", "message": "Reserva confirmada"},
        )

        task = await store.get_task(handle.task_id)
        assert task.payload["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_delay_creates_delayed_task(self, dispatcher, recorder):
        handle = await dispatcher.enqueue("email", "send-email", EMAIL, JobOptions(delay_ms=60_000))

        assert handle.state == TaskState.DELAYED
        assert recorder.of(handle.task_id) == ["delayed"]

    @pytest.mark.asyncio
    async def test_queue_retry_policy_attached(self, dispatcher, store):
        handle = await dispatcher.enqueue("email", "send-email", EMAIL)

        task = await store.get_task(handle.task_id)
        assert task.retry.max_attempts == 3
        assert task.retry.backoff_ms == 20

    @pytest.mark.asyncio
    async def test_options_override_retry_policy(self, dispatcher, store):
        handle = await dispatcher.enqueue(
            "email",
            "send-email",
            EMAIL,
            JobOptions(max_attempts=5, backoff_ms=0, backoff_type="fixed", priority=TaskPriority.HIGH),
        )

        task = await store.get_task(handle.task_id)
        assert task.retry.max_attempts == 5
        assert task.retry.backoff_ms == 0
        assert task.retry.backoff_type == BackoffType.FIXED
        assert task.priority == TaskPriority.HIGH

    @pytest.mark.asyncio
    async def test_dedup_returns_marked_handle(self, dispatcher):
        first = await dispatcher.enqueue("email", "send-email", EMAIL, JobOptions(dedup_key="welcome:u1"))
        second = await dispatcher.enqueue("email", "send-email", EMAIL, JobOptions(dedup_key="welcome:u1"))

        assert first.task_id is not None
        assert second.task_id is None
        assert second.deduplicated

    @pytest.mark.asyncio
    async def test_repeat_registers_schedule(self, dispatcher, store):
        handle = await dispatcher.enqueue("maintenance", "update-activity-stats", {}, JobOptions(repeat="0 2 * * *"))

        assert handle.task_id is None
        assert handle.schedule_id is not None
        assert dispatcher.scheduler.get_schedule(handle.schedule_id) is not None
        assert (await store.get_counts(QueueName.MAINTENANCE))["waiting"] == 0

    @pytest.mark.asyncio
    async def test_repeat_without_scheduler(self, store, config):
        bare = Dispatcher(store, config)
        with pytest.raises(QueueError):
            await bare.enqueue("maintenance", "update-activity-stats", {}, JobOptions(repeat="0 2 * * *"))


class TestUnavailableStore:
    @pytest.mark.asyncio
    async def test_enqueue_raises_queue_unavailable(self, config):
        dispatcher = Dispatcher(UnreachableStore(), config)

        with pytest.raises(QueueUnavailable) as exc:
            await dispatcher.enqueue("email", "send-email", EMAIL)
        assert isinstance(exc.value.cause, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_best_effort_swallows_only_unavailability(self, config):
        dispatcher = Dispatcher(UnreachableStore(), config)

        assert await dispatcher.enqueue_best_effort("email", "send-email", EMAIL) is None
        with pytest.raises(PayloadValidationError):
            await dispatcher.enqueue_best_effort("email", "send-email", {})


class TestHelpers:
    @pytest.mark.asyncio
    async def test_add_email_job(self, dispatcher, store):
        handle = await dispatcher.add_email_job(EMAIL, booking_id="b1")

        task = await store.get_task(handle.task_id)
        assert task.kind == TaskKind.SEND_EMAIL
        assert task.booking_id == "b1"

    @pytest.mark.asyncio
    async def test_notification_push(self, dispatcher, store):
        handle = await dispatcher.add_notification_job(
            {"type": "push", "userId": "u1", "title": "Olá", "message": "Nova atividade"}
        )

        task = await store.get_task(handle.task_id)
        assert task.kind == TaskKind.SEND_PUSH_NOTIFICATION
        assert task.user_id == "u1"

    @pytest.mark.asyncio
    async def test_notification_sms(self, dispatcher, store):
        handle = await dispatcher.add_notification_job(
            {"type": "sms", "userId": "u1", "phoneNumber": "912345678", "message": "Lembrete"}
        )

        task = await store.get_task(handle.task_id)
        assert task.kind == TaskKind.SEND_SMS
        assert task.payload == {"to": "912345678", "message": "Lembrete"}

    @pytest.mark.asyncio
    async def test_notification_unknown_channel(self, dispatcher):
        with pytest.raises(InvalidTaskKind):
            await dispatcher.add_notification_job({"type": "pigeon", "message": "x"})

    @pytest.mark.asyncio
    async def test_payment_job_carries_booking(self, dispatcher, store):
        handle = await dispatcher.add_payment_job({"bookingId": "b1", "action": "refund", "amount": 10})

        task = await store.get_task(handle.task_id)
        assert task.booking_id == "b1"
        assert task.queue == QueueName.PAYMENT

    @pytest.mark.asyncio
    async def test_report_job(self, dispatcher, store):
        handle = await dispatcher.add_report_job({"type": "revenue-report", "period": "weekly"})

        task = await store.get_task(handle.task_id)
        assert task.payload["period"] == "weekly"

    @pytest.mark.asyncio
    async def test_maintenance_job_maps_task_name(self, dispatcher, store):
        cleanup = await dispatcher.add_maintenance_job({"task": "cleanup-sessions", "parameters": {"olderThan": "14d"}})
        sync = await dispatcher.add_maintenance_job({"task": "sync-data", "parameters": {"source": "stripe"}})

        assert cleanup.kind == TaskKind.CLEANUP_EXPIRED_SESSIONS
        assert (await store.get_task(cleanup.task_id)).payload == {"older_than_days": 14}
        assert (await store.get_task(sync.task_id)).payload["source"] == "stripe"

    @pytest.mark.asyncio
    async def test_maintenance_unknown_task(self, dispatcher):
        with pytest.raises(InvalidTaskKind):
            await dispatcher.add_maintenance_job({"task": "defragment"})

    @pytest.mark.asyncio
    async def test_booking_reminder_run_deduplicated_per_day(self, dispatcher):
        first = await dispatcher.schedule_booking_reminders()
        second = await dispatcher.schedule_booking_reminders()

        assert first.task_id is not None
        assert second.deduplicated

    @pytest.mark.asyncio
    async def test_default_jobs_registered(self, dispatcher):
        handles = await dispatcher.schedule_default_jobs()

        assert set(handles) == {"update-activity-stats", "cleanup-expired-sessions", "send-booking-reminder"}
        assert all(h.schedule_id for h in handles.values())
        assert len(dispatcher.scheduler.list_schedules()) == 3

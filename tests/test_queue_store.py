"""
Tests for the queue stores.

Tests cover:
- Priority and FIFO ordering per (queue, kind)
- Delayed tasks and promotion
- Dedup keys
- Retention of finished tasks
- Stall recovery and the stalled limit
- Pause, clean and markers
- Redis store: restart, interrupted stall recovery
"""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta

import pytest
from redis.exceptions import TimeoutError as RedisTimeoutError

from kivvy.jobs.backends import STALLED_ERROR, InMemoryQueueStore
from kivvy.jobs.envelope import QueueName, Task, TaskKind, TaskPriority, TaskState, utcnow


def email_task(**kwargs) -> Task:
    return Task(queue=QueueName.EMAIL, kind=TaskKind.SEND_EMAIL, payload={"to": "a@b.pt"}, **kwargs)


class TestOrdering:
    @pytest.mark.asyncio
    async def test_higher_priority_claimed_first(self, store):
        low = email_task(priority=TaskPriority.LOW)
        critical = email_task(priority=TaskPriority.CRITICAL)
        await store.push(low)
        await store.push(critical)

        first = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)
        second = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)

        assert first.id == critical.id
        assert second.id == low.id

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, store):
        tasks = [email_task() for _ in range(3)]
        for t in tasks:
            await store.push(t)

        claimed = [await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30) for _ in tasks]
        assert [t.id for t in claimed] == [t.id for t in tasks]

    @pytest.mark.asyncio
    async def test_claim_is_per_kind(self, store):
        sms = Task(queue=QueueName.NOTIFICATION, kind=TaskKind.SEND_SMS, payload={})
        await store.push(sms)

        assert await store.claim_next(QueueName.NOTIFICATION, TaskKind.SEND_PUSH_NOTIFICATION, "w1", 30) is None
        claimed = await store.claim_next(QueueName.NOTIFICATION, TaskKind.SEND_SMS, "w1", 30)
        assert claimed.id == sms.id

    @pytest.mark.asyncio
    async def test_claim_marks_active_and_counts_attempt(self, store):
        task = email_task()
        await store.push(task)

        claimed = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)

        assert claimed.state == TaskState.ACTIVE
        assert claimed.attempts_made == 1
        assert claimed.worker_id == "w1"
        counts = await store.get_counts(QueueName.EMAIL)
        assert counts["active"] == 1
        assert counts["waiting"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_claims_hand_out_each_task_once(self, store):
        for _ in range(20):
            await store.push(email_task())

        async def claim(worker):
            got = []
            while True:
                task = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, worker, 30)
                if task is None:
                    return got
                got.append(task.id)
                await asyncio.sleep(0)

        results = await asyncio.gather(*(claim(f"w{i}") for i in range(4)))
        ids = [tid for batch in results for tid in batch]
        assert len(ids) == 20
        assert len(set(ids)) == 20


class TestDelayed:
    @pytest.mark.asyncio
    async def test_delayed_task_not_claimable_before_due(self, store):
        task = email_task(run_at=utcnow() + timedelta(seconds=60))
        await store.push(task)

        assert task.state == TaskState.DELAYED
        assert await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30) is None
        assert (await store.get_counts(QueueName.EMAIL))["delayed"] == 1

    @pytest.mark.asyncio
    async def test_delayed_task_promoted_when_due(self, store):
        task = email_task(run_at=utcnow() + timedelta(milliseconds=50))
        await store.push(task)

        await asyncio.sleep(0.08)
        claimed = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)
        assert claimed is not None
        assert claimed.id == task.id

    @pytest.mark.asyncio
    async def test_retry_moves_task_to_delayed(self, store):
        await store.push(email_task())
        claimed = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)

        assert await store.retry(claimed, 10_000)

        stored = await store.get_task(claimed.id)
        assert stored.state == TaskState.DELAYED
        assert stored.run_at > utcnow() + timedelta(seconds=9)
        assert (await store.get_counts(QueueName.EMAIL))["active"] == 0


class TestDedup:
    @pytest.mark.asyncio
    async def test_second_push_with_same_key_is_dropped(self, store):
        assert await store.push(email_task(dedup_key="welcome:u1"))
        assert not await store.push(email_task(dedup_key="welcome:u1"))
        assert (await store.get_counts(QueueName.EMAIL))["waiting"] == 1

    @pytest.mark.asyncio
    async def test_dedup_key_expires(self):
        store = InMemoryQueueStore(dedup_ttl_seconds=0)
        assert await store.push(email_task(dedup_key="k"))
        assert await store.push(email_task(dedup_key="k"))


class TestRetention:
    @pytest.mark.asyncio
    async def test_completed_tasks_trimmed_to_retention(self):
        store = InMemoryQueueStore(retention={"email": (2, 1)})
        ids = []
        for _ in range(4):
            await store.push(email_task())
            task = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)
            await store.complete(task)
            ids.append(task.id)

        counts = await store.get_counts(QueueName.EMAIL)
        assert counts["completed"] == 2
        assert await store.get_task(ids[0]) is None
        assert (await store.get_task(ids[-1])).state == TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_default_retention_is_fifty(self, store):
        for _ in range(55):
            await store.push(email_task())
            task = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)
            await store.fail(task)

        assert (await store.get_counts(QueueName.EMAIL))["failed"] == 50

    @pytest.mark.asyncio
    async def test_clean_drops_finished_records(self, store):
        for _ in range(3):
            await store.push(email_task())
            task = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)
            await store.complete(task)
        await store.push(email_task())

        removed = await store.clean(QueueName.EMAIL)

        counts = await store.get_counts(QueueName.EMAIL)
        assert removed == 3
        assert counts["completed"] == 0
        assert counts["waiting"] == 1


class TestStalls:
    @pytest.mark.asyncio
    async def test_expired_lease_requeues_task(self, store):
        await store.push(email_task())
        claimed = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)

        recovered = await store.recover_stalled(now=time.time() + 31)

        assert [t.id for t in recovered] == [claimed.id]
        assert recovered[0].state == TaskState.WAITING
        again = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w2", 30)
        assert again.id == claimed.id
        assert again.attempts_made == 2
        assert again.stalled_count == 1

    @pytest.mark.asyncio
    async def test_live_lease_not_recovered(self, store):
        await store.push(email_task())
        await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)

        assert await store.recover_stalled(now=time.time() + 5) == []

    @pytest.mark.asyncio
    async def test_stalled_past_limit_fails(self, store):
        await store.push(email_task())
        for worker in ("w1", "w2"):
            await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, worker, 30)
            recovered = await store.recover_stalled(now=time.time() + 31)

        assert recovered[0].state == TaskState.FAILED
        assert recovered[0].error == STALLED_ERROR
        assert (await store.get_counts(QueueName.EMAIL))["failed"] == 1

    @pytest.mark.asyncio
    async def test_previous_owner_cannot_finish_recovered_task(self, store):
        await store.push(email_task())
        claimed = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)
        await store.recover_stalled(now=time.time() + 31)

        assert not await store.complete(claimed)
        assert not await store.extend_lease(claimed, 30)


class TestPauseAndMarkers:
    @pytest.mark.asyncio
    async def test_paused_queue_hands_out_nothing(self, store):
        await store.push(email_task())
        await store.set_paused(QueueName.EMAIL, True)

        assert await store.is_paused(QueueName.EMAIL)
        assert await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30) is None

        await store.set_paused(QueueName.EMAIL, False)
        assert await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30) is not None

    @pytest.mark.asyncio
    async def test_marker_set_once(self, store):
        assert await store.set_marker("idem:x", 60)
        assert not await store.set_marker("idem:x", 60)
        assert await store.has_marker("idem:x")
        assert not await store.has_marker("idem:y")

    @pytest.mark.asyncio
    async def test_list_tasks_by_state(self, store):
        a, b = email_task(), email_task(priority=TaskPriority.HIGH)
        await store.push(a)
        await store.push(b)

        waiting = await store.list_tasks(QueueName.EMAIL, TaskState.WAITING)
        assert [t.id for t in waiting] == [b.id, a.id]


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_task_survives_store_restart(self, make_redis_store):
        producer = await make_redis_store()
        task = email_task()
        await producer.push(task)
        await producer.shutdown()

        consumer = await make_redis_store()
        claimed = await consumer.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)

        assert claimed.id == task.id
        assert await consumer.complete(claimed)
        assert (await consumer.get_task(task.id)).state == TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_two_processes_claim_each_task_once(self, make_redis_store):
        first, second = await make_redis_store(), await make_redis_store()
        for _ in range(10):
            await first.push(email_task())

        claimed = []
        for _ in range(5):
            for store in (first, second):
                task = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)
                claimed.append(task.id)

        assert len(set(claimed)) == 10
        assert await second.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w2", 30) is None

    @pytest.mark.asyncio
    async def test_interrupted_recovery_keeps_task(self, make_redis_store, monkeypatch):
        store = await make_redis_store()
        await store.push(email_task())
        claimed = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)

        read = store._read
        calls = []

        async def flaky_read(task_id):
            calls.append(task_id)
            if len(calls) == 1:
                raise RedisTimeoutError("Timeout reading from socket")
            return await read(task_id)

        monkeypatch.setattr(store, "_read", flaky_read)

        with pytest.raises(RedisTimeoutError):
            await store.recover_stalled(now=time.time() + 60)
        assert (await store.get_counts(QueueName.EMAIL))["active"] == 1

        recovered = await store.recover_stalled(now=time.time() + 120)

        assert [t.id for t in recovered] == [claimed.id]
        again = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w2", 30)
        assert again.id == claimed.id
        assert again.stalled_count == 1

    @pytest.mark.asyncio
    async def test_renewed_lease_not_recovered(self, make_redis_store):
        store = await make_redis_store()
        await store.push(email_task())
        claimed = await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30)
        assert await store.extend_lease(claimed, 300)

        assert await store.recover_stalled(now=time.time() + 60) == []
        assert await store.complete(claimed)

    @pytest.mark.asyncio
    async def test_claimed_task_without_record_releases_lease(self, make_redis_store):
        store = await make_redis_store()
        task = email_task()
        await store.push(task)
        client = store._get_client()
        await client.hdel(store._key("tasks"), task.id)

        assert await store.claim_next(QueueName.EMAIL, TaskKind.SEND_EMAIL, "w1", 30) is None
        assert not await client.hexists(store._key("owner"), task.id)
        assert (await store.get_counts(QueueName.EMAIL))["active"] == 0

"""
Tests for the recurring scheduler.
"""

from __future__ import annotations

import asyncio
from zoneinfo import ZoneInfo

import pytest

from kivvy.jobs.dispatcher import Dispatcher
from kivvy.jobs.envelope import QueueName, TaskKind, TaskState
from kivvy.jobs.scheduler import RecurringScheduler


async def add_stats_schedule(scheduler: RecurringScheduler, cron: str = "0 2 * * *"):
    return await scheduler.add_schedule(QueueName.MAINTENANCE, TaskKind.UPDATE_ACTIVITY_STATS, {}, cron)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_invalid_cron_rejected(self, dispatcher):
        with pytest.raises(ValueError):
            await add_stats_schedule(dispatcher.scheduler, "every night")

    @pytest.mark.asyncio
    async def test_next_run_in_future(self, dispatcher):
        schedule = await add_stats_schedule(dispatcher.scheduler)

        assert schedule.next_run is not None
        assert schedule.next_run.hour == 2
        assert schedule.next_run.minute == 0

    @pytest.mark.asyncio
    async def test_same_definition_same_id(self, dispatcher):
        first = await add_stats_schedule(dispatcher.scheduler)
        second = await add_stats_schedule(dispatcher.scheduler)

        assert first.id == second.id
        assert len(dispatcher.scheduler.list_schedules()) == 1

    @pytest.mark.asyncio
    async def test_cron_evaluated_in_configured_timezone(self, store, config):
        dispatcher = Dispatcher(store, config)
        scheduler = RecurringScheduler(dispatcher, timezone_name="Europe/Lisbon")

        schedule = await add_stats_schedule(scheduler, "0 9 * * *")

        local = schedule.next_run.astimezone(ZoneInfo("Europe/Lisbon"))
        assert local.hour == 9
        assert schedule.next_run.utcoffset().total_seconds() == 0


class TestFiring:
    @pytest.mark.asyncio
    async def test_due_schedule_enqueues_task(self, dispatcher, store):
        schedule = await add_stats_schedule(dispatcher.scheduler)
        fire_at = schedule.next_run

        fired = await dispatcher.scheduler.run_due(now=fire_at)

        waiting = await store.list_tasks(QueueName.MAINTENANCE, TaskState.WAITING)
        assert fired == 1
        assert len(waiting) == 1
        assert waiting[0].metadata["schedule_id"] == schedule.id
        assert schedule.run_count == 1
        assert schedule.next_run > fire_at

    @pytest.mark.asyncio
    async def test_not_due_does_nothing(self, dispatcher, store):
        await add_stats_schedule(dispatcher.scheduler)

        assert await dispatcher.scheduler.run_due() == 0
        assert (await store.get_counts(QueueName.MAINTENANCE))["waiting"] == 0

    @pytest.mark.asyncio
    async def test_two_processes_fire_once(self, store, config):
        schedulers = []
        for _ in range(2):
            d = Dispatcher(store, config)
            d.scheduler = RecurringScheduler(d)
            schedulers.append(d.scheduler)

        entries = [await add_stats_schedule(s) for s in schedulers]
        fire_at = entries[0].next_run
        for scheduler in schedulers:
            await scheduler.run_due(now=fire_at)

        assert (await store.get_counts(QueueName.MAINTENANCE))["waiting"] == 1

    @pytest.mark.asyncio
    async def test_disabled_schedule_skipped(self, dispatcher, store):
        schedule = await add_stats_schedule(dispatcher.scheduler)
        await dispatcher.scheduler.disable_schedule(schedule.id)

        assert await dispatcher.scheduler.run_due(now=schedule.next_run) == 0

        await dispatcher.scheduler.enable_schedule(schedule.id)
        assert await dispatcher.scheduler.run_due(now=schedule.next_run) == 1

    @pytest.mark.asyncio
    async def test_trigger_now(self, dispatcher, store):
        schedule = await add_stats_schedule(dispatcher.scheduler)

        assert await dispatcher.scheduler.trigger_now(schedule.id)
        assert not await dispatcher.scheduler.trigger_now("missing")
        assert (await store.get_counts(QueueName.MAINTENANCE))["waiting"] == 1

    @pytest.mark.asyncio
    async def test_loop_fires_due_schedules(self, dispatcher, store):
        scheduler = dispatcher.scheduler
        schedule = await add_stats_schedule(scheduler)
        schedule.next_run = schedule.created_at

        await scheduler.start()
        try:
            for _ in range(100):
                if (await store.get_counts(QueueName.MAINTENANCE))["waiting"]:
                    break
                await asyncio.sleep(0.01)
        finally:
            await scheduler.stop()

        assert not scheduler.running
        assert (await store.get_counts(QueueName.MAINTENANCE))["waiting"] == 1
        assert scheduler.get_stats()["total_runs"] == 1

"""
Tests for the cron scheduler.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from durableflow.engine.executor import Engine, ExecutionStatus
from durableflow.engine.state import RunStatus
from durableflow.executors import Completed, executor_registry
from durableflow.scheduler import Scheduler, next_fire_time, schedule_thread_id
from durableflow.storage.memory import Schedule, ScheduleStorage

from conftest import T0, linear_graph


NOON = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


async def scheduled(engine, cron="*/5 * * * *", graph=None, **kwargs):
    """A scheduler with one schedule on a stored graph."""
    graph = graph or linear_graph(graph_id="nightly")
    await engine.graphs.save(graph)
    schedules = ScheduleStorage()
    await schedules.save(Schedule(schedule_id="s1", graph_id=graph.graph_id, cron_expression=cron, **kwargs))
    return Scheduler(engine, schedules, engine.graphs, tick_seconds=0.01), schedules


class TestCronHelpers:
    """Tests for fire time helpers."""

    def test_next_fire_time(self):
        assert next_fire_time("*/5 * * * *", T0) == datetime(2026, 1, 1, 12, 5, tzinfo=timezone.utc)
        assert next_fire_time("0 9 * * *", T0) == datetime(2026, 1, 2, 9, 0, tzinfo=timezone.utc)

    def test_thread_id_is_deterministic(self):
        assert schedule_thread_id("s1", NOON) == schedule_thread_id("s1", NOON)
        assert schedule_thread_id("s1", NOON) != schedule_thread_id("s1", NOON + timedelta(minutes=5))


class TestScheduler:
    """Tests for Scheduler.tick."""

    @pytest.mark.asyncio
    async def test_fires_due_schedule(self, engine):
        scheduler, schedules = await scheduled(engine)

        assert await scheduler.tick(T0) == []
        results = await scheduler.drain()

        assert len(results) == 1
        assert results[0].status == ExecutionStatus.COMPLETED
        assert results[0].thread_id == schedule_thread_id("s1", NOON)
        assert results[0].output["source"] == "schedule"
        assert results[0].output["scheduleId"] == "s1"

        schedule = await schedules.get("s1")
        assert schedule.last_run_at == T0
        assert schedule.next_run_at == NOON + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_no_double_fire(self, engine):
        scheduler, _ = await scheduled(engine)

        await scheduler.tick(T0)
        assert len(await scheduler.drain()) == 1
        await scheduler.tick(T0 + timedelta(seconds=10))
        assert await scheduler.drain() == []

        await scheduler.tick(NOON + timedelta(minutes=5, seconds=1))
        later = await scheduler.drain()
        assert len(later) == 1
        assert later[0].thread_id == schedule_thread_id("s1", NOON + timedelta(minutes=5))

    @pytest.mark.asyncio
    async def test_two_schedulers_fire_once(self, engine):
        first, _ = await scheduled(engine)
        second, _ = await scheduled(engine)

        await first.tick(T0)
        assert len(await first.drain()) == 1
        await second.tick(T0)
        assert await second.drain() == []

        thread = await engine.checkpoints.get_thread(schedule_thread_id("s1", NOON))
        assert thread.checkpoint_count == 2

    @pytest.mark.asyncio
    async def test_long_run_does_not_block_tick(self, capabilities):
        gate = asyncio.Event()
        registry = executor_registry.copy()

        @registry.register("gate")
        async def execute_gate(node, state, caps):
            await gate.wait()
            return Completed(output="opened")

        engine = Engine(registry=registry, capabilities=capabilities)
        scheduler, schedules = await scheduled(engine, graph=linear_graph(("gate", "gate"), graph_id="slow"))

        await asyncio.wait_for(scheduler.tick(T0), timeout=5)

        assert scheduler.active_runs == 1
        assert (await schedules.get("s1")).next_run_at == NOON + timedelta(minutes=5)
        assert await engine.checkpoints.get_thread(schedule_thread_id("s1", NOON)) is not None

        gate.set()
        results = await scheduler.drain()
        assert results[0].output == "opened"
        assert scheduler.active_runs == 0

    @pytest.mark.asyncio
    async def test_run_errors_are_collected(self, engine):
        scheduler, schedules = await scheduled(engine)

        async def broken_run(*args, **kwargs):
            raise RuntimeError("disk on fire")

        engine.run = broken_run
        await scheduler.tick(T0)

        assert await scheduler.drain() == []
        assert [str(e) for e in scheduler.errors] == ["disk on fire"]
        assert (await schedules.get("s1")).next_run_at == NOON + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_missed_fires_collapse(self, engine):
        scheduler, schedules = await scheduled(engine, next_run_at=NOON)

        await scheduler.tick(NOON + timedelta(hours=1, seconds=1))

        assert len(await scheduler.drain()) == 1
        assert (await schedules.get("s1")).next_run_at == NOON + timedelta(hours=1, minutes=5)

    @pytest.mark.asyncio
    async def test_not_due_yet(self, engine):
        scheduler, _ = await scheduled(engine, cron="0 9 * * *")
        await scheduler.tick(T0)
        assert await scheduler.drain() == []

    @pytest.mark.asyncio
    async def test_invalid_cron_skipped(self, engine):
        scheduler, schedules = await scheduled(engine, cron="not a cron")
        await scheduler.tick(T0)
        assert await scheduler.drain() == []
        assert (await schedules.get("s1")).next_run_at is None

    @pytest.mark.asyncio
    async def test_disabled_schedule(self, engine):
        scheduler, _ = await scheduled(engine, enabled=False)
        await scheduler.tick(T0)
        assert await scheduler.drain() == []

    @pytest.mark.asyncio
    async def test_missing_graph_still_advances(self, engine):
        schedules = ScheduleStorage()
        await schedules.save(Schedule(schedule_id="s1", graph_id="gone", cron_expression="*/5 * * * *"))
        scheduler = Scheduler(engine, schedules, engine.graphs)

        await scheduler.tick(T0)
        assert await scheduler.drain() == []
        assert (await schedules.get("s1")).last_run_at == T0

    @pytest.mark.asyncio
    async def test_tick_resumes_due_timers(self, engine, clock):
        scheduler, _ = await scheduled(engine, cron="0 9 * * *")
        graph = linear_graph(("pause", "delay", {"seconds": 60}), graph_id="sleepy")
        await engine.run(graph, thread_id="sleeper")

        results = await scheduler.tick(clock.advance(61))

        assert [r.thread_id for r in results] == ["sleeper"]
        assert results[0].status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        scheduler, _ = await scheduled(engine, cron="0 9 * * *")

        await scheduler.start()
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_stop_cancels_runs(self, capabilities):
        registry = executor_registry.copy()

        @registry.register("gate")
        async def execute_gate(node, state, caps):
            await asyncio.Event().wait()

        engine = Engine(registry=registry, capabilities=capabilities)
        scheduler, _ = await scheduled(engine, graph=linear_graph(("gate", "gate"), graph_id="stuck"))
        await scheduler.tick(T0)
        assert scheduler.active_runs == 1

        await scheduler.stop()

        assert scheduler.active_runs == 0
        state = await engine.get_state(schedule_thread_id("s1", NOON))
        assert state.status == RunStatus.RUNNING
        assert state.pending == ["gate"]

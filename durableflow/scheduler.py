"""
Cron Scheduler.

Fires workflows on cron schedules and sweeps expired suspensions. Each
fire uses a thread id derived from the schedule and its due time, so two
processes ticking the same schedule start at most one run: the second
one's first checkpoint write loses the compare-and-set (with the file
backend this holds across processes).

Scheduled runs execute as background tasks. A tick only waits until a
run's first checkpoint exists before moving the schedule on, so a long
run never holds up the other schedules.
"""

from typing import List, Optional, Set
from datetime import datetime, timedelta
import asyncio
import logging

from croniter import croniter

from durableflow.config import settings
from durableflow.engine.errors import CheckpointConflict, GraphValidationError, ThreadBusy
from durableflow.engine.executor import Engine, RunResult
from durableflow.engine.graph import Graph
from durableflow.storage.memory import GraphStorage, Schedule, ScheduleStorage


logger = logging.getLogger(__name__)


def next_fire_time(cron_expression: str, after: datetime) -> datetime:
    """First fire time of ``cron_expression`` strictly after ``after`` (UTC)."""
    return croniter(cron_expression, after).get_next(datetime)


def schedule_thread_id(schedule_id: str, due: datetime) -> str:
    return f"schedule_{schedule_id}_{int(due.timestamp() * 1000)}"


class Scheduler:
    """
    Periodic cron dispatcher.

    Usage:
        scheduler = Scheduler(engine, schedule_storage, graph_storage)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    COMMIT_POLL_SECONDS = 0.05

    def __init__(
        self,
        engine: Engine,
        schedules: ScheduleStorage,
        graphs: GraphStorage,
        tick_seconds: Optional[float] = None,
    ):
        self.engine = engine
        self.schedules = schedules
        self.graphs = graphs
        self.tick_seconds = tick_seconds if tick_seconds is not None else settings.SCHEDULER_TICK_SECONDS
        self.errors: List[BaseException] = []
        self._in_flight: Set[str] = set()
        self._runs: Set[asyncio.Task] = set()
        self._finished: List[RunResult] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    async def tick(self, now: Optional[datetime] = None) -> List[RunResult]:
        """
        Fire every due schedule, then resume expired suspensions.

        Scheduled runs keep going after the tick returns; ``drain`` waits
        for them.

        Returns:
            Results of the suspensions resumed during this tick
        """
        now = now or self.engine.capabilities.clock()

        for schedule in await self.schedules.list_enabled():
            if schedule.schedule_id in self._in_flight:
                logger.debug(f"Schedule '{schedule.schedule_id}' still dispatching, skipped")
                continue
            if not croniter.is_valid(schedule.cron_expression):
                logger.warning(
                    f"Schedule '{schedule.schedule_id}' has an invalid cron expression "
                    f"'{schedule.cron_expression}', skipped"
                )
                continue

            if schedule.next_run_at is None:
                base = schedule.last_run_at or (now - timedelta(seconds=60))
                await self.schedules.set_next_run(
                    schedule.schedule_id, next_fire_time(schedule.cron_expression, base)
                )
                schedule = await self.schedules.get(schedule.schedule_id)
                if schedule is None:
                    continue

            if schedule.next_run_at > now:
                continue

            await self._fire(schedule, now)

        return await self.engine.resume_due_timers(now)

    async def drain(self) -> List[RunResult]:
        """Wait for the dispatched runs and return the results collected since the last drain."""
        while self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        results, self._finished = self._finished, []
        return results

    async def _fire(self, schedule: Schedule, now: datetime) -> None:
        due = schedule.next_run_at
        thread_id = schedule_thread_id(schedule.schedule_id, due)
        self._in_flight.add(schedule.schedule_id)
        try:
            stored = await self.graphs.get(schedule.graph_id)
            if stored is None:
                logger.warning(
                    f"Schedule '{schedule.schedule_id}' points at missing graph '{schedule.graph_id}'"
                )
            else:
                logger.info(f"Firing schedule '{schedule.schedule_id}' ({schedule.cron_expression})")
                task = asyncio.create_task(
                    self._run(schedule, stored.build(), thread_id, now),
                    name=f"schedule:{thread_id}",
                )
                self._runs.add(task)
                task.add_done_callback(self._collect)
                await self._committed(thread_id, task)

            advanced = await self.schedules.advance(
                schedule.schedule_id,
                due,
                last_run_at=now,
                next_run_at=next_fire_time(schedule.cron_expression, now),
            )
            if not advanced:
                logger.debug(f"Schedule '{schedule.schedule_id}' was advanced by another tick")
        finally:
            self._in_flight.discard(schedule.schedule_id)

    async def _run(self, schedule: Schedule, graph: Graph, thread_id: str, now: datetime) -> Optional[RunResult]:
        try:
            return await self.engine.run(
                graph,
                {
                    "source": "schedule",
                    "scheduleId": schedule.schedule_id,
                    "cron": schedule.cron_expression,
                    "timestamp": now.isoformat(),
                },
                thread_id=thread_id,
            )
        except (CheckpointConflict, ThreadBusy):
            logger.info(f"Thread '{thread_id}' already fired elsewhere")
        except GraphValidationError as e:
            logger.warning(f"Schedule '{schedule.schedule_id}' graph is invalid: {e}")
        return None

    async def _committed(self, thread_id: str, task: asyncio.Task) -> None:
        """Wait until the run has written its first checkpoint (or stopped)."""
        while not task.done():
            if await self.engine.checkpoints.get_thread(thread_id) is not None:
                return
            await asyncio.wait({task}, timeout=self.COMMIT_POLL_SECONDS)

    def _collect(self, task: asyncio.Task) -> None:
        self._runs.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Scheduled run {task.get_name()} raised: {error!r}", exc_info=error)
            self.errors.append(error)
        elif task.result() is not None:
            self._finished.append(task.result())

    async def start(self) -> None:
        """Start ticking in the background."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scheduler started (every {self.tick_seconds}s)")

    async def stop(self) -> None:
        """
        Stop ticking and cancel the dispatched runs.

        Cancelled runs keep their checkpoints and are picked up by
        ``Engine.recover_stalled`` on the next start.
        """
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for task in list(self._runs):
            task.cancel()
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self.tick_seconds)

"""
Task scheduling.

A ``TaskRunner`` decides when a registered task runs. ``IntervalTaskRunner``
runs it on a fixed cadence in a background asyncio task, bounding every
invocation by a timeout. A timed out run is aborted, not rolled back.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional

import logfire

from dirsync.core.config import ScheduleConfig, settings


TaskFn = Callable[[], Awaitable[None]]


class TaskRunner(ABC):
    """Runs a task function per its own cadence and retry policy."""

    @abstractmethod
    async def run(self, task_id: str, fn: TaskFn) -> None:
        pass

    async def stop(self) -> None:
        pass


class IntervalTaskRunner(TaskRunner):
    """
    Runs every registered task each ``frequency_seconds``.

    Args:
        frequency_seconds: Delay between the end of one run and the next
        timeout_seconds: Per-run timeout
        initial_delay_seconds: Delay before the first run
    """

    def __init__(self, frequency_seconds: float, timeout_seconds: float,
                 initial_delay_seconds: float = 0):
        self.frequency_seconds = frequency_seconds
        self.timeout_seconds = timeout_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self._tasks: Dict[str, asyncio.Task] = {}
        self.runs: Dict[str, int] = {}

    @classmethod
    def from_schedule(cls, schedule: ScheduleConfig) -> "IntervalTaskRunner":
        return cls(
            frequency_seconds=schedule.frequency_minutes * 60,
            timeout_seconds=schedule.timeout_minutes * 60,
            initial_delay_seconds=schedule.initial_delay_seconds,
        )

    async def run(self, task_id: str, fn: TaskFn) -> None:
        if task_id in self._tasks and not self._tasks[task_id].done():
            logfire.warning("Task already scheduled", task_id=task_id)
            return
        self.runs.setdefault(task_id, 0)
        self._tasks[task_id] = asyncio.create_task(self._loop(task_id, fn))
        logfire.info(
            "Scheduled task",
            task_id=task_id,
            frequency_seconds=self.frequency_seconds,
            timeout_seconds=self.timeout_seconds
        )

    async def run_once(self, task_id: str, fn: TaskFn) -> None:
        """Run one bounded invocation; failures are logged, not raised."""
        self.runs[task_id] = self.runs.get(task_id, 0) + 1
        try:
            await asyncio.wait_for(fn(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logfire.error("Task timed out", task_id=task_id, timeout_seconds=self.timeout_seconds)
        except Exception as e:
            logfire.error("Task failed", task_id=task_id, error=str(e))

    async def _loop(self, task_id: str, fn: TaskFn) -> None:
        if self.initial_delay_seconds:
            await asyncio.sleep(self.initial_delay_seconds)
        while True:
            await self.run_once(task_id, fn)
            await asyncio.sleep(self.frequency_seconds)

    @property
    def task_ids(self) -> List[str]:
        return list(self._tasks)

    async def stop(self) -> None:
        """Cancel every scheduled task and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if tasks:
            logfire.info("Stopped scheduled tasks", count=len(tasks))


class Scheduler:
    """Creates and tracks task runners so they can be stopped together."""

    def __init__(self):
        self._runners: List[TaskRunner] = []

    def create_runner(self, schedule: Optional[ScheduleConfig] = None) -> IntervalTaskRunner:
        """Runner for ``schedule``, or for the process default cadence."""
        if schedule is None:
            schedule = ScheduleConfig(
                frequency_minutes=settings.default_schedule_frequency_minutes,
                timeout_minutes=settings.default_schedule_timeout_minutes,
            )
        runner = IntervalTaskRunner.from_schedule(schedule)
        self._runners.append(runner)
        return runner

    @property
    def runners(self) -> List[TaskRunner]:
        return list(self._runners)

    async def stop(self) -> None:
        for runner in self._runners:
            await runner.stop()

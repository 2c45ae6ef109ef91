"""Periodic background jobs that end when the termination signal fires."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable

from .diagnostics import Logger
from .termination import TerminationSignal

PeriodicJob = Callable[[], None | Awaitable[None]]


class PeriodicTask:
    """Run ``job`` every ``interval`` seconds until shutdown.

    The wait between runs is a wait on the termination signal itself, so the
    task exits as soon as shutdown begins rather than at its next tick. A job
    that raises is logged and the schedule continues.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        job: PeriodicJob,
        termination: TerminationSignal,
        logger: Logger,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"{name}: interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self.job = job
        self.termination = termination
        self.logger = logger.create_child(name)
        self.run_count = 0
        self.failure_count = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self.running:
            raise RuntimeError(f"Periodic task {self.name} already started")
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"periodic[{self.name}]")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        self.logger.info("Periodic task started", {"interval": self.interval})
        while not self.termination.is_triggered():
            try:
                await asyncio.wait_for(self.termination.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self._run_job()
        self.logger.info("Periodic task stopped", {"runs": self.run_count})

    async def _run_job(self) -> None:
        self.run_count += 1
        try:
            result = self.job()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.failure_count += 1
            self.logger.error(e, "Periodic job failed", {"run": self.run_count})


def create_periodic_task(
    name: str,
    interval: float,
    job: PeriodicJob,
    termination: TerminationSignal,
    logger: Logger,
) -> PeriodicTask:
    return PeriodicTask(name, interval, job, termination, logger)

"""
Daily Job Scheduler
Runs coroutine jobs at fixed UTC wall-clock times.

Each job runs in its own task; a failing run is logged and notified and
the job is rescheduled for the next day.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from atr_reversal.services.monitoring.notifier import Notifier
from atr_reversal.shared.clock import utc_now

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class DailyJob:
    """A job that fires once per UTC day at ``at`` (HH:MM)."""

    name: str
    at: str
    func: JobFunc

    def next_run(self, now: datetime) -> datetime:
        """First firing time strictly after ``now``."""
        hour, minute = (int(part) for part in self.at.split(":"))
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate


class JobScheduler:
    """Owns one timer task per daily job."""

    def __init__(
        self,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._notifier = notifier
        self._clock = clock
        self._sleep = sleep
        self._jobs: List[DailyJob] = []
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def jobs(self) -> List[DailyJob]:
        return list(self._jobs)

    def add(self, job: DailyJob) -> None:
        self._jobs.append(job)

    def start(self) -> None:
        """Start a timer task for every registered job."""
        for job in self._jobs:
            if job.name not in self._tasks:
                self._tasks[job.name] = asyncio.create_task(self._loop(job), name=f"job-{job.name}")
                logger.info(f"Scheduled {job.name} daily at {job.at} UTC")

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def run_job(self, job: DailyJob) -> Optional[Exception]:
        """
        Run a job once with failure isolation.

        Returns:
            The exception raised by the job, if any
        """
        logger.info(f"Running job: {job.name}")
        try:
            await job.func()
        except Exception as e:
            logger.exception(f"Job {job.name} failed: {e}")
            await self._notifier.send(f"{job.name} failed: {e}")
            return e
        logger.info(f"Job finished: {job.name}")
        return None

    async def _loop(self, job: DailyJob) -> None:
        while True:
            now = self._clock()
            delay = (job.next_run(now) - now).total_seconds()
            await self._sleep(delay)
            await self.run_job(job)

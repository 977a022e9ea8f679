# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Wall-clock aligned, self re-arming job scheduler.

Every job has at most one single-shot timer. When it fires the job's
action runs, and the next timer is armed only once the action has
finished, so a slow action never overlaps itself. Fire times are aligned
to the top of the hour: with a 15 minute interval a job fires at :00,
:15, :30 and :45 whenever it was started.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from macro.config import parse_interval


logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000

# Added to every delay to absorb timer jitter
SCHEDULE_MARGIN_MS = 500

Action = Callable[[], Awaitable[Any]]


def _now() -> datetime:
    """Return current local time."""
    return datetime.now().astimezone()


def next_fire_delay(interval_ms: int, now: datetime, margin_ms: int = SCHEDULE_MARGIN_MS) -> float:
    """Seconds from now until the next aligned fire time.

    Fire time is the first multiple of interval_ms after the top of the
    hour that is not before now, clamped to the next top of the hour.

    Example:
        interval 15 min, now 10:07:30 -> fires at 10:15:00 (+ margin)
        interval 90 min, now 10:07:30 -> fires at 11:00:00 (+ margin)
    """
    if interval_ms <= 0:
        raise ValueError(f"interval must be positive, got: {interval_ms}")

    top_of_hour = now.replace(minute=0, second=0, microsecond=0)
    elapsed_ms = (now - top_of_hour).total_seconds() * 1000
    fire_ms = math.ceil(elapsed_ms / interval_ms) * interval_ms
    fire_ms = min(fire_ms, HOUR_MS)
    return (fire_ms - elapsed_ms + margin_ms) / 1000


@dataclass
class ScheduledJob:
    """A named recurring action and its timer state."""
    name: str
    action: Action
    interval_ms: Optional[int] = None
    handle: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None
    shared: Dict[str, Any] = field(default_factory=dict)  # survives across runs
    run_count: int = 0
    last_error: Optional[str] = None

    @property
    def armed(self) -> bool:
        return self.handle is not None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class ScheduleEngine:
    """Owns the jobs and their timers. Must be used from the event loop thread."""

    def __init__(
        self,
        clock: Callable[[], datetime] = _now,
        margin_ms: int = SCHEDULE_MARGIN_MS,
    ):
        self.clock = clock
        self.margin_ms = margin_ms
        self._jobs: Dict[str, ScheduledJob] = {}

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    def get(self, name: str) -> ScheduledJob:
        """Look up a job.

        Raises:
            KeyError: If no job has that name.
        """
        try:
            return self._jobs[name]
        except KeyError:
            raise KeyError(f"no scheduled job named {name!r}")

    def add(self, name: str, action: Action, interval: Any = None) -> ScheduledJob:
        """Register a job, unarmed.

        Raises:
            ValueError: If a job with that name exists.
            ConfigError: If interval is malformed.
        """
        if name in self._jobs:
            raise ValueError(f"job {name!r} already exists")
        job = ScheduledJob(name=name, action=action, interval_ms=parse_interval(interval))
        self._jobs[name] = job
        return job

    def set_interval(self, name: str, interval: Any) -> ScheduledJob:
        """Replace a job's interval.

        The pending timer is cancelled before the new interval is parsed,
        so a malformed or disabled interval leaves the job unarmed.

        Raises:
            ConfigError: If interval is malformed.
        """
        job = self.get(name)
        self.cancel(name)
        job.interval_ms = None
        job.interval_ms = parse_interval(interval)
        if not job.running:
            self.arm(name)
        return job

    def arm(self, name: str) -> Optional[float]:
        """(Re)start a job's cadence from now.

        Returns:
            Delay in seconds until the fire, or None if the job is disabled.
        """
        job = self.get(name)
        self.cancel(name)
        if job.interval_ms is None:
            return None

        delay = next_fire_delay(job.interval_ms, self.clock(), self.margin_ms)
        loop = asyncio.get_running_loop()
        job.handle = loop.call_later(delay, self._fire, job)
        logger.debug(f"{name}: armed, fires in {delay:.3f}s")
        return delay

    def cancel(self, name: str) -> None:
        """Cancel a job's pending timer, if any. A running action is not touched."""
        job = self.get(name)
        if job.handle is not None:
            job.handle.cancel()
            job.handle = None
            logger.debug(f"{name}: timer cancelled")

    def trigger(self, name: str) -> asyncio.Task:
        """Run a job now and re-arm it after it completes.

        Raises:
            RuntimeError: If the job is already running.
        """
        job = self.get(name)
        if job.running:
            raise RuntimeError(f"job {name!r} is already running")
        self.cancel(name)
        return self._start(job)

    def _fire(self, job: ScheduledJob) -> None:
        job.handle = None
        if job.running:
            # Re-armed while running; the run re-arms when it completes
            logger.debug(f"{job.name}: still running, skipping fire")
            return
        self._start(job)

    def _start(self, job: ScheduledJob) -> asyncio.Task:
        job.task = asyncio.get_running_loop().create_task(self._run(job))
        return job.task

    async def _run(self, job: ScheduledJob) -> None:
        logger.debug(f"{job.name}: running")
        try:
            await job.action()
            job.last_error = None
        except asyncio.CancelledError:
            logger.info(f"{job.name}: cancelled")
            raise
        except Exception as e:
            job.last_error = str(e)
            logger.exception(f"{job.name}: run failed")
        finally:
            job.run_count += 1

        if job.name in self._jobs:
            self.arm(job.name)

    async def shutdown(self) -> None:
        """Cancel every timer and in-flight run."""
        tasks = []
        for job in self._jobs.values():
            self.cancel(job.name)
            if job.running:
                job.task.cancel()
                tasks.append(job.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()
        logger.info("scheduler stopped")

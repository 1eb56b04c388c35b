"""Cron-style driver for inventory jobs.

Each resource type gets one asyncio task that runs its job on its schedule:
either a fixed ``@every <duration>`` interval or a standard five-field cron
expression (descriptors such as ``@hourly`` included), evaluated in UTC. A
failing run is retried under the inventory retry policy, then logged; the
job stays registered and fires again at the next tick.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from croniter import croniter

from .retry import DEFAULT_INVENTORY_POLICY, RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)

_EVERY_PREFIX = "@every "
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
_CRON_FIELDS = 5


class ScheduleError(ValueError):
    """Raised for a schedule expression that cannot be parsed."""

    pass


@dataclass(frozen=True)
class Schedule:
    """A parsed schedule: a fixed interval or a cron expression."""

    expression: str
    interval_seconds: float | None = None
    cron: str | None = None

    def next_delay(self, now: datetime | None = None) -> float:
        """Seconds from ``now`` until the next run."""
        if self.interval_seconds is not None:
            return self.interval_seconds
        now = now or datetime.now(UTC)
        next_run = croniter(self.cron, now).get_next(datetime)
        return max((next_run - now).total_seconds(), 0.0)


def parse_duration(text: str) -> float:
    """Parse a duration such as ``3m`` or ``1h30m`` into seconds."""
    text = text.strip()
    if not text:
        raise ScheduleError("Empty duration")

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ScheduleError(f"Invalid duration: {text!r}")
    return total


def parse_schedule(expression: str) -> Schedule:
    """Parse ``@every <duration>``, a cron descriptor or a five-field cron expression."""
    expression = expression.strip()
    if expression.startswith(_EVERY_PREFIX):
        interval = parse_duration(expression[len(_EVERY_PREFIX):])
        if interval < 1.0:
            raise ScheduleError(f"Schedule interval must be at least 1s: {expression!r}")
        return Schedule(expression, interval_seconds=interval)

    cron = _DESCRIPTORS.get(expression, expression)
    if len(cron.split()) != _CRON_FIELDS or not croniter.is_valid(cron):
        raise ScheduleError(f"Unsupported schedule expression: {expression!r}")
    return Schedule(expression, cron=cron)


@dataclass
class InventoryJob:
    resource_type: str
    schedule: Schedule
    run: Callable[[], Awaitable[Any]]
    runs: int = 0
    failures: int = 0


class InventoryScheduler:
    """Runs one periodic job per resource type until stopped."""

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy = DEFAULT_INVENTORY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._retry_policy = retry_policy
        self._sleep = sleep
        self._jobs: dict[str, InventoryJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stop_event = asyncio.Event()

    @property
    def jobs(self) -> dict[str, InventoryJob]:
        return dict(self._jobs)

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stop_event.is_set()

    def register(self, resource_type: str, schedule: str, run: Callable[[], Awaitable[Any]]) -> InventoryJob:
        """Register a job. Raises ScheduleError for a bad expression."""
        if resource_type in self._jobs:
            raise ValueError(f"Inventory job already registered: {resource_type}")
        job = InventoryJob(
            resource_type=resource_type,
            schedule=parse_schedule(schedule),
            run=run,
        )
        self._jobs[resource_type] = job
        logger.info(
            "Registered inventory job",
            extra={"resource_type": resource_type, "schedule": schedule},
        )
        return job

    async def run_once(self, resource_type: str) -> bool:
        """Run a job once under the retry policy. Returns True on success."""
        job = self._jobs[resource_type]
        job.runs += 1
        try:
            await execute_with_retry(
                lambda attempt: job.run(),
                self._retry_policy,
                operation_name="Inventory",
                log_extra={"resource_type": resource_type},
                sleep=self._sleep,
            )
        except Exception as e:
            job.failures += 1
            logger.error(
                "Inventory job failed, will run at next tick",
                extra={"resource_type": resource_type, "error": str(e)},
            )
            return False
        return True

    async def _loop(self, job: InventoryJob) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=job.schedule.next_delay())
                break
            except TimeoutError:
                pass
            await self.run_once(job.resource_type)

    def start(self) -> None:
        """Start one task per registered job. Calling start twice is a no-op."""
        loop = asyncio.get_running_loop()
        for resource_type, job in self._jobs.items():
            if resource_type not in self._tasks:
                self._tasks[resource_type] = loop.create_task(
                    self._loop(job), name=f"inventory-{resource_type}"
                )
        logger.info("Inventory scheduler started", extra={"jobs": len(self._tasks)})

    async def stop(self) -> None:
        """Signal every job to stop and wait for in-flight runs to finish."""
        self._stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("Inventory scheduler stopped")

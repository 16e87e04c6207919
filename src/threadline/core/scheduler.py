"""In-process cron scheduler for periodic maintenance jobs.

Jobs are registered with a cron expression, evaluated with croniter, and
dispatched serially from ``tick``. A job whose previous run is still in
flight is skipped rather than started a second time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from croniter import croniter
from opentelemetry import trace

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[Any]]

_DEFAULT_POLL_INTERVAL_SECONDS = 30.0


def _next_run(cron: str, *, now: datetime | None = None) -> datetime:
    """Compute the next run time for a cron expression from now (UTC)."""
    anchor = now or datetime.now(UTC)
    return croniter(cron, anchor).get_next(datetime).replace(tzinfo=UTC)


@dataclass
class PeriodicJob:
    """A named coroutine function fired on a cron schedule."""

    name: str
    cron: str
    fn: JobFn
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_result: Any = None
    last_error: str | None = None
    running: bool = field(default=False, repr=False)


class Scheduler:
    """Holds periodic jobs and runs the due ones on each tick."""

    def __init__(self) -> None:
        self._jobs: dict[str, PeriodicJob] = {}

    @property
    def jobs(self) -> list[PeriodicJob]:
        return list(self._jobs.values())

    def add_job(
        self, name: str, cron: str, fn: JobFn, *, now: datetime | None = None
    ) -> PeriodicJob:
        """Register *fn* under *name*. Raises ``ValueError`` for a bad cron."""
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression for job {name!r}: {cron!r}")
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        job = PeriodicJob(name=name, cron=cron, fn=fn, next_run_at=_next_run(cron, now=now))
        self._jobs[name] = job
        return job

    async def run_job(self, job: PeriodicJob, *, now: datetime | None = None) -> bool:
        """Run one job immediately. Returns False when it was already running."""
        if job.running:
            logger.info("Skipping job %s: previous run still in flight", job.name)
            return False
        started = now or datetime.now(UTC)
        job.running = True
        try:
            job.last_result = await job.fn()
            job.last_error = None
            logger.info("Scheduled job %s finished: %s", job.name, job.last_result)
        except Exception as exc:
            job.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("Scheduled job failed: %s", job.name)
        finally:
            job.running = False
            job.last_run_at = started
            # Always advance next_run_at whether the run succeeded or failed
            job.next_run_at = _next_run(job.cron, now=started)
        return True

    async def tick(self, *, now: datetime | None = None) -> int:
        """Run every due job serially. Returns the number of jobs that ran.

        Creates a ``threadline.scheduler.tick`` span with ``jobs_due`` and
        ``jobs_run`` attributes.
        """
        tracer = trace.get_tracer("threadline")
        with tracer.start_as_current_span("threadline.scheduler.tick") as span:
            current = now or datetime.now(UTC)
            due = [
                job
                for job in self._jobs.values()
                if job.next_run_at is not None and job.next_run_at <= current
            ]
            span.set_attribute("jobs_due", len(due))

            ran = 0
            for job in due:
                if await self.run_job(job, now=current):
                    ran += 1

            span.set_attribute("jobs_run", ran)
            return ran

    async def run_forever(
        self, *, poll_interval_seconds: float = _DEFAULT_POLL_INTERVAL_SECONDS
    ) -> None:
        """Tick until cancelled."""
        logger.info(
            "Scheduler started with %d job(s), polling every %.0fs",
            len(self._jobs),
            poll_interval_seconds,
        )
        while True:
            await self.tick()
            await asyncio.sleep(poll_interval_seconds)


__all__ = ["JobFn", "PeriodicJob", "Scheduler"]

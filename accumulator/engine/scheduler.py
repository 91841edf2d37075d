"""APScheduler integration.

Manages one interval job per running accumulation job plus an hourly job that
resets the shared trade-rate counter.
"""

import logging
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from accumulator.utils.clock import utcnow
from accumulator.utils.constants import MIN_TICK_INTERVAL_SECONDS, TRADE_COUNTER_RESET_SECONDS

logger = logging.getLogger(__name__)

COUNTER_RESET_JOB_ID = "trade_counter_reset"


class TradeRateCounter:
    """Trades executed in the current hour, across all engines in this process."""

    def __init__(self):
        self.count = 0

    def increment(self):
        self.count += 1

    def reset(self):
        if self.count:
            logger.debug(f"Hourly trade counter reset (was {self.count})")
        self.count = 0


def _job_id(job_id: str) -> str:
    return f"tick_{job_id}"


class TickScheduler:
    """Fires ticks on a fixed interval; never runs two ticks of one job at once."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None):
        self.scheduler = scheduler or AsyncIOScheduler()
        self.trade_counter = TradeRateCounter()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def add_tick_job(
        self,
        job_id: str,
        interval_seconds: int,
        func: Callable[[str], Awaitable[object]],
        run_now: bool = True,
    ):
        """Add or replace the tick job for a job id."""
        interval_seconds = max(int(interval_seconds), MIN_TICK_INTERVAL_SECONDS)
        sched_id = _job_id(job_id)

        if self.scheduler.get_job(sched_id):
            self.scheduler.remove_job(sched_id)

        kwargs = {}
        if run_now:
            kwargs["next_run_time"] = utcnow()

        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=interval_seconds),
            args=[job_id],
            id=sched_id,
            name=f"Tick {job_id}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            **kwargs,
        )
        logger.info(f"Scheduled job {job_id} every {interval_seconds}s")

    def remove_tick_job(self, job_id: str):
        sched_id = _job_id(job_id)
        if self.scheduler.get_job(sched_id):
            self.scheduler.remove_job(sched_id)
            logger.info(f"Removed tick job for {job_id}")

    def has_tick_job(self, job_id: str) -> bool:
        return self.scheduler.get_job(_job_id(job_id)) is not None

    def next_run(self, job_id: str) -> str | None:
        job = self.scheduler.get_job(_job_id(job_id))
        if job is None or getattr(job, "next_run_time", None) is None:
            return None
        return str(job.next_run_time)

    def start(self):
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.trade_counter.reset,
            trigger=IntervalTrigger(seconds=TRADE_COUNTER_RESET_SECONDS),
            id=COUNTER_RESET_JOB_ID,
            name="Hourly trade counter reset",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with {len(self.scheduler.get_jobs())} jobs")

    def stop(self):
        """Stop firing new ticks; in-flight ticks are awaited by the supervisor."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def get_status(self) -> dict:
        jobs = self.scheduler.get_jobs()
        return {
            "running": self.scheduler.running,
            "job_count": len(jobs),
            "trades_this_hour": self.trade_counter.count,
            "jobs": [
                {
                    "id": j.id,
                    "name": j.name,
                    "next_run": str(j.next_run_time) if getattr(j, "next_run_time", None) else None,
                    "trigger": str(j.trigger),
                }
                for j in jobs
            ],
        }

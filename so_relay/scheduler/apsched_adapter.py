"""APScheduler wrapper driving the poll cadence."""

from __future__ import annotations

from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import RelayConfig
from ..logging_conf import configure_logging

TICK_JOB_ID = "relay::tick"


class APSchedulerAdapter:
    """Own the background scheduler and the single cadence job."""

    def __init__(self) -> None:
        self.scheduler = BackgroundScheduler()
        self.logger = configure_logging().bind(component="scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self, wait: bool = False) -> None:
        if self.started:
            self.scheduler.shutdown(wait=wait)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_tick(self, config: RelayConfig, callback: Callable[[], None]) -> None:
        trigger = self._build_trigger(config)
        # max_instances=1: a slow tick is skipped rather than stacked
        self.scheduler.add_job(
            callback,
            trigger=trigger,
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info("job_scheduled", cadence_seconds=config.cadence_seconds)

    def remove_tick(self) -> None:
        try:
            self.scheduler.remove_job(TICK_JOB_ID)
        except JobLookupError:
            self.logger.warning("job_remove_failed", job=TICK_JOB_ID)

    def _build_trigger(self, config: RelayConfig) -> IntervalTrigger:
        return IntervalTrigger(seconds=float(config.cadence_seconds))

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


__all__ = ["APSchedulerAdapter", "TICK_JOB_ID"]

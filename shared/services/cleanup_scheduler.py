from __future__ import annotations

import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from shared.services.cleanup import CleanupService
from shared.utils import isoformat_utc


_logger = logging.getLogger(__name__)


def _tz(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(str(name or "UTC"))
    except (ZoneInfoNotFoundError, ValueError):
        _logger.warning("unknown timezone, falling back to UTC", extra={"tz": name})
        return ZoneInfo("UTC")


class CleanupScheduler:
    """Owns an AsyncIOScheduler running the cleanup jobs on fixed cron schedules."""

    JOBS = (
        # job id, method name, cron fields
        ("session_cleanup", "cleanup_sessions", {"minute": 0}),
        ("token_cleanup", "cleanup_expired_tokens", {"hour": "*/4", "minute": 0}),
        ("log_cleanup", "cleanup_old_logs", {"hour": 2, "minute": 0}),
        ("daily_stats", "generate_daily_stats", {"hour": 1, "minute": 0}),
    )

    def __init__(self, service: CleanupService, *, timezone: str = "UTC"):
        self.service = service
        self.tz = _tz(timezone)
        self._scheduler: AsyncIOScheduler | None = None

    def _build(self) -> AsyncIOScheduler:
        sched = AsyncIOScheduler(
            timezone=self.tz,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
        )

        def _listener(event) -> None:
            job_id = getattr(event, "job_id", None)
            if event.exception:
                _logger.error(
                    "scheduler job error",
                    extra={"job_id": job_id, "exception": repr(getattr(event, "exception", None))},
                )
            else:
                _logger.info("scheduler job executed", extra={"job_id": job_id})

        sched.add_listener(_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

        for job_id, method, cron in self.JOBS:
            sched.add_job(
                getattr(self.service, method),
                CronTrigger(timezone=self.tz, **cron),
                id=job_id,
                replace_existing=True,
            )
        return sched

    @property
    def running(self) -> bool:
        return bool(self._scheduler is not None and self._scheduler.running)

    def start(self) -> None:
        if self.running:
            _logger.info("scheduler already running")
            return
        self._scheduler = self._build()
        self._scheduler.start()
        _logger.info(
            "scheduler started",
            extra={"tz": str(self.tz), "jobs": [j.id for j in self._scheduler.get_jobs()]},
        )

    def stop(self) -> None:
        if not self.running:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        _logger.info("scheduler stopped")

    def status(self) -> dict:
        jobs = []
        if self.running:
            for job in self._scheduler.get_jobs():
                jobs.append({"id": job.id, "next_run_at": isoformat_utc(job.next_run_time)})
        return {"running": self.running, "jobs": jobs}

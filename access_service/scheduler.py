"""Interval scheduling for the expiry sweep and invite cleanup."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .domain.invites import InviteLedger
from .domain.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)

MAINTENANCE_JOB_ID = "expiry-sweep"


class MaintenanceScheduler:
    """Runs the sweeper on a fixed interval beside request handling."""

    def __init__(
        self,
        sweeper: ExpirySweeper,
        ledger: InviteLedger,
        *,
        interval_seconds: int = 60,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._sweeper = sweeper
        self._ledger = ledger
        self._interval_seconds = interval_seconds
        self._scheduler = scheduler or BackgroundScheduler(
            job_defaults={
                "coalesce": True,  # collapse missed runs into one
                "max_instances": 1,
                "misfire_grace_time": interval_seconds,
            },
            timezone="UTC",
        )

    @property
    def scheduler(self) -> BackgroundScheduler:
        return self._scheduler

    def start(self) -> None:
        """Register the job, run it once right away, then every interval."""
        self._scheduler.add_job(
            self.run_maintenance,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=MAINTENANCE_JOB_ID,
            name="Account expiry sweep",
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("maintenance scheduler started, interval %ss", self._interval_seconds)

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("maintenance scheduler stopped")

    def run_maintenance(self) -> None:
        try:
            self._sweeper.run_once()
        except Exception:
            logger.exception("expiry sweep failed")
        try:
            self._ledger.cleanup()
        except Exception:
            logger.exception("invite cleanup failed")

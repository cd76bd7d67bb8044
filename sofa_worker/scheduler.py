"""
APScheduler runner for the enrichment worker.

The worker tick is a one-shot DateTrigger job that re-arms itself with the
delay returned by the cycle, so the cadence adapts to load (active vs idle)
without a fixed polling interval.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from sofa_worker.enrichment_worker import CycleReport, EnrichmentWorker
from sofa_worker.telemetry import sentry_job_context

logger = logging.getLogger(__name__)

JOB_ID = "enrichment_worker_tick"
SHUTDOWN_TIMEOUT_SECONDS = 120.0


class WorkerScheduler:
    """Owns the AsyncIOScheduler and the worker's stop signal."""

    def __init__(
        self,
        worker: EnrichmentWorker,
        startup_delay_seconds: float = 0.0,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self._worker = worker
        self._startup_delay = startup_delay_seconds
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._stop_event = asyncio.Event()
        self._tick_done = asyncio.Event()
        self._tick_done.set()
        self.last_report: Optional[CycleReport] = None

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start the scheduler and arm the first tick."""
        if self._scheduler.running:
            logger.warning("Scheduler already started, skipping duplicate initialization")
            return
        self._scheduler.start()
        self.schedule_next(self._startup_delay)
        logger.info(f"Scheduler started, first cycle in {self._startup_delay:.0f}s")

    def schedule_next(self, delay_seconds: float) -> datetime:
        run_at = datetime.now(timezone.utc) + timedelta(seconds=max(0.0, delay_seconds))
        self._scheduler.add_job(
            self.tick,
            trigger=DateTrigger(run_date=run_at),
            id=JOB_ID,
            name="Enrichment worker cycle",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=None,
        )
        return run_at

    async def tick(self) -> None:
        """Run one cycle and re-arm with the delay it computed."""
        self._tick_done.clear()
        delay = self._worker.options.active_delay_seconds
        try:
            with sentry_job_context("worker_cycle"):
                report = await self._worker.run_cycle(self._stop_event)
            self.last_report = report
            delay = report.next_delay_seconds
        except Exception as e:
            logger.error(f"[WORKER] Cycle crashed, retrying in {delay:.0f}s: {e}", exc_info=True)
        finally:
            self._tick_done.set()
            if not self._stop_event.is_set() and self._scheduler.running:
                run_at = self.schedule_next(delay)
                logger.debug(f"[WORKER] Next cycle at {run_at.isoformat()}")

    async def shutdown(self) -> None:
        """Signal the worker, let an in-flight cycle finish its current fixture, stop."""
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._tick_done.wait(), timeout=SHUTDOWN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Worker cycle did not stop in time, shutting down anyway")
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

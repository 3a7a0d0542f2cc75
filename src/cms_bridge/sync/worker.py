"""Background queue worker.

Wraps an AsyncIOScheduler with one interval job that, for every configured
platform, returns stale claims to the queue and then drains it within the
configured time budget. max_instances=1 keeps runs from overlapping inside
one process; concurrent processes are safe because claims are atomic.

Exports:
    SyncWorker: Start/stop wrapper around the interval job.
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from src.cms_bridge.sync.coordinator import CoordinatorRegistry

logger = structlog.get_logger(__name__)


class SyncWorker:
    """Periodic driver for every coordinator's batch runner.

    Args:
        coordinators: CoordinatorRegistry to drain.
        interval_seconds: Seconds between runs.
        time_budget_seconds: Budget handed to each process_queue call.
        claim_timeout_seconds: Age after which a claim counts as abandoned.
    """

    def __init__(
        self,
        coordinators: CoordinatorRegistry,
        interval_seconds: int = 5,
        time_budget_seconds: float = 50.0,
        claim_timeout_seconds: int = 300,
    ) -> None:
        self._coordinators = coordinators
        self._interval = interval_seconds
        self._time_budget = time_budget_seconds
        self._claim_timeout = claim_timeout_seconds
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False if there is nothing to drain."""
        if not self._coordinators.all():
            logger.info("sync_worker.no_platforms_configured")
            return False

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self._interval),
            id="sync_queue_drain",
            name="Drain sync queues for all configured platforms",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info(
            "sync_worker.started",
            platforms=self._coordinators.platforms(),
            interval_seconds=self._interval,
            time_budget_seconds=self._time_budget,
        )
        return True

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("sync_worker.stopped")

    async def run_once(self) -> dict[str, dict]:
        """One drain pass over every platform. Returns per-platform run results.

        A failing platform is logged and skipped so the others still drain.
        """
        results: dict[str, dict] = {}
        for coordinator in self._coordinators.all():
            try:
                await coordinator.queue.reclaim_stale(self._claim_timeout)
                run = await coordinator.process_queue(self._time_budget)
                results[coordinator.platform] = run.model_dump()
            except Exception:
                logger.error(
                    "sync_worker.platform_failed",
                    platform=coordinator.platform,
                    exc_info=True,
                )
        return results

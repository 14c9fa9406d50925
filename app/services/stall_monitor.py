"""
Stall monitor for live sources.

A live stream that stops producing fragments (stream ended without yt-dlp
noticing, network dropped, ffmpeg hung) would otherwise keep its extraction
and scanner tasks alive forever. An APScheduler interval job checks every
running live source and stops it through the registry once its newest
extracted fragment is older than STALL_TIMEOUT_SECONDS.

Usage:
    monitor = StallMonitor(registry, store, timeout_seconds=300, interval_seconds=60)
    monitor.start()     # in the lifespan, once the event loop runs
    monitor.stop()      # on shutdown
"""

import time
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.services.fragment_store import FragmentStore, Stage


logger = logging.getLogger("orchestrator")

JOB_ID = "live_stall_check"


class StallMonitor:
    """Periodically stops live sources that stopped producing fragments."""

    def __init__(
        self,
        registry,
        store: FragmentStore,
        timeout_seconds: float = 300,
        interval_seconds: float = 60,
        clock: Callable[[], float] = time.time
    ):
        self.registry = registry
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.last_check: Optional[datetime] = None
        self.last_stopped: List[str] = []

    def last_activity(self, controller) -> float:
        """Newest extracted fragment mtime, or the controller start time if none yet."""
        entries = self.store.list_entries(controller.video_id, Stage.EXTRACTED)
        newest = max((e.mtime for e in entries.values()), default=0.0)
        return max(newest, controller.started_ts)

    async def check_stalls(self) -> List[str]:
        """
        Stop every running live source idle for longer than the timeout.

        Returns:
            Video IDs that were stopped
        """
        now = self.clock()
        stopped = []
        for controller in self.registry.running():
            if not controller.is_live:
                continue
            idle = now - self.last_activity(controller)
            if idle < self.timeout_seconds:
                continue
            logger.warning(
                f"Live source {controller.video_id} produced no fragment for {idle:.0f}s, stopping"
            )
            if await self.registry.stop(controller.video_id):
                stopped.append(controller.video_id)

        self.last_check = datetime.now()
        self.last_stopped = stopped
        return stopped

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        if self._scheduler is not None:
            logger.warning("Stall monitor already running, skipping start")
            return

        self._scheduler = AsyncIOScheduler(
            job_defaults={
                'coalesce': True,  # Combine multiple missed runs into one
                'max_instances': 1,  # Only one check at a time
            }
        )
        self._scheduler.add_job(
            func=self.check_stalls,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name='Live Stall Check',
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"Stall monitor started (timeout {self.timeout_seconds}s, every {self.interval_seconds}s)"
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Stall monitor stopped")

    def status(self) -> Dict[str, object]:
        next_run = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()
        return {
            "running": self._scheduler is not None,
            "nextRun": next_run,
            "lastCheck": self.last_check.isoformat() if self.last_check else None,
            "lastStopped": self.last_stopped,
            "timeoutSeconds": self.timeout_seconds,
        }

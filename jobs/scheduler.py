"""Background job scheduler for the custody engine"""

import logging
from datetime import datetime
from typing import List

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.custody_resync_monitor import run_resync_sweep
from jobs.listing_expiry_monitor import expire_stale_listings
from jobs.monitor_registry_cleanup import monitor_registry_cleanup
from services.engine import CustodyEngine

logger = logging.getLogger(__name__)


class CustodyScheduler:
    """Periodic sweeps: stale custody resync, listing expiry, monitor registry cleanup"""

    JOB_IDS = ("custody_resync_sweep", "listing_expiry_sweep", "monitor_registry_cleanup")

    def __init__(self, engine: CustodyEngine):
        self.engine = engine
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # prevent job pileup
            'max_instances': 1,
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        # Hot-reload safety
        for job_id in self.JOB_IDS:
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)

        # Stale custody resync (STAGGERED: 10 seconds offset)
        self.scheduler.add_job(
            run_resync_sweep,
            trigger=IntervalTrigger(
                minutes=Config.RESYNC_SWEEP_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=10, microsecond=0),
            ),
            args=[self.engine],
            id="custody_resync_sweep",
            name="Custody Resync Sweep",
        )

        # Listing expiry (STAGGERED: 40 seconds offset)
        self.scheduler.add_job(
            expire_stale_listings,
            trigger=IntervalTrigger(
                minutes=Config.LISTING_EXPIRY_SWEEP_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=40, microsecond=0),
            ),
            args=[self.engine],
            id="listing_expiry_sweep",
            name="Listing Expiry Sweep",
        )

        self.scheduler.add_job(
            monitor_registry_cleanup,
            trigger=IntervalTrigger(minutes=Config.MONITOR_CLEANUP_INTERVAL_MINUTES),
            args=[self.engine],
            id="monitor_registry_cleanup",
            name="Monitor Registry Cleanup",
        )

    def job_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self):
        """Start the scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"✅ Custody scheduler started with jobs: {self.job_ids()}")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")

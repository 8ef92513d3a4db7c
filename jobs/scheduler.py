"""
Background Job Scheduler

Jobs:
1. Verification Loop - receipts for submitted escrow transitions and burns (every T_POLL seconds)
2. Payout Sync - provider status for payouts left in processing (every PAYOUT_SYNC_INTERVAL_MINUTES)
3. Lock Cleanup - expired distributed locks (every 5 minutes)
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.verification_loop import run_verification_loop
from services.atomic_lock_manager import atomic_lock_manager

logger = logging.getLogger(__name__)


async def run_payout_sync():
    from services.payout_pipeline import get_payout_pipeline
    return await get_payout_pipeline().sync_processing_payouts()


async def run_lock_cleanup():
    return await atomic_lock_manager.cleanup_expired_locks()


class CoreScheduler:
    """APScheduler wrapper; every job runs as a single instance and missed runs coalesce"""

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # One outstanding verification cycle at a time
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        start = datetime.now().replace(microsecond=0)

        if Config.chain_configured():
            self.scheduler.add_job(
                run_verification_loop,
                trigger=IntervalTrigger(seconds=Config.VERIFICATION_POLL_SECONDS, start_date=start),
                id="verification_loop",
                name="🔍 Verification Loop - escrow and burn receipts",
                replace_existing=True
            )
            logger.info(f"✅ Verification Loop scheduled every {Config.VERIFICATION_POLL_SECONDS} seconds")
        else:
            logger.warning("⚠️ Chain not configured - Verification Loop not scheduled")

        if Config.payouts_configured():
            self.scheduler.add_job(
                run_payout_sync,
                trigger=IntervalTrigger(minutes=Config.PAYOUT_SYNC_INTERVAL_MINUTES, start_date=start),
                id="payout_sync",
                name="🔄 Payout Sync - provider status polling",
                replace_existing=True
            )
            logger.info(f"✅ Payout Sync scheduled every {Config.PAYOUT_SYNC_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            run_lock_cleanup,
            trigger=IntervalTrigger(minutes=5, start_date=start),
            id="lock_cleanup",
            name="🧹 Lock Cleanup - expired distributed locks",
            replace_existing=True
        )

        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 Active jobs: {job_names}")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Background scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Background scheduler stopped")


_global_scheduler: Optional[CoreScheduler] = None


def get_scheduler() -> CoreScheduler:
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = CoreScheduler()
    return _global_scheduler

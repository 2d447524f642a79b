"""
Escrow Background Job Scheduler

Two jobs:
1. Expiry Sweep - hourly at minute 0 (UTC), cancels transactions past their deadline
2. Notification Queue - drains deferred push notifications every minute
"""

import asyncio
import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.expiry_sweeper import ExpirySweeper
from services.notification_service import QueuedNotificationSink

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_JOB_ID = "escrow_expiry_sweep"
NOTIFICATION_QUEUE_JOB_ID = "notification_queue"


async def run_expiry_sweep(sweeper: ExpirySweeper) -> int:
    """Run one sweep off the event loop; the sweep itself is blocking database work"""
    try:
        cancelled = await asyncio.to_thread(sweeper.sweep)
        if cancelled:
            logger.info(f"⏰ EXPIRY_SWEEP_JOB: cancelled {cancelled} expired transaction(s)")
        return cancelled
    except Exception as e:
        logger.error(f"❌ EXPIRY_SWEEP_JOB_FAILED: {e}")
        return 0


async def run_notification_queue(sink: QueuedNotificationSink) -> int:
    try:
        return await asyncio.to_thread(sink.process_queue)
    except Exception as e:
        logger.error(f"❌ NOTIFICATION_QUEUE_JOB_FAILED: {e}")
        return 0


class EscrowScheduler:
    """AsyncIOScheduler wrapper owning the escrow background jobs"""

    def __init__(
        self,
        sweeper: ExpirySweeper,
        notification_sink: Optional[QueuedNotificationSink] = None,
    ):
        self.sweeper = sweeper
        self.notification_sink = notification_sink

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # A sweep never overlaps the previous one
            'misfire_grace_time': 300
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        if Config.EXPIRY_SWEEP_ENABLED:
            self.scheduler.add_job(
                run_expiry_sweep,
                trigger=CronTrigger(minute=0, timezone='UTC'),
                args=[self.sweeper],
                id=EXPIRY_SWEEP_JOB_ID,
                name="⏰ Escrow Expiry Sweep",
                replace_existing=True
            )
            logger.info("✅ Escrow Expiry Sweep scheduled hourly at minute 0 (UTC)")
        else:
            logger.warning("⚠️ Escrow Expiry Sweep DISABLED by EXPIRY_SWEEP_ENABLED")

        if self.notification_sink is not None:
            self.scheduler.add_job(
                run_notification_queue,
                trigger=IntervalTrigger(seconds=Config.NOTIFICATION_QUEUE_INTERVAL_SECONDS),
                args=[self.notification_sink],
                id=NOTIFICATION_QUEUE_JOB_ID,
                name="🔔 Notification Queue",
                replace_existing=True
            )
            logger.info(
                f"✅ Notification Queue scheduled every {Config.NOTIFICATION_QUEUE_INTERVAL_SECONDS} seconds"
            )

    def start(self):
        """Register jobs and start the scheduler on the running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"🚀 Escrow scheduler started with {len(self.scheduler.get_jobs())} job(s)")

    def stop(self, wait: bool = False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("📴 Escrow scheduler stopped")

"""Background job scheduler for channel recycling and inactivity cleanup"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.channel_pool_service import ChannelPoolService

logger = logging.getLogger(__name__)


class EscrowScheduler:
    """Deferred recycling plus periodic parked-channel retry and inactivity sweep"""

    def __init__(
        self,
        channel_pool: ChannelPoolService,
        inactivity_sweep: Optional[Callable[[], Awaitable[List[str]]]] = None,
        recycle_grace: Optional[timedelta] = None,
    ):
        self.channel_pool = channel_pool
        self.inactivity_sweep = inactivity_sweep
        self.recycle_grace = recycle_grace or timedelta(minutes=Config.RECYCLE_GRACE_MINUTES)

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    @staticmethod
    def recycle_job_id(trade_id: str) -> str:
        return f"recycle_{trade_id}"

    def schedule_recycle(self, trade_id: str, delay: Optional[timedelta] = None) -> None:
        """Recycle the trade's channel after the grace window (rescheduling replaces)"""
        run_at = datetime.utcnow() + (self.recycle_grace if delay is None else delay)
        self.scheduler.add_job(
            self.run_recycle,
            trigger=DateTrigger(run_date=run_at, timezone='UTC'),
            args=[trade_id],
            id=self.recycle_job_id(trade_id),
            name=f"Recycle channel of {trade_id}",
            replace_existing=True,
            misfire_grace_time=None,  # A late recycle is still wanted
        )
        logger.info(f"⏲️ RECYCLE_SCHEDULED: trade {trade_id} at {run_at.isoformat()}Z")

    async def run_recycle(self, trade_id: str) -> None:
        try:
            channel = await self.channel_pool.recycle(trade_id)
            logger.info(f"RECYCLE_JOB_DONE: trade {trade_id} -> {channel!r}")
        except Exception as e:
            # Channel stays held; the parked-channel retry picks it up
            logger.error(f"❌ RECYCLE_JOB_FAILED: trade {trade_id}: {e}", exc_info=True)

    async def retry_parked_channels(self) -> None:
        try:
            await self.channel_pool.retry_parked_channels()
        except Exception as e:
            logger.error(f"❌ Parked channel retry failed: {e}", exc_info=True)

    async def sweep_inactive_trades(self) -> None:
        if self.inactivity_sweep is None:
            return
        try:
            await self.inactivity_sweep()
        except Exception as e:
            logger.error(f"❌ Inactivity sweep failed: {e}", exc_info=True)

    def setup_jobs(self):
        """Register the periodic jobs"""
        self.scheduler.add_job(
            self.retry_parked_channels,
            trigger=IntervalTrigger(minutes=Config.PARKED_CHANNEL_RETRY_MINUTES),
            id="retry_parked_channels",
            name="Retry Parked Channels",
            replace_existing=True,
        )
        if self.inactivity_sweep is not None:
            self.scheduler.add_job(
                self.sweep_inactive_trades,
                trigger=IntervalTrigger(minutes=Config.INACTIVITY_SWEEP_MINUTES),
                id="inactivity_sweep",
                name="Cancel Inactive Trades",
                replace_existing=True,
            )

    def start(self):
        """Start the scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Registered scheduler jobs: {[job.id for job in jobs]}")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

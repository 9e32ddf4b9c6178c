"""
Rebalance Worker

Long-lived process that runs one rebalance cycle at the configured UTC hours
(default 06:00 and 18:00). At most one cycle runs at a time; a trigger that
fires while a cycle is still running is skipped.
"""

import asyncio
import signal
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from .config import RebalanceConfig
from .rebalance_integration import RebalanceIntegration
from .scheduler import CycleSummary


class RebalanceWorker:
    """Cron-driven cycle runner"""

    JOB_ID = 'rebalance_cycle'

    def __init__(self, integration: RebalanceIntegration, config: Optional[RebalanceConfig] = None):
        self.integration = integration
        self.config = config or integration.config
        self.scheduler = AsyncIOScheduler(timezone='UTC')
        self.shutdown_event = asyncio.Event()
        self.last_summary: Optional[CycleSummary] = None

        sched_config = self.config.scheduler
        self.cron_hours = sched_config.cron_hours
        self.mode = sched_config.mode

        logger.info(f"RebalanceWorker initialized: hours={self.cron_hours}, mode={self.mode}")

    async def run_cycle(self) -> Optional[CycleSummary]:
        """Run one cycle; failures are logged and the worker keeps going"""
        logger.info("Starting scheduled rebalance cycle...")
        try:
            self.last_summary = await self.integration.run_cycle(self.mode)
        except Exception as e:
            logger.exception(f"Rebalance cycle failed: {e}")
            return None
        return self.last_summary

    def _schedule_jobs(self):
        hour_str = ','.join(str(h) for h in self.cron_hours)
        self.scheduler.add_job(
            self.run_cycle,
            CronTrigger(hour=hour_str, minute=0),
            id=self.JOB_ID,
            name='Rebalance Cycle',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"Scheduled rebalance cycle at {hour_str}:00 UTC")

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(sig, lambda signum, frame: self._signal_handler(signum))

    def _signal_handler(self, signum):
        logger.info(f"Received signal {signum}, stopping worker...")
        self.shutdown_event.set()

    def stop(self):
        self.shutdown_event.set()

    async def run(self):
        """Main entry point - start scheduler and wait for shutdown"""
        self._install_signal_handlers()
        self._schedule_jobs()
        self.scheduler.start()
        logger.info("RebalanceWorker started")

        if self.config.scheduler.run_on_startup:
            logger.info("Running initial cycle on startup...")
            await self.run_cycle()

        try:
            await self.shutdown_event.wait()
        finally:
            self.scheduler.shutdown(wait=False)
            await self.integration.close()
            logger.info("RebalanceWorker stopped")


async def run_worker(config: RebalanceConfig, dry_run: bool = False):
    """Convenience function to run the worker"""
    integration = RebalanceIntegration.from_config(config, dry_run=dry_run)
    worker = RebalanceWorker(integration, config)
    await worker.run()

"""
Background Task Scheduler for Course Catalog Updates

UPDATE SCHEDULE:
- Full Catalog Crawl: Weekly, Sunday at 3 AM (institution's timezone)

A crawl is skipped when another run (HTTP trigger or previous schedule) is
still in progress.

Usage:
    python -m tasks.scheduler                    # Run scheduler (foreground)
    python -m tasks.scheduler --once catalog     # Run a full crawl once
"""

import asyncio
import argparse
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.config import CrawlConfig
from core.logging import get_logger, setup_logging
from services.ingestion import IngestionJob, run_ingestion

logger = get_logger(__name__)

CATALOG_CRON = {"day_of_week": "sun", "hour": 3, "minute": 0}


def make_job(config: CrawlConfig) -> IngestionJob:
    """Ingestion job that crawls with config and persists the results"""
    return IngestionJob(lambda subjects: run_ingestion(config, subjects))


class TaskScheduler:
    """Manages background update tasks"""

    def __init__(self, job: Optional[IngestionJob] = None, config: Optional[CrawlConfig] = None):
        self.config = config or CrawlConfig.from_env()
        self.job = job or make_job(self.config)
        self.scheduler = AsyncIOScheduler(timezone=self.config.profile.timezone)

    async def start(self):
        """Start the scheduler with configured tasks"""
        self.scheduler.add_job(
            self.update_full_catalog,
            CronTrigger(timezone=self.config.profile.timezone, **CATALOG_CRON),
            id='update_catalog_weekly',
            name='Full Catalog Crawl (Weekly)',
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        logger.info(f"Scheduler started for {self.config.profile.name}")
        for job in self.scheduler.get_jobs():
            logger.info(f"  - {job.name}: {job.trigger}")

    def shutdown(self):
        """Shutdown the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    # FULL CATALOG CRAWL (Slow, weekly)

    async def update_full_catalog(self):
        """Crawl every subject and persist, unless a run is already going"""
        if self.job.is_running:
            logger.warning("Skipping scheduled crawl: a run is already in progress")
            return None

        logger.info("Starting scheduled full catalog crawl...")
        try:
            result = await self.job.run(None)
        except Exception as e:
            logger.error(f"Full catalog crawl failed: {e}")
            return None

        logger.info(
            f"Full catalog crawl complete: {result.courses_scraped} courses, "
            f"{result.sections_scraped} sections, {len(result.errors)} errors"
        )
        return result


async def run_scheduler():
    """Run the scheduler indefinitely"""
    scheduler = TaskScheduler()
    await scheduler.start()

    try:
        # Keep running until interrupted
        while True:
            await asyncio.sleep(1)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        scheduler.shutdown()


async def run_once(task: str):
    """Run a single task once"""
    if task == "catalog":
        scheduler = TaskScheduler()
        result = await scheduler.update_full_catalog()
        if result is not None:
            print(f"Result: {result.to_dict()}")
    else:
        print(f"Unknown task: {task}")


def main():
    parser = argparse.ArgumentParser(
        description="Course Catalog Scheduler"
    )
    parser.add_argument(
        "--once",
        type=str,
        choices=["catalog"],
        help="Run a single task once and exit"
    )

    args = parser.parse_args()
    setup_logging()

    if args.once:
        asyncio.run(run_once(args.once))
    else:
        asyncio.run(run_scheduler())


if __name__ == "__main__":
    main()

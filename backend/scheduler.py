# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from engage.config.settings import settings
from engage.jobs.campaign_worker import run_campaign_worker_step
from engage.jobs.follow_up_worker import run_follow_up_worker_step
from engage.journeys.engine import run_journey_engine
from engage.journeys.step_processor import process_scheduled_journey_steps
from engage.segments.evaluator import refresh_segment_counts
from engage.utils.logging import setup_logging

setup_logging()
logger = logging.getLogger("SchedulerService")


async def run_campaign_queue():
    # Drain every due queue item; each call claims at most one.
    while await run_campaign_worker_step() is not None:
        pass


async def main():
    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

    # Job 1: Due journey steps, event timeouts and goal checks every minute
    scheduler.add_job(
        process_scheduled_journey_steps,
        'interval',
        minutes=1,
        id="journey_step_processor_job",
        max_instances=1
    )
    logger.info("Scheduled job: process_scheduled_journey_steps (every minute).")

    # Job 2: Send queued campaigns every minute
    scheduler.add_job(
        run_campaign_queue,
        'interval',
        minutes=1,
        id="campaign_worker_job",
        max_instances=1
    )
    logger.info("Scheduled job: run_campaign_queue (every minute).")

    # Job 3: Campaign follow-ups every 5 minutes
    scheduler.add_job(
        run_follow_up_worker_step,
        'interval',
        minutes=5,
        id="follow_up_worker_job",
        max_instances=1
    )
    logger.info("Scheduled job: run_follow_up_worker_step (every 5 minutes).")

    # Job 4: Batch journey triggers (segments, abandoned carts, dates) every 15 minutes
    scheduler.add_job(
        run_journey_engine,
        'interval',
        minutes=15,
        id="journey_engine_job",
        max_instances=1
    )
    logger.info("Scheduled job: run_journey_engine (every 15 minutes).")

    # Job 5: Refresh segment counts flagged by webhooks every 30 minutes
    scheduler.add_job(
        refresh_segment_counts,
        'interval',
        minutes=30,
        id="segment_sync_job",
        replace_existing=True
    )
    logger.info("Scheduled job: refresh_segment_counts (every 30 minutes).")

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()

if __name__ == "__main__":
    asyncio.run(main())

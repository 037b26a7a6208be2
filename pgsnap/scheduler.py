# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap Scheduler - Daily backup daemon.

Runs the backup pipeline once a day at a fixed HH:MM (UTC). A failed run
is logged and the daemon waits for the next slot; it never retries.
"""

import asyncio

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from pgsnap.config import PipelineConfig
from pgsnap.core import run_backup
from pgsnap.exceptions import ConfigurationError, PgSnapError

logger = structlog.get_logger()

JOB_ID = "pgsnap_daily_backup"
DEFAULT_SCHEDULE = "02:00"


async def scheduled_backup(config: PipelineConfig) -> None:
    """Run one scheduled backup, logging instead of raising."""
    logger.info("scheduled_backup_starting")
    try:
        result = await run_backup(config)
        logger.info(
            "scheduled_backup_completed",
            remote_uri=result.remote_uri,
            compressed_size=result.compressed_size,
        )
    except PgSnapError as e:
        logger.error("scheduled_backup_failed", stage=e.stage, error=str(e))
    except Exception as e:
        logger.exception("scheduled_backup_crashed", error=str(e))


def create_scheduler(config: PipelineConfig) -> AsyncIOScheduler:
    """
    Build a scheduler with the daily backup job registered.

    Args:
        config: Pipeline configuration; schedule_cron defaults to 02:00

    Returns:
        An AsyncIOScheduler that has not been started
    """
    schedule = config.schedule_cron or DEFAULT_SCHEDULE
    try:
        hour, minute = map(int, schedule.split(":"))
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid schedule: {schedule!r}, expected HH:MM",
        ) from e

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        scheduled_backup,
        trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
        args=[config],
        id=JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


async def run_scheduler(config: PipelineConfig, stop_event: asyncio.Event | None = None) -> None:
    """
    Start the daily schedule and block until stop_event is set.

    Args:
        config: Pipeline configuration
        stop_event: Set it to stop the daemon (default: run forever)
    """
    scheduler = create_scheduler(config)
    scheduler.start()

    job = scheduler.get_job(JOB_ID)
    logger.info(
        "scheduler_started",
        schedule=config.schedule_cron or DEFAULT_SCHEDULE,
        next_run=job.next_run_time.isoformat() if job and job.next_run_time else None,
    )

    stop_event = stop_event or asyncio.Event()
    try:
        await stop_event.wait()
    finally:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

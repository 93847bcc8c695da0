"""Background scheduler for the periodic due-task scan."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fleetctl.tasks.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

DUE_SCAN_JOB_ID = "due_task_scan"


async def run_due_task_scan(task_scheduler: TaskScheduler) -> None:
    """Run one due-task scan; failures are logged so the job keeps its schedule."""
    try:
        await task_scheduler.run_due_tasks()
    except Exception as exc:  # noqa: BLE001
        logger.error("due_task_scan_failed", extra={"error": str(exc)}, exc_info=True)


def start_scheduler(task_scheduler: TaskScheduler, interval_seconds: int = 60) -> AsyncIOScheduler:
    """Initialize and start the background scheduler."""
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_due_task_scan,
        trigger=IntervalTrigger(seconds=interval_seconds),
        args=[task_scheduler],
        id=DUE_SCAN_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("scheduler_started", extra={"job": DUE_SCAN_JOB_ID, "interval_seconds": interval_seconds})
    return scheduler


def stop_scheduler(scheduler: AsyncIOScheduler) -> None:
    """Stop the background scheduler."""
    scheduler.shutdown(wait=False)
    logger.info("scheduler_stopped")

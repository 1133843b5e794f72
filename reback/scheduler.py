"""
APScheduler configuration for unattended backups.

Manages:
- The scheduled backup job (based on the settings cron expression)
- Reloading settings before each run so edits apply on the next fire
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from reback.config import Settings, load_settings
from reback.models import ConfigError
from reback.backup.executor import run_backup

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup'

# Global scheduler instance
scheduler = None


def init_scheduler(settings_path, settings: Settings):
    """
    Initialize and configure APScheduler.

    Args:
        settings_path: Settings file re-read before every run
        settings: Currently loaded settings (provides the cron expression)

    Raises:
        ConfigError: If the cron expression is invalid
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    try:
        trigger = CronTrigger.from_crontab(settings.schedule_cron, timezone='UTC')
    except ValueError as e:
        raise ConfigError(f"Invalid schedule {settings.schedule_cron!r}: {e}")

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one run at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[str(settings_path)],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Scheduled backup',
        replace_existing=True
    )

    logger.info(f"Scheduled backup ({settings.schedule_cron} UTC)")
    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until interrupted.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    for job in get_scheduled_jobs():
        logger.info(f"  - {job['id']}: {job['name']} (next run: {job['next_run'] or 'N/A'})")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler interrupted")
        stop_scheduler()


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")
    scheduler = None


def _execute_backup_wrapper(settings_path: str):
    """
    Run one backup from freshly loaded settings.

    Errors are logged and never propagate into the scheduler thread.
    """
    try:
        settings = load_settings(settings_path)
    except ConfigError as e:
        logger.error(f"Scheduled backup skipped, settings invalid: {e}")
        return None

    try:
        result = run_backup(settings)
    except Exception:
        logger.exception("Scheduled backup failed")
        return None

    if result.ok:
        logger.info("Scheduled backup completed successfully")
    else:
        logger.warning(f"Scheduled backup completed with failures: {result.failed_titles()}")
    return result


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs

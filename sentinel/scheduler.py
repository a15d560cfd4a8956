"""
APScheduler configuration and job scheduling for Sentinel.

Manages:
- The scheduled backup job (based on the configured cron expression)
- Manual triggers
- The single-run guarantee: at most one backup is in flight per process
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from sentinel.backup.context import BackupError, RunContext
from sentinel.backup.executor import JobResult, JobState, execute_backup
from sentinel.backup.storage import format_run_timestamp


logger = logging.getLogger(__name__)

SCHEDULED_JOB_ID = 'scheduled_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

_run_lock = threading.Lock()
_current_ctx: Optional[RunContext] = None
_last_result: Optional[JobResult] = None


class BackupInProgress(RuntimeError):
    """Raised when a backup is requested while another one is running."""
    pass


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance holding BACKUP_SETTINGS
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    settings = app.config['BACKUP_SETTINGS']
    if settings.schedule:
        scheduler.add_job(
            func=_execute_backup_wrapper,
            trigger=CronTrigger.from_crontab(settings.schedule, timezone='UTC'),
            id=SCHEDULED_JOB_ID,
            name='Scheduled backup',
            replace_existing=True
        )
        logger.info(f"Scheduled backup with schedule: {settings.schedule}")
    else:
        logger.info("No schedule configured; backups run only when triggered")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run_time = getattr(job, 'next_run_time', None)
            next_run = next_run_time.isoformat() if next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler, cancelling a backup that is still running."""
    cancel_running_backup('scheduler shutdown')

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def run_backup(settings, timeout: Optional[float] = None) -> JobResult:
    """
    Run one backup in the calling thread.

    Args:
        settings: BackupSettings
        timeout: Seconds before the run is cancelled (None = no deadline)

    Returns:
        JobResult of the run. A run whose executor cannot be built (bad
        codec settings, S3 client init failure) is reported as failed in
        the idle phase.

    Raises:
        BackupInProgress: If another backup is already running
    """
    global _current_ctx, _last_result

    if not _run_lock.acquire(blocking=False):
        raise BackupInProgress("A backup is already running")

    ctx = RunContext(timeout=timeout)
    try:
        _current_ctx = ctx
        try:
            result = execute_backup(settings, ctx=ctx)
        except (BackupError, ValueError) as e:
            result = _not_started(e)
        _last_result = result
        return result
    finally:
        _current_ctx = None
        ctx.release()
        _run_lock.release()


def _not_started(error: BaseException) -> JobResult:
    now = datetime.now(timezone.utc)
    return JobResult(
        run_timestamp=format_run_timestamp(now),
        state=JobState.FAILED,
        failed_phase=JobState.IDLE,
        error=error,
        started_at=now,
        completed_at=now,
        logs=[f"Backup could not start: {error}"]
    )


def _execute_backup_wrapper():
    """Entry point used by APScheduler for scheduled and manual runs."""
    settings = flask_app.config['BACKUP_SETTINGS']
    timeout = flask_app.config.get('BACKUP_TIMEOUT')

    try:
        logger.info("Scheduler executing backup")
        result = run_backup(settings, timeout=timeout)
    except BackupInProgress:
        logger.warning("Skipping backup: previous run still in progress")
        return

    if result.succeeded:
        logger.info(f"Backup {result.run_timestamp} completed with status: {result.state.value}")
    else:
        logger.error(
            f"Backup {result.run_timestamp} failed during {result.failed_phase.value}: {result.error}"
        )


def trigger_backup_now() -> str:
    """
    Manually trigger a backup immediately.

    Returns:
        ID of the one-time scheduler job

    Raises:
        RuntimeError: If the scheduler is not initialized
        BackupInProgress: If a backup is already running
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if is_backup_running():
        raise BackupInProgress("A backup is already running")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp())}"

    # 1 second delay to avoid racing the scheduler's wakeup
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name='Manual backup',
        replace_existing=True
    )

    logger.info(f"Manually triggered backup ({job_id})")
    return job_id


def cancel_running_backup(reason: str = 'cancelled by request') -> bool:
    """
    Cancel the backup in flight, if any.

    Returns:
        True if a running backup was signalled
    """
    ctx = _current_ctx
    if ctx is None:
        return False

    ctx.cancel(reason)
    logger.warning(f"Backup cancellation requested: {reason}")
    return True


def is_backup_running() -> bool:
    return _run_lock.locked()


def get_last_result() -> Optional[JobResult]:
    return _last_result


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
        # Jobs added before start() have no next_run_time yet
        next_run_time = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run_time.isoformat() if next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs

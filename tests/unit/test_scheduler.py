"""
Unit tests for scheduling (sentinel/scheduler.py).

Tests scheduler setup, manual triggers, the single-run lock and cancellation.
"""

import logging
from unittest.mock import patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from sentinel import scheduler as scheduler_module
from sentinel.backup.context import BackupError
from sentinel.backup.executor import JobResult, JobState


RUN_TS = '2024-01-01T00-00-00'


@pytest.fixture(autouse=True)
def reset_scheduler():
    """Give every test a fresh scheduler module state."""
    scheduler_module.scheduler = None
    scheduler_module.flask_app = None
    scheduler_module._current_ctx = None
    scheduler_module._last_result = None
    yield
    if scheduler_module.scheduler is not None and scheduler_module.scheduler.running:
        scheduler_module.scheduler.shutdown(wait=False)
    scheduler_module.scheduler = None
    scheduler_module.flask_app = None
    if scheduler_module._run_lock.locked():
        scheduler_module._run_lock.release()


@pytest.fixture
def scheduled_app(app, backup_settings):
    """App whose settings carry a cron schedule."""
    app.config['BACKUP_SETTINGS'] = backup_settings.model_copy(update={'schedule': '0 4 */14 * *'})
    return app


class TestInitScheduler:
    """Test init_scheduler."""

    def test_adds_cron_job(self, scheduled_app):
        """Test the configured schedule becomes a cron job."""
        sched = scheduler_module.init_scheduler(scheduled_app)

        job = sched.get_job(scheduler_module.SCHEDULED_JOB_ID)
        assert job is not None
        assert isinstance(job.trigger, CronTrigger)
        assert scheduler_module.flask_app is scheduled_app

    def test_no_schedule_no_job(self, app):
        """Test without a schedule only manual runs are possible."""
        sched = scheduler_module.init_scheduler(app)

        assert sched.get_jobs() == []

    def test_init_is_idempotent(self, scheduled_app):
        """Test a second init returns the existing scheduler."""
        first = scheduler_module.init_scheduler(scheduled_app)

        assert scheduler_module.init_scheduler(scheduled_app) is first

    def test_start_requires_init(self):
        """Test start_scheduler fails before init_scheduler."""
        with pytest.raises(RuntimeError):
            scheduler_module.start_scheduler()

    def test_start_and_stop(self, scheduled_app):
        """Test the scheduler starts and stops cleanly."""
        scheduler_module.init_scheduler(scheduled_app)
        scheduler_module.start_scheduler()

        assert scheduler_module.scheduler.running
        jobs = scheduler_module.get_scheduled_jobs()
        assert jobs[0]['id'] == scheduler_module.SCHEDULED_JOB_ID
        assert jobs[0]['next_run'] is not None

        scheduler_module.stop_scheduler()
        assert not scheduler_module.scheduler.running


class TestRunBackup:
    """Test run_backup and the single-run guarantee."""

    def test_returns_and_stores_result(self, backup_settings):
        """Test the result of the run is kept as the last result."""
        result = JobResult(run_timestamp=RUN_TS, state=JobState.SUCCEEDED)

        with patch('sentinel.scheduler.execute_backup', return_value=result) as mock_execute:
            assert scheduler_module.run_backup(backup_settings) is result

        assert scheduler_module.get_last_result() is result
        assert not scheduler_module.is_backup_running()
        assert mock_execute.call_args[0][0] is backup_settings

    def test_setup_failure_replaces_last_result(self, backup_settings):
        """Test a run whose executor cannot be built is recorded as failed."""
        scheduler_module._last_result = JobResult(run_timestamp=RUN_TS, state=JobState.SUCCEEDED)
        error = BackupError('Failed to initialize S3 client: bad endpoint')

        with patch('sentinel.scheduler.execute_backup', side_effect=error):
            result = scheduler_module.run_backup(backup_settings)

        assert result.state == JobState.FAILED
        assert result.failed_phase == JobState.IDLE
        assert result.error is error
        assert result.to_dict()['error'] == str(error)
        assert scheduler_module.get_last_result() is result
        assert not scheduler_module.is_backup_running()

    def test_second_run_is_rejected(self, backup_settings):
        """Test a backup cannot start while another is in flight."""
        scheduler_module._run_lock.acquire()

        with patch('sentinel.scheduler.execute_backup') as mock_execute:
            with pytest.raises(scheduler_module.BackupInProgress):
                scheduler_module.run_backup(backup_settings)

        mock_execute.assert_not_called()

    def test_lock_released_after_exception(self, backup_settings):
        """Test an unexpected error does not leave the lock held."""
        with patch('sentinel.scheduler.execute_backup', side_effect=RuntimeError('boom')):
            with pytest.raises(RuntimeError):
                scheduler_module.run_backup(backup_settings)

        assert not scheduler_module.is_backup_running()

    def test_cancel_running_backup(self, backup_settings):
        """Test cancellation reaches the context of the running backup."""
        seen = {}

        def fake_execute(settings, ctx=None):
            seen['running'] = scheduler_module.is_backup_running()
            seen['cancelled'] = scheduler_module.cancel_running_backup('operator request')
            seen['ctx_cancelled'] = ctx.cancelled
            return JobResult(run_timestamp=RUN_TS, state=JobState.FAILED)

        with patch('sentinel.scheduler.execute_backup', side_effect=fake_execute):
            scheduler_module.run_backup(backup_settings)

        assert seen == {'running': True, 'cancelled': True, 'ctx_cancelled': True}

    def test_cancel_without_running_backup(self):
        """Test cancelling with nothing running is a no-op."""
        assert scheduler_module.cancel_running_backup() is False

    def test_timeout_passed_to_context(self, backup_settings):
        """Test the run context carries the configured deadline."""
        def fake_execute(settings, ctx=None):
            assert ctx.wait(2)
            return JobResult(run_timestamp=RUN_TS, state=JobState.FAILED)

        with patch('sentinel.scheduler.execute_backup', side_effect=fake_execute):
            scheduler_module.run_backup(backup_settings, timeout=0.05)


class TestTriggerBackup:
    """Test manual triggers."""

    def test_trigger_requires_scheduler(self):
        """Test manual trigger fails when the scheduler is not initialized."""
        with pytest.raises(RuntimeError, match='not initialized'):
            scheduler_module.trigger_backup_now()

    def test_trigger_adds_one_time_job(self, app):
        """Test a manual trigger schedules a one-time job."""
        sched = scheduler_module.init_scheduler(app)

        job_id = scheduler_module.trigger_backup_now()

        assert job_id.startswith('manual_')
        job = sched.get_job(job_id)
        assert isinstance(job.trigger, DateTrigger)

    def test_trigger_while_running(self, app):
        """Test a manual trigger is refused during a run."""
        scheduler_module.init_scheduler(app)
        scheduler_module._run_lock.acquire()

        with pytest.raises(scheduler_module.BackupInProgress):
            scheduler_module.trigger_backup_now()

    def test_wrapper_runs_backup_with_app_settings(self, app):
        """Test the scheduler entry point uses the app's settings and timeout."""
        scheduler_module.init_scheduler(app)
        app.config['BACKUP_TIMEOUT'] = 60
        result = JobResult(run_timestamp=RUN_TS, state=JobState.SUCCEEDED)

        with patch('sentinel.scheduler.run_backup', return_value=result) as mock_run:
            scheduler_module._execute_backup_wrapper()

        mock_run.assert_called_once_with(app.config['BACKUP_SETTINGS'], timeout=60)

    def test_wrapper_skips_when_busy(self, app):
        """Test an overlapping scheduled run is skipped, not queued."""
        scheduler_module.init_scheduler(app)

        with patch('sentinel.scheduler.run_backup',
                   side_effect=scheduler_module.BackupInProgress('busy')) as mock_run:
            scheduler_module._execute_backup_wrapper()

        mock_run.assert_called_once()

    def test_wrapper_reports_client_init_failure(self, app, caplog):
        """Test a scheduled run that cannot build its S3 client is logged and kept as the last result."""
        scheduler_module.init_scheduler(app)
        scheduler_module._last_result = JobResult(run_timestamp=RUN_TS, state=JobState.SUCCEEDED)

        with patch('sentinel.backup.storage.boto3.client', side_effect=ValueError('Invalid endpoint: nope')):
            with caplog.at_level(logging.ERROR, logger='sentinel.scheduler'):
                scheduler_module._execute_backup_wrapper()

        result = scheduler_module.get_last_result()
        assert result.run_timestamp != RUN_TS
        assert result.failed_phase == JobState.IDLE
        assert 'Failed to initialize S3 client' in str(result.error)
        assert 'failed during idle' in caplog.text
        assert not scheduler_module.is_backup_running()

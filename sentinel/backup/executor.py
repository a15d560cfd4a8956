"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create a fresh, uniquely named workspace
2. Run every producer concurrently and wait for all of them
3. Compress the artifacts into one archive (skipped when format is 'none')
4. Upload the archive, or each artifact, to the object store
5. Cleanup local artifacts, archive and workspace (always)

Any failure in steps 1-4 fails the whole job; cleanup problems are only logged.
"""

import os
import queue
import shutil
import logging
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from .context import BackupError, RunCancelled, RunContext
from .compression import create_codec, CodecError
from .producers import Artifact, Producer, ProducerError, create_producers
from .storage import S3ObjectStore, StreamingUploader, format_run_timestamp


logger = logging.getLogger(__name__)


class CleanupError(BackupError):
    """Reported (never raised) when local state cannot be removed."""

    def __init__(self, cause: BaseException):
        super().__init__(f"Cleanup failed: {cause}")
        self.cause = cause


class JobState(str, Enum):
    IDLE = 'idle'
    PRODUCING = 'producing_artifacts'
    COMPRESSING = 'compressing'
    UPLOADING = 'uploading'
    CLEANING_UP = 'cleaning_up'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


# Allowed transitions; no state is ever re-entered
_TRANSITIONS = {
    JobState.IDLE: {JobState.PRODUCING, JobState.CLEANING_UP},
    JobState.PRODUCING: {JobState.COMPRESSING, JobState.UPLOADING, JobState.CLEANING_UP},
    JobState.COMPRESSING: {JobState.UPLOADING, JobState.CLEANING_UP},
    JobState.UPLOADING: {JobState.CLEANING_UP},
    JobState.CLEANING_UP: {JobState.SUCCEEDED, JobState.FAILED},
    JobState.SUCCEEDED: set(),
    JobState.FAILED: set(),
}


@dataclass
class JobResult:
    """Outcome of one backup run."""

    run_timestamp: str
    state: JobState = JobState.IDLE
    failed_phase: Optional[JobState] = None
    error: Optional[BaseException] = None
    failed_sources: List[str] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)
    archive_path: Optional[str] = None
    archive_size_bytes: Optional[int] = None
    uploaded_keys: List[str] = field(default_factory=list)
    cleanup_errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.SUCCEEDED

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_timestamp': self.run_timestamp,
            'state': self.state.value,
            'succeeded': self.succeeded,
            'failed_phase': self.failed_phase.value if self.failed_phase else None,
            'error': self.error_message,
            'failed_sources': list(self.failed_sources),
            'artifacts': [
                {'source': a.source, 'path': a.path, 'size_bytes': a.size_bytes}
                for a in self.artifacts
            ],
            'archive_size_bytes': self.archive_size_bytes,
            'uploaded_keys': list(self.uploaded_keys),
            'cleanup_errors': list(self.cleanup_errors),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'logs': list(self.logs),
        }


class BackupExecutor:
    """
    Runs one backup job exactly once.

    Producers, codec and uploader are resolved at construction, so an
    unsupported compression format fails before any producer runs.
    """

    # Seconds producers get to stop once the run is cancelled
    CANCEL_GRACE_PERIOD = 0.5
    POLL_INTERVAL = 0.1

    def __init__(
        self,
        settings,
        producers: Optional[List[Producer]] = None,
        uploader: Optional[StreamingUploader] = None,
        run_timestamp: Optional[str] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: BackupSettings for this run
            producers: Producers to run (default: built from settings)
            uploader: Uploader to use (default: S3 uploader built from settings)
            run_timestamp: Object key prefix (default: current UTC time)

        Raises:
            ValueError: If the compression format or level is not supported
        """
        self.settings = settings
        self.codec = create_codec(settings.compression.format)
        if self.codec is not None:
            self.compression_level = self.codec.resolve_level(settings.compression.level)
        else:
            self.compression_level = None

        self.producers = producers if producers is not None else create_producers(settings)
        self.run_timestamp = run_timestamp or format_run_timestamp()

        if uploader is None:
            uploader = StreamingUploader(
                S3ObjectStore.from_settings(settings.s3),
                max_concurrency=settings.s3.max_concurrency,
                part_size=settings.s3.part_size
            )
        self.uploader = uploader.for_run(self.run_timestamp)

        self.workspace: Optional[str] = None
        self.result = JobResult(run_timestamp=self.run_timestamp)
        self._executed = False
        self._artifacts_lock = threading.Lock()
        self._abandoned = False

    @property
    def state(self) -> JobState:
        return self.result.state

    def execute(self, ctx: Optional[RunContext] = None) -> JobResult:
        """
        Execute the backup job.

        Args:
            ctx: Cancellation signal for the whole run (default: never cancelled)

        Returns:
            JobResult; never raises for pipeline failures

        Raises:
            RuntimeError: If this executor already ran
        """
        if self._executed:
            raise RuntimeError("BackupExecutor instances run exactly once")
        self._executed = True

        if ctx is None:
            ctx = RunContext()

        self.result.started_at = datetime.now(timezone.utc)
        self._log(f"Starting backup run {self.run_timestamp} with {len(self.producers)} producers")

        try:
            self._execute_workflow(ctx)
        except Exception as e:
            self._fail(e)
        finally:
            self._transition(JobState.CLEANING_UP)
            self._cleanup()

        if self.result.error is None:
            self._transition(JobState.SUCCEEDED)
            self._log("Backup completed successfully")
        else:
            self._transition(JobState.FAILED)
            self._log(f"Backup failed during {self.result.failed_phase.value}: {self.result.error}")

        self.result.completed_at = datetime.now(timezone.utc)
        return self.result

    def _execute_workflow(self, ctx: RunContext):
        """Execute the main backup workflow steps."""
        # Workspace setup failures are reported against the idle state
        self._create_workspace()
        ctx.check()

        self._transition(JobState.PRODUCING)

        artifacts = self._produce_artifacts(ctx)
        ctx.check()

        if self.codec is None:
            self._transition(JobState.UPLOADING)
            self._upload_artifacts(ctx, artifacts)
            return

        self._transition(JobState.COMPRESSING)
        archive_path = self._compress(artifacts)
        ctx.check()

        self._transition(JobState.UPLOADING)
        key = self.uploader.upload_file(ctx, archive_path, base_path=self.workspace)
        self.result.uploaded_keys.append(key)
        self._log(f"Uploaded archive to {key}")

    def _create_workspace(self):
        root = self.settings.workspace_root
        os.makedirs(root, exist_ok=True)
        self.workspace = tempfile.mkdtemp(prefix=f"sentinel_{self.run_timestamp}_", dir=root)
        self._log(f"Workspace: {self.workspace}")

    def _produce_artifacts(self, ctx: RunContext) -> List[Artifact]:
        """
        Run every producer concurrently and wait for all of them.

        Once ctx is cancelled, producers get CANCEL_GRACE_PERIOD seconds to
        stop; any still running after that is abandoned and reported as
        cancelled.

        Returns:
            Artifacts sorted by source name

        Raises:
            ProducerError: The first failure, after every producer finished
        """
        if not self.producers:
            raise ProducerError('backup', ValueError("No producers configured"))

        errors: queue.Queue = queue.Queue()

        def run(producer: Producer):
            self._log(f"Performing backup: {producer.name}")
            try:
                path = producer.produce(ctx, self.workspace)
                artifact = Artifact.from_path(producer.name, path)
            except ProducerError as e:
                errors.put(e)
                self._log(f"Producer {producer.name} failed: {e.cause}", logging.ERROR)
                return
            except Exception as e:
                errors.put(ProducerError(producer.name, e))
                self._log(f"Producer {producer.name} failed: {e}", logging.ERROR)
                return

            with self._artifacts_lock:
                if self._abandoned:
                    return
                self.result.artifacts.append(artifact)
            self._log(
                f"Producer {producer.name} created {artifact.path} "
                f"({artifact.size_bytes / 1024 / 1024:.2f} MB)"
            )

        pool = ThreadPoolExecutor(max_workers=len(self.producers), thread_name_prefix='producer')
        try:
            futures = {pool.submit(run, producer): producer for producer in self.producers}
            pending = self._wait_for_producers(ctx, set(futures))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if pending:
            with self._artifacts_lock:
                self._abandoned = True
            for future in pending:
                name = futures[future].name
                errors.put(ProducerError(name, RunCancelled(ctx.reason or 'cancelled')))
                self._log(f"Producer {name} ignored cancellation, abandoning it", logging.ERROR)

        failures: List[ProducerError] = []
        while not errors.empty():
            failures.append(errors.get_nowait())

        if failures:
            self.result.failed_sources = [failure.source for failure in failures]
            raise failures[0]

        with self._artifacts_lock:
            self.result.artifacts.sort(key=lambda a: (a.source, a.path))
            return list(self.result.artifacts)

    def _wait_for_producers(self, ctx: RunContext, pending: set) -> set:
        """Wait until every future is done, or the grace period after cancellation ends."""
        while pending and not ctx.cancelled:
            _, pending = wait(pending, timeout=self.POLL_INTERVAL)

        if pending:
            _, pending = wait(pending, timeout=self.CANCEL_GRACE_PERIOD)
        return pending

    def _compress(self, artifacts: List[Artifact]) -> str:
        self._log(f"Compressing {len(artifacts)} artifacts ({self.codec.name})")
        archive_path = self.codec.compress(
            [artifact.path for artifact in artifacts],
            self.compression_level,
            self.workspace
        )
        self.result.archive_path = archive_path
        try:
            self.result.archive_size_bytes = os.path.getsize(archive_path)
        except OSError as e:
            raise CodecError(e) from e
        self._log(
            f"Archive created: {os.path.basename(archive_path)} "
            f"({self.result.archive_size_bytes / 1024 / 1024:.2f} MB)"
        )
        return archive_path

    def _upload_artifacts(self, ctx: RunContext, artifacts: List[Artifact]):
        """Upload each artifact individually (no compression configured)."""
        for artifact in artifacts:
            base_path = self.workspace if self._in_workspace(artifact.path) else None

            if os.path.isdir(artifact.path):
                keys = self.uploader.upload_directory(
                    ctx, artifact.path,
                    base_path=base_path or os.path.dirname(os.path.abspath(artifact.path))
                )
                self.result.uploaded_keys.extend(keys)
            else:
                key = self.uploader.upload_file(ctx, artifact.path, base_path=base_path)
                self.result.uploaded_keys.append(key)
            self._log(f"Uploaded {artifact.source} artifact {artifact.path}")

    def _in_workspace(self, path: str) -> bool:
        workspace = os.path.abspath(self.workspace)
        return os.path.commonpath([workspace, os.path.abspath(path)]) == workspace

    def _cleanup(self):
        """Remove artifacts, archive and the workspace. Errors are logged only."""
        paths = [artifact.path for artifact in self.result.artifacts]
        if self.result.archive_path:
            paths.append(self.result.archive_path)

        for path in paths:
            try:
                if os.path.isdir(path) and not os.path.islink(path):
                    shutil.rmtree(path)
                elif os.path.lexists(path):
                    os.remove(path)
            except OSError as e:
                self._report_cleanup_error(CleanupError(e))

        if self.workspace and os.path.exists(self.workspace):
            try:
                shutil.rmtree(self.workspace)
                self._log("Cleaned up workspace")
            except OSError as e:
                self._report_cleanup_error(CleanupError(e))

    def _report_cleanup_error(self, error: CleanupError):
        self.result.cleanup_errors.append(str(error))
        self._log(f"Warning: {error}", logging.WARNING)

    def _fail(self, error: BaseException):
        """Record the failure of the current phase; the first failure wins."""
        if self.result.error is not None:
            self._log(f"Additional error: {error}", logging.ERROR)
            return

        self.result.error = error
        self.result.failed_phase = self.result.state
        if isinstance(error, ProducerError) and not self.result.failed_sources:
            self.result.failed_sources = [error.source]

        if not isinstance(error, BackupError):
            logger.exception(f"Unexpected error during {self.result.state.value}")

    def _transition(self, new_state: JobState):
        current = self.result.state
        if new_state not in _TRANSITIONS[current]:
            raise RuntimeError(f"Invalid job state transition {current.value} -> {new_state.value}")
        self.result.state = new_state
        logger.debug(f"Job {self.run_timestamp}: {current.value} -> {new_state.value}")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level used for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup(
    settings,
    ctx: Optional[RunContext] = None,
    producers: Optional[List[Producer]] = None,
    uploader: Optional[StreamingUploader] = None
) -> JobResult:
    """
    Build an executor for settings and run it once.

    Args:
        settings: BackupSettings
        ctx: Cancellation signal for the run
        producers: Override the producers built from settings
        uploader: Override the S3 uploader built from settings

    Returns:
        JobResult of the run
    """
    executor = BackupExecutor(settings, producers=producers, uploader=uploader)
    return executor.execute(ctx)

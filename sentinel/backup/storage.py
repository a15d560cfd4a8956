"""
Object storage for backup uploads.

Supports:
- S3ObjectStore: S3 or S3-compatible bucket accessed through boto3
- StreamingUploader: pipe-based, bounded-concurrency transfer of local files

Objects are stored under keys of the form {run_timestamp}/{relative_path}.
"""

import os
import queue
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError, BotoCoreError

from .context import BackupError, RunCancelled, RunContext
from .pipe import BoundedPipe


logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_PART_SIZE = 5 * 1024 * 1024  # 5MB
RUN_TIMESTAMP_FORMAT = '%Y-%m-%dT%H-%M-%S'

# Size of each read from the local file into the pipe
COPY_CHUNK_SIZE = 64 * 1024


class UploadError(BackupError):
    """Raised when a local file cannot be transferred to the object store."""

    def __init__(self, local_path: str, cause: BaseException):
        super().__init__(f"Failed to upload {local_path}: {cause}")
        self.local_path = local_path
        self.cause = cause


def format_run_timestamp(moment: Optional[datetime] = None) -> str:
    """
    Format the key prefix shared by every object of one run.

    Example: 2024-01-01T00-00-00
    """
    if moment is None:
        moment = datetime.now(timezone.utc)
    return moment.strftime(RUN_TIMESTAMP_FORMAT)


def derive_object_key(run_timestamp: str, local_path: str, base_path: str) -> str:
    """
    Build the object key for a local file.

    Args:
        run_timestamp: Key prefix of the current run
        local_path: File being uploaded
        base_path: Upload root the relative part of the key is computed from

    Returns:
        '{run_timestamp}/{relative/posix/path}'

    Raises:
        ValueError: If local_path lies outside base_path
    """
    relative = os.path.relpath(os.path.abspath(local_path), os.path.abspath(base_path))
    parts = Path(relative).parts

    if not parts or parts[0] == '..' or relative == '.':
        raise ValueError(f"{local_path} is not inside upload root {base_path}")

    return '/'.join((run_timestamp,) + parts)


class ProgressReporter:
    """Logs byte-level transfer progress in 10% steps."""

    STEP_PERCENT = 10
    # Used when the total size is unknown
    STEP_BYTES = 64 * 1024 * 1024

    def __init__(self, label: str, total_bytes: Optional[int] = None):
        self.label = label
        self.total_bytes = total_bytes
        self.transferred = 0
        self._next_mark = self._mark_after(0)

    def _mark_after(self, transferred: int) -> int:
        if self.total_bytes:
            step = max(1, self.total_bytes * self.STEP_PERCENT // 100)
        else:
            step = self.STEP_BYTES
        return (transferred // step + 1) * step

    def update(self, count: int):
        self.transferred += count
        if self.transferred < self._next_mark:
            return

        self._next_mark = self._mark_after(self.transferred)
        if self.total_bytes:
            percent = min(100, self.transferred * 100 // self.total_bytes)
            logger.info(
                f"{self.label}: {percent}% "
                f"({self.transferred / 1024 / 1024:.2f} of {self.total_bytes / 1024 / 1024:.2f} MB)"
            )
        else:
            logger.info(f"{self.label}: {self.transferred / 1024 / 1024:.2f} MB")


class S3ObjectStore:
    """
    Object-store boundary over an S3 (or S3-compatible) bucket.

    put_object streams the body through boto3's managed transfer, which
    switches to a multipart upload once the body exceeds one part.
    """

    def __init__(
        self,
        bucket_name: str,
        region: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        part_size: int = DEFAULT_PART_SIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        client=None
    ):
        """
        Initialize S3 object store.

        Args:
            bucket_name: Target bucket
            region: Bucket region
            access_key: Access key ID (None = default credential chain)
            secret_key: Secret access key
            endpoint_url: Custom endpoint for S3-compatible stores
            part_size: Multipart chunk size in bytes
            max_concurrency: Parallel part uploads per object
            client: Preconfigured boto3 S3 client
        """
        self.bucket_name = bucket_name
        self.region = region
        self.transfer_config = TransferConfig(
            multipart_threshold=part_size,
            multipart_chunksize=part_size,
            max_concurrency=max_concurrency,
        )

        if client is not None:
            self.s3_client = client
            return

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=region or None,
                endpoint_url=endpoint_url or None
            )
        except Exception as e:
            raise BackupError(f"Failed to initialize S3 client: {e}")

    @classmethod
    def from_settings(cls, s3_settings) -> 'S3ObjectStore':
        """Build a store from the [s3] section of the backup settings."""
        return cls(
            bucket_name=s3_settings.bucket,
            region=s3_settings.region,
            access_key=s3_settings.access_key_id,
            secret_key=s3_settings.secret_access_key,
            endpoint_url=s3_settings.endpoint,
            part_size=s3_settings.part_size,
            max_concurrency=s3_settings.max_concurrency
        )

    def put_object(self, key: str, body, size_hint: Optional[int] = None):
        """
        Upload a readable stream under key, overwriting any existing object.

        Args:
            key: Object key
            body: Readable file-like object (need not be seekable)
            size_hint: Expected body size in bytes, used for logging only

        Raises:
            ClientError, BotoCoreError: Propagated from boto3
        """
        logger.debug(f"PUT s3://{self.bucket_name}/{key} (size hint: {size_hint})")
        self.s3_client.upload_fileobj(
            Fileobj=body,
            Bucket=self.bucket_name,
            Key=key,
            Config=self.transfer_config
        )

    def list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        """
        List objects under prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise BackupError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise BackupError(f"S3 list failed: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            BackupError: If the bucket is missing or not accessible
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise BackupError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise BackupError(f"Access denied to bucket: {self.bucket_name}")
            raise BackupError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise BackupError(f"Failed to connect to S3: {e}")


def _describe_store_error(error: BaseException) -> BaseException:
    if isinstance(error, ClientError):
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        return BackupError(f"S3 upload failed ({error_code}): {error}")
    if isinstance(error, BotoCoreError):
        return BackupError(f"S3 upload failed: {error}")
    return error


class StreamingUploader:
    """
    Streams local files to an object store.

    Each file is copied into a BoundedPipe by a feeder thread while the
    object store consumes the other end, so at most one part per transfer
    is held in memory. Directory uploads run on a fixed pool of
    max_concurrency workers fed through a queue of the same capacity.
    """

    def __init__(
        self,
        store,
        max_concurrency: Optional[int] = None,
        part_size: Optional[int] = None,
        run_timestamp: Optional[str] = None
    ):
        """
        Args:
            store: Object store exposing put_object(key, body, size_hint)
            max_concurrency: Worker pool size (None/0 = 10)
            part_size: Pipe capacity and multipart chunk size (None/0 = 5MB)
            run_timestamp: Key prefix of the run (default: now, UTC)
        """
        self.store = store
        self.max_concurrency = max_concurrency if max_concurrency and max_concurrency > 0 else DEFAULT_MAX_CONCURRENCY
        self.part_size = part_size if part_size and part_size > 0 else DEFAULT_PART_SIZE
        self.run_timestamp = run_timestamp or format_run_timestamp()

        self._active_lock = threading.Lock()
        self.active_transfers = 0
        self.peak_transfers = 0

    def for_run(self, run_timestamp: str) -> 'StreamingUploader':
        """Return an uploader sharing this store but keyed under run_timestamp."""
        return StreamingUploader(
            self.store,
            max_concurrency=self.max_concurrency,
            part_size=self.part_size,
            run_timestamp=run_timestamp
        )

    def upload_file(self, ctx: RunContext, local_path: str, base_path: Optional[str] = None) -> str:
        """
        Stream one file to the object store.

        Args:
            ctx: Run context; cancelling it aborts the transfer
            local_path: File to upload
            base_path: Upload root for key derivation (default: the file's directory)

        Returns:
            Object key the file was stored under

        Raises:
            UploadError: If the file cannot be read or the transfer fails
        """
        if base_path is None:
            base_path = os.path.dirname(os.path.abspath(local_path))

        try:
            ctx.check()
            key = derive_object_key(self.run_timestamp, local_path, base_path)
            source = open(local_path, 'rb')
        except (RunCancelled, ValueError, OSError) as e:
            raise UploadError(local_path, e) from e

        pipe = BoundedPipe(self.part_size)
        feed_errors: List[BaseException] = []
        store_error = None
        abort_on_cancel = ctx.on_cancel(lambda: pipe.abort(RunCancelled(ctx.reason or 'cancelled')))

        try:
            size = os.fstat(source.fileno()).st_size
            progress = ProgressReporter(f"Uploading {local_path}", size)
            feeder = threading.Thread(
                target=self._feed,
                args=(ctx, source, pipe, progress, feed_errors),
                name=f"upload-feeder-{os.path.basename(local_path)}",
                daemon=True
            )

            self._begin_transfer()
            try:
                feeder.start()
                try:
                    self.store.put_object(key, pipe, size_hint=size)
                except Exception as e:
                    store_error = e
                finally:
                    pipe.close_reader(store_error)
                    feeder.join()
            finally:
                self._end_transfer()
        finally:
            ctx.remove_callback(abort_on_cancel)
            source.close()

        if not feed_errors and store_error is None:
            logger.info(f"Successfully uploaded {local_path} to {key}")
            return key

        if ctx.cancelled:
            cause = RunCancelled(ctx.reason or 'cancelled')
        elif feed_errors:
            cause = feed_errors[0]
        else:
            cause = _describe_store_error(store_error)

        raise UploadError(local_path, cause) from cause

    def _feed(self, ctx: RunContext, source, pipe: BoundedPipe, progress: ProgressReporter,
              errors: List[BaseException]):
        """Copy source into the pipe, then close the writer end."""
        try:
            while True:
                ctx.check()
                chunk = source.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                pipe.write(chunk)
                progress.update(len(chunk))
        except BrokenPipeError:
            # The consumer gave up; its error is reported by upload_file
            return
        except Exception as e:
            errors.append(e)
            pipe.close_writer(e)
            return

        pipe.close_writer()

    def _begin_transfer(self):
        with self._active_lock:
            self.active_transfers += 1
            self.peak_transfers = max(self.peak_transfers, self.active_transfers)

    def _end_transfer(self):
        with self._active_lock:
            self.active_transfers -= 1

    def upload_directory(self, ctx: RunContext, dir_path: str, base_path: Optional[str] = None) -> List[str]:
        """
        Upload every regular file under dir_path.

        The directory walk feeds a queue of capacity max_concurrency that
        max_concurrency workers drain. The first failure stops the walk and
        prevents new uploads from starting; transfers already in flight are
        allowed to finish.

        Args:
            ctx: Run context; cancelling it aborts in-flight transfers
            dir_path: Directory to upload
            base_path: Upload root for key derivation (default: dir_path)

        Returns:
            Keys of the uploaded objects

        Raises:
            UploadError: The first error encountered
        """
        if not os.path.isdir(dir_path):
            raise UploadError(dir_path, NotADirectoryError(f"Not a directory: {dir_path}"))

        if base_path is None:
            base_path = dir_path

        walk_ctx = ctx.child()
        tasks: queue.Queue = queue.Queue(maxsize=self.max_concurrency)
        done = object()
        errors: List[UploadError] = []
        keys: List[str] = []
        state_lock = threading.Lock()

        def record_error(error: UploadError):
            with state_lock:
                errors.append(error)
            logger.error(f"Directory upload error: {error}")
            walk_ctx.cancel('stopped after upload failure')

        def worker():
            while True:
                path = tasks.get()
                if path is done:
                    return
                if walk_ctx.cancelled:
                    continue
                try:
                    key = self.upload_file(ctx, path, base_path=base_path)
                except UploadError as e:
                    record_error(e)
                    continue
                except Exception as e:
                    record_error(UploadError(path, e))
                    continue
                with state_lock:
                    keys.append(key)

        def walk():
            try:
                for path in self._iter_files(dir_path, record_error):
                    if not self._enqueue(tasks, path, walk_ctx):
                        break
            finally:
                for _ in range(self.max_concurrency):
                    tasks.put(done)

        workers = [
            threading.Thread(target=worker, name=f"upload-worker-{i}", daemon=True)
            for i in range(self.max_concurrency)
        ]
        walker = threading.Thread(target=walk, name="upload-walker", daemon=True)

        try:
            for thread in workers:
                thread.start()
            walker.start()

            walker.join()
            for thread in workers:
                thread.join()
        finally:
            walk_ctx.release()

        if errors:
            raise errors[0]
        if ctx.cancelled:
            raise UploadError(dir_path, RunCancelled(ctx.reason or 'cancelled'))

        logger.info(f"Uploaded {len(keys)} files from {dir_path}")
        return sorted(keys)

    @staticmethod
    def _iter_files(dir_path: str, record_error):
        def on_walk_error(error: OSError):
            record_error(UploadError(error.filename or dir_path, error))

        for root, dirs, files in os.walk(dir_path, onerror=on_walk_error):
            dirs.sort()
            for name in sorted(files):
                path = os.path.join(root, name)
                if os.path.isfile(path) and not os.path.islink(path):
                    yield path

    @staticmethod
    def _enqueue(tasks: queue.Queue, path: str, ctx: RunContext) -> bool:
        """Put path on the queue, blocking while it is full. False if cancelled first."""
        while not ctx.cancelled:
            try:
                tasks.put(path, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

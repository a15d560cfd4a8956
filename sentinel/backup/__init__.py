"""
Backup module for Sentinel.

This module handles the core backup functionality including:
- Artifact producers (MySQL, filesystem, SSH)
- Compression codecs
- Streaming upload to S3-compatible storage
- Execution orchestration
"""

from .context import BackupError, RunCancelled, RunContext
from .executor import BackupExecutor, CleanupError, JobResult, JobState, execute_backup
from .producers import Artifact, Producer, ProducerError, MySQLProducer, FilesystemProducer, SSHProducer
from .compression import Codec, CodecError, create_codec
from .storage import S3ObjectStore, StreamingUploader, UploadError

__all__ = [
    'BackupError',
    'RunCancelled',
    'RunContext',
    'BackupExecutor',
    'CleanupError',
    'JobResult',
    'JobState',
    'execute_backup',
    'Artifact',
    'Producer',
    'ProducerError',
    'MySQLProducer',
    'FilesystemProducer',
    'SSHProducer',
    'Codec',
    'CodecError',
    'create_codec',
    'S3ObjectStore',
    'StreamingUploader',
    'UploadError'
]

"""
Shared pytest fixtures for Sentinel tests.

This module provides fixtures for:
- Backup settings pointing at temporary directories
- Flask app and test client
- Mock fixtures for external services (S3, SSH)
- In-memory object store and scripted producers
- Temporary file fixtures
"""

import time
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from sentinel import create_app
from sentinel.config import (
    BackupSettings,
    CompressionSettings,
    FilesystemSettings,
    S3Settings
)
from sentinel.backup.producers import Producer, ProducerError


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    for variable in ('S3_ENDPOINT', 'S3_REGION', 'S3_BUCKET', 'S3_ACCESS_KEY_ID',
                     'S3_SECRET_ACCESS_KEY', 'DB_HOST', 'DB_PORT', 'DB_USER',
                     'DB_PASSWORD', 'DB_NAME'):
        monkeypatch.delenv(variable, raising=False)


@pytest.fixture
def backup_settings(tmp_path):
    """
    Backup settings with a filesystem source and a per-test workspace root.
    """
    source_dir = tmp_path / 'source'
    source_dir.mkdir()
    (source_dir / 'data.txt').write_text('filesystem data')

    return BackupSettings(
        temp_dir=str(tmp_path / 'work'),
        compression=CompressionSettings(format='zstd', level=3),
        filesystem=FilesystemSettings(enabled=True, base_path=str(source_dir)),
        s3=S3Settings(bucket='test-bucket', region='us-east-1')
    )


@pytest.fixture(scope='function')
def app(backup_settings):
    """Flask app with test configuration and no scheduler."""
    app = create_app('testing', settings=backup_settings)
    app.config.update({'TESTING': True})
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('sentinel.backup.producers.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


class InMemoryStore:
    """
    Thread-safe stand-in for the object store.

    Records concurrent put_object calls and the pipe fill level seen while
    reading bodies.
    """

    def __init__(self, delay: float = 0.0, fail_suffixes=(), read_size: int = 4096):
        self.delay = delay
        self.fail_suffixes = tuple(fail_suffixes)
        self.read_size = read_size
        self.objects = {}
        self.puts = []
        self.active = 0
        self.peak_active = 0
        self.high_water = 0
        self._lock = threading.Lock()

    def put_object(self, key, body, size_hint=None):
        with self._lock:
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)

        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail_suffixes and key.endswith(self.fail_suffixes):
                raise RuntimeError(f"injected failure for {key}")

            data = bytearray()
            while True:
                chunk = body.read(self.read_size)
                if not chunk:
                    break
                data += chunk

            with self._lock:
                self.objects[key] = bytes(data)
                self.puts.append(key)
                self.high_water = max(self.high_water, getattr(body, 'high_water', 0))
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def memory_store():
    """In-memory object store with no delay and no failures."""
    return InMemoryStore()


@pytest.fixture
def store_factory():
    """Build InMemoryStore instances with custom delay or failures."""
    return InMemoryStore


class ScriptedProducer(Producer):
    """
    Producer writing fixed content into the workspace, or failing.
    """

    def __init__(self, name, content=b'', fail_with=None, delay=0.0, as_directory=False):
        self.name = name
        self.content = content
        self.fail_with = fail_with
        self.delay = delay
        self.as_directory = as_directory
        self.calls = 0
        self.produced_path = None

    def produce(self, ctx, workspace):
        self.calls += 1

        # Sleep in slices so cancellation is noticed promptly
        deadline = time.monotonic() + self.delay
        while time.monotonic() < deadline:
            if ctx.wait(0.01):
                break
        ctx.check()

        if self.fail_with is not None:
            raise ProducerError(self.name, self.fail_with)

        if self.as_directory:
            target = Path(workspace) / self.name
            (target / 'nested').mkdir(parents=True)
            (target / 'a.txt').write_bytes(self.content)
            (target / 'nested' / 'b.txt').write_bytes(self.content[::-1])
        else:
            target = Path(workspace) / f"{self.name}.dump"
            target.write_bytes(self.content)

        self.produced_path = str(target)
        return str(target)


@pytest.fixture
def producer_factory():
    """Build ScriptedProducer instances."""
    return ScriptedProducer


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pyc (should be excluded in tests)
    """
    (tmp_path / 'test_file1.txt').write_text('Test content 1')
    (tmp_path / 'test_file2.log').write_text('Test log content')

    nested_dir = tmp_path / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (tmp_path / 'test_file.pyc').write_bytes(b'compiled python')

    return tmp_path

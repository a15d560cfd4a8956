"""
Artifact producers for backup runs.

Each producer wraps one data source and turns it into a single local
artifact inside the job workspace:
- MySQLProducer: mysqldump output (optionally through docker exec)
- FilesystemProducer: tar.gz snapshot of files matching glob patterns
- SSHProducer: files/directories downloaded from a remote host via SFTP

A fresh set of producers is built for every run by create_producers().
"""

import os
import logging
import tarfile
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import List

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .context import BackupError, RunCancelled, RunContext
from .storage import ProgressReporter


logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 64 * 1024


class ProducerError(BackupError):
    """Raised when a producer fails to create its artifact."""

    def __init__(self, source: str, cause: BaseException):
        super().__init__(f"{source} backup failed: {cause}")
        self.source = source
        self.cause = cause


@dataclass(frozen=True)
class Artifact:
    """Local result of one producer, owned by the job until uploaded."""

    source: str
    path: str
    size_bytes: int
    created_at: datetime

    @classmethod
    def from_path(cls, source: str, path: str) -> 'Artifact':
        """
        Describe an existing file or directory.

        Raises:
            FileNotFoundError: If path does not exist
        """
        if not os.path.exists(path):
            raise FileNotFoundError(f"Artifact not found: {path}")

        return cls(
            source=source,
            path=path,
            size_bytes=path_size(path),
            created_at=datetime.now(timezone.utc)
        )


def path_size(path: str) -> int:
    """Size of a file, or the total size of regular files under a directory."""
    if os.path.isfile(path):
        return os.path.getsize(path)

    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            file_path = os.path.join(root, name)
            if os.path.isfile(file_path) and not os.path.islink(file_path):
                total += os.path.getsize(file_path)
    return total


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')


class Producer:
    """
    Interface implemented by every backup source.

    produce() is called once per job. It must abort promptly when ctx is
    cancelled and report failures as ProducerError.
    """

    name = 'producer'

    def produce(self, ctx: RunContext, workspace: str) -> str:
        """
        Create the artifact.

        Args:
            ctx: Run context carrying the cancellation signal
            workspace: Job workspace the artifact must be written into

        Returns:
            Path of the artifact (file or directory)

        Raises:
            ProducerError: If the artifact cannot be produced
        """
        raise NotImplementedError

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.name}>'


class MySQLProducer(Producer):
    """Dumps one MySQL/MariaDB database with mysqldump."""

    name = 'mysql'

    def __init__(self, settings):
        """
        Args:
            settings: MySQLSettings section
        """
        self.settings = settings

    def build_command(self) -> List[str]:
        """Command line for the dump; the password travels in MYSQL_PWD."""
        dump = [
            'mysqldump',
            '--single-transaction',
            '--extended-insert',
            '--create-options',
            '--quick',
            '-h', self.settings.host,
            '-P', str(self.settings.port),
            '-u', self.settings.user,
            self.settings.database,
        ]

        if self.settings.docker_container:
            return ['docker', 'exec', '-i', '-e', 'MYSQL_PWD', self.settings.docker_container] + dump

        return dump

    def produce(self, ctx: RunContext, workspace: str) -> str:
        output_dir = os.path.join(workspace, 'mysql')
        dump_path = os.path.join(output_dir, f"mysql_{_timestamp()}.sql")
        stderr_path = os.path.join(output_dir, 'mysqldump.err')

        try:
            ctx.check()
            os.makedirs(output_dir, exist_ok=True)
        except (RunCancelled, OSError) as e:
            raise ProducerError(self.name, e) from e

        env = dict(os.environ)
        if self.settings.password:
            env['MYSQL_PWD'] = self.settings.password

        with open(stderr_path, 'wb') as stderr_file:
            try:
                process = subprocess.Popen(
                    self.build_command(),
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    env=env
                )
            except OSError as e:
                raise ProducerError(self.name, e) from e

            kill_on_cancel = ctx.on_cancel(process.kill)
            progress = ProgressReporter("mysqldump progress")

            try:
                with open(dump_path, 'wb') as dump_file:
                    while True:
                        chunk = process.stdout.read(COPY_CHUNK_SIZE)
                        if not chunk:
                            break
                        dump_file.write(chunk)
                        progress.update(len(chunk))
            except OSError as e:
                process.kill()
                raise ProducerError(self.name, e) from e
            finally:
                return_code = process.wait()
                process.stdout.close()
                ctx.remove_callback(kill_on_cancel)

        if ctx.cancelled:
            raise ProducerError(self.name, RunCancelled(ctx.reason or 'cancelled'))

        if return_code != 0:
            with open(stderr_path, 'rb') as f:
                detail = f.read()[-2000:].decode('utf-8', errors='replace').strip()
            raise ProducerError(
                self.name,
                RuntimeError(f"mysqldump exited with status {return_code}: {detail}")
            )

        os.remove(stderr_path)
        logger.info(f"MySQL dump written to {dump_path} ({progress.transferred / 1024 / 1024:.2f} MB)")
        return dump_path


class FilesystemProducer(Producer):
    """Packs files under a base path into a gzip compressed tar."""

    name = 'filesystem'

    def __init__(self, settings):
        """
        Args:
            settings: FilesystemSettings section
        """
        self.base_path = settings.base_path
        self.include_patterns = list(settings.include_patterns or [])
        self.exclude_patterns = list(settings.exclude_patterns or [])

    @staticmethod
    def _matches(relative_path: str, patterns: List[str]) -> bool:
        name = relative_path.rsplit('/', 1)[-1]
        for pattern in patterns:
            # Match against full relative path or just the name
            if fnmatch(relative_path, pattern) or fnmatch(name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(name, pattern[3:]):
                return True
        return False

    def _should_exclude(self, relative_path: str) -> bool:
        return bool(self.exclude_patterns) and self._matches(relative_path, self.exclude_patterns)

    def _should_include(self, relative_path: str) -> bool:
        """A file is included if it or any parent directory matches an include pattern."""
        if not self.include_patterns:
            return True

        parts = relative_path.split('/')
        for i in range(len(parts), 0, -1):
            if self._matches('/'.join(parts[:i]), self.include_patterns):
                return True
        return False

    def collect(self, ctx: RunContext) -> List[str]:
        """
        Relative (posix) paths of files to back up, in walk order.

        Raises:
            RunCancelled: If ctx is cancelled during the walk
        """
        selected = []

        for root, dirs, files in os.walk(self.base_path):
            ctx.check()
            relative_root = os.path.relpath(root, self.base_path)
            prefix = '' if relative_root == '.' else Path(relative_root).as_posix() + '/'

            # Prune excluded directories in place
            dirs[:] = sorted(d for d in dirs if not self._should_exclude(prefix + d))

            for name in sorted(files):
                relative_path = prefix + name
                if self._should_exclude(relative_path) or not self._should_include(relative_path):
                    continue
                if os.path.islink(os.path.join(root, name)):
                    continue
                selected.append(relative_path)

        return selected

    def produce(self, ctx: RunContext, workspace: str) -> str:
        if not os.path.isdir(self.base_path):
            raise ProducerError(self.name, FileNotFoundError(f"Base path does not exist: {self.base_path}"))

        archive_path = os.path.join(workspace, f"fs_backup_{_timestamp()}.tar.gz")

        try:
            selected = self.collect(ctx)
            if not selected:
                logger.warning(f"No files under {self.base_path} matched the include patterns")

            with tarfile.open(archive_path, 'w:gz') as tar:
                for relative_path in selected:
                    ctx.check()
                    tar.add(os.path.join(self.base_path, relative_path), arcname=relative_path, recursive=False)
        except (RunCancelled, OSError, tarfile.TarError) as e:
            raise ProducerError(self.name, e) from e

        logger.info(f"Filesystem snapshot of {len(selected)} files written to {archive_path}")
        return archive_path


class SSHProducer(Producer):
    """
    Downloads files/directories from a remote system via SSH/SFTP.

    The artifact is a directory <workspace>/ssh/<host> holding one entry per
    configured remote path.
    """

    name = 'ssh'

    def __init__(self, settings):
        """
        Args:
            settings: SSHSettings section
        """
        self.host = settings.host
        self.port = settings.port or 22
        self.username = settings.username
        self.password = settings.password
        self.private_key_path = settings.private_key
        self.paths = list(settings.paths or [])

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            ProducerError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': 30
            }

            # Use password or private key
            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise FileNotFoundError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise ValueError("Either password or private_key must be provided")

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except paramiko.AuthenticationException as e:
            raise ProducerError(self.name, Exception(f"SSH authentication failed: {e}")) from e
        except paramiko.SSHException as e:
            raise ProducerError(self.name, Exception(f"SSH connection failed: {e}")) from e
        except (OSError, ValueError) as e:
            raise ProducerError(self.name, Exception(f"Failed to connect to {self.host}: {e}")) from e

    def _download_file(self, ctx: RunContext, remote_path: str, local_path: str):
        ctx.check()
        self.sftp_client.get(remote_path, local_path)

    def _download_directory(self, ctx: RunContext, remote_path: str, local_path: str):
        """Recursively download a directory via SFTP."""
        Path(local_path).mkdir(parents=True, exist_ok=True)

        for item in sorted(self.sftp_client.listdir_attr(remote_path), key=lambda i: i.filename):
            remote_item = f"{remote_path}/{item.filename}".replace('//', '/')
            local_item = os.path.join(local_path, item.filename)

            if item.st_mode & 0o040000:  # Directory
                self._download_directory(ctx, remote_item, local_item)
            else:
                self._download_file(ctx, remote_item, local_item)

    def produce(self, ctx: RunContext, workspace: str) -> str:
        target_dir = os.path.join(workspace, 'ssh', self.host)

        try:
            ctx.check()
            os.makedirs(target_dir, exist_ok=True)
        except (RunCancelled, OSError) as e:
            raise ProducerError(self.name, e) from e

        self._connect()
        close_on_cancel = ctx.on_cancel(self._interrupt)

        try:
            for remote_path in self.paths:
                basename = os.path.basename(remote_path.rstrip('/')) or 'root'
                local_path = os.path.join(target_dir, basename)

                try:
                    stat = self.sftp_client.stat(remote_path)
                    if stat.st_mode & 0o040000:  # Directory
                        self._download_directory(ctx, remote_path, local_path)
                    else:
                        self._download_file(ctx, remote_path, local_path)
                except RunCancelled:
                    raise
                except FileNotFoundError as e:
                    raise ProducerError(self.name, Exception(f"Remote path not found: {remote_path}")) from e
                except (OSError, EOFError, paramiko.SSHException) as e:
                    if ctx.cancelled:
                        raise RunCancelled(ctx.reason or 'cancelled') from e
                    raise ProducerError(self.name, Exception(f"Failed to acquire {remote_path}: {e}")) from e

                logger.info(f"Downloaded {self.host}:{remote_path}")
        except RunCancelled as e:
            raise ProducerError(self.name, e) from e
        finally:
            ctx.remove_callback(close_on_cancel)
            self.cleanup()

        return target_dir

    def _interrupt(self):
        """Close the transport so a blocked SFTP call fails promptly."""
        client = self.ssh_client
        if client is not None:
            try:
                client.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug(f"Error interrupting SSH transfer: {e}")

    def cleanup(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug(f"Error closing SFTP client: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug(f"Error closing SSH client: {e}")
            self.ssh_client = None


def create_producers(settings) -> List[Producer]:
    """
    Factory function building a fresh producer for every enabled source.

    Args:
        settings: BackupSettings

    Returns:
        Producers in a fixed order (mysql, filesystem, ssh)
    """
    producers: List[Producer] = []

    if settings.mysql.enabled:
        producers.append(MySQLProducer(settings.mysql))
    if settings.filesystem.enabled:
        producers.append(FilesystemProducer(settings.filesystem))
    if settings.ssh.enabled:
        producers.append(SSHProducer(settings.ssh))

    return producers


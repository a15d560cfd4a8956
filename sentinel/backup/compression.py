"""
Codecs for backup archives.

Every codec streams its inputs into a single tar container wrapped in one
compressed stream, without holding a whole input in memory.

Supports multiple formats:
- zstd: Zstandard compressed tar (default)
- gzip: Gzip compressed tar
- zlib: Zlib compressed tar
- bz2: Bzip2 compressed tar
- xz: LZMA compressed tar
- tar: No compression (tar only)
- none: No archive; artifacts are uploaded one by one
"""

import os
import bz2
import gzip
import lzma
import zlib
import logging
import tarfile
import contextlib
from typing import List, Optional, Sequence

import zstandard

from .context import BackupError


logger = logging.getLogger(__name__)

ARCHIVE_BASENAME = 'backup'


class CodecError(BackupError):
    """Raised when archive creation fails."""

    def __init__(self, cause: BaseException):
        super().__init__(f"Failed to create archive: {cause}")
        self.cause = cause


class _ZlibWriter:
    """Minimal writable stream producing a zlib container."""

    def __init__(self, fileobj, level: int):
        self._fileobj = fileobj
        self._compressor = zlib.compressobj(level)

    def write(self, data) -> int:
        self._fileobj.write(self._compressor.compress(data))
        return len(data)

    def close(self):
        if self._compressor is not None:
            self._fileobj.write(self._compressor.flush())
            self._compressor = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class Codec:
    """
    Streaming compressor producing one archive from many inputs.

    Subclasses define the stream wrapper, the file extension and the valid
    level range.
    """

    name = 'tar'
    extension = '.tar'
    min_level = 0
    max_level = 0
    default_level = 0

    def file_extension(self) -> str:
        """Extension used to name the archive, e.g. '.tar.zst'."""
        return self.extension

    def resolve_level(self, level: Optional[int]) -> int:
        """
        Map a configured level to an effective one.

        Zero or None selects the codec's default.

        Raises:
            ValueError: If level is outside the codec's range
        """
        if not level or not self.max_level:
            return self.default_level
        if not self.min_level <= level <= self.max_level:
            raise ValueError(
                f"Compression level {level} out of range for {self.name} "
                f"({self.min_level}-{self.max_level})"
            )
        return level

    def open_stream(self, fileobj, level: int):
        """Wrap fileobj in a writable compressing stream (context manager)."""
        return contextlib.nullcontext(fileobj)

    def compress(self, input_paths: Sequence[str], level: Optional[int], output_dir: str,
                 basename: str = ARCHIVE_BASENAME) -> str:
        """
        Compress inputs, in the order given, into one archive.

        Args:
            input_paths: Files or directories to include
            level: Compression level (0/None = codec default)
            output_dir: Directory the archive is written to
            basename: Archive name without extension

        Returns:
            Path of the created archive

        Raises:
            CodecError: If any input cannot be read or the archive cannot be written
        """
        if not input_paths:
            raise CodecError(ValueError("No input paths provided"))

        archive_path = os.path.join(output_dir, archive_filename(self, basename))

        try:
            effective_level = self.resolve_level(level)
            with open(archive_path, 'wb') as raw:
                with self.open_stream(raw, effective_level) as stream:
                    with tarfile.open(fileobj=stream, mode='w|', format=tarfile.PAX_FORMAT) as tar:
                        for input_path in input_paths:
                            if not os.path.exists(input_path):
                                raise FileNotFoundError(f"Path does not exist: {input_path}")
                            tar.add(
                                input_path,
                                arcname=os.path.basename(os.path.normpath(input_path)),
                                recursive=True,
                                filter=_normalize_member
                            )
        except Exception as e:
            # Clean up partial archive on failure
            if os.path.exists(archive_path):
                try:
                    os.remove(archive_path)
                except OSError as remove_error:
                    logger.warning(f"Failed to remove partial archive {archive_path}: {remove_error}")
            raise CodecError(e) from e

        logger.info(f"Created {self.name} archive {archive_path} from {len(input_paths)} inputs")
        return archive_path


def archive_filename(codec: Codec, basename: str = ARCHIVE_BASENAME) -> str:
    """Name of the archive a codec writes, e.g. 'backup.tar.zst'."""
    return f"{basename}{codec.file_extension()}"


def _normalize_member(member: tarfile.TarInfo) -> tarfile.TarInfo:
    """Strip owner and time metadata so equal inputs give equal archives."""
    member.uid = member.gid = 0
    member.uname = member.gname = ''
    member.mtime = 0
    member.pax_headers = {}
    return member


class GzipCodec(Codec):
    name = 'gzip'
    extension = '.tar.gz'
    min_level = 1
    max_level = 9
    default_level = 6

    def open_stream(self, fileobj, level: int):
        # mtime=0 keeps the gzip header independent of the wall clock
        return gzip.GzipFile(fileobj=fileobj, mode='wb', compresslevel=level, mtime=0)


class ZlibCodec(Codec):
    name = 'zlib'
    extension = '.tar.zlib'
    min_level = 1
    max_level = 9
    default_level = 6

    def open_stream(self, fileobj, level: int):
        return _ZlibWriter(fileobj, level)


class Bzip2Codec(Codec):
    name = 'bz2'
    extension = '.tar.bz2'
    min_level = 1
    max_level = 9
    default_level = 9

    def open_stream(self, fileobj, level: int):
        return bz2.BZ2File(fileobj, mode='wb', compresslevel=level)


class XzCodec(Codec):
    name = 'xz'
    extension = '.tar.xz'
    min_level = 1
    max_level = 9
    default_level = 6

    def open_stream(self, fileobj, level: int):
        return lzma.LZMAFile(fileobj, mode='wb', preset=level)


class ZstdCodec(Codec):
    name = 'zstd'
    extension = '.tar.zst'
    min_level = 1
    max_level = 22
    default_level = 3

    def open_stream(self, fileobj, level: int):
        compressor = zstandard.ZstdCompressor(level=level)
        return compressor.stream_writer(fileobj, closefd=False)


CODECS = {
    'tar': Codec,
    'gzip': GzipCodec,
    'zlib': ZlibCodec,
    'bz2': Bzip2Codec,
    'xz': XzCodec,
    'zstd': ZstdCodec,
}

# Formats that skip archiving and upload each artifact on its own
UNCOMPRESSED_FORMATS = ('none',)

FORMAT_ALIASES = {
    'tar.gz': 'gzip',
    'gz': 'gzip',
    'tar.bz2': 'bz2',
    'tar.xz': 'xz',
    'zst': 'zstd',
}


def supported_formats() -> List[str]:
    return sorted(CODECS) + list(UNCOMPRESSED_FORMATS)


def create_codec(compression_format: str) -> Optional[Codec]:
    """
    Factory function returning the codec for a configured format.

    Args:
        compression_format: Format name or alias (e.g. 'zstd', 'tar.gz', 'none')

    Returns:
        Codec instance, or None when the format means "no archive"

    Raises:
        ValueError: If the format is not supported
    """
    name = (compression_format or '').strip().lower()
    name = FORMAT_ALIASES.get(name, name)

    if name in UNCOMPRESSED_FORMATS:
        return None

    if name not in CODECS:
        raise ValueError(
            f"Unsupported compression format: {compression_format}. "
            f"Valid options: {supported_formats()}"
        )

    return CODECS[name]()

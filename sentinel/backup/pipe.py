"""
Bounded in-memory byte pipe.

Couples a writer thread and a reader thread through a buffer of fixed
capacity: writes block while the buffer is full and reads block while it is
empty, so a slow reader throttles a fast writer and memory stays at
O(capacity) no matter how many bytes flow through.
"""

import threading
from typing import Optional


class BoundedPipe:
    """
    File-like pipe with a writer end and a reader end.

    The reader end implements the subset of the binary file protocol that
    boto3's managed transfers need for non-seekable bodies.
    """

    def __init__(self, capacity: int):
        """
        Args:
            capacity: Maximum number of bytes buffered between the two ends
        """
        if capacity <= 0:
            raise ValueError(f"Pipe capacity must be positive, got {capacity}")

        self.capacity = capacity
        self.high_water = 0
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._writer_closed = False
        self._writer_error: Optional[BaseException] = None
        self._reader_closed = False
        self._reader_error: Optional[BaseException] = None

    # Writer end

    def write(self, data) -> int:
        """
        Write all of data, blocking while the buffer is full.

        Raises:
            BrokenPipeError: If the reader end was closed
            ValueError: If the writer end was already closed
        """
        view = memoryview(data).cast('B')
        written = 0

        with self._cond:
            while written < len(view):
                while len(self._buffer) >= self.capacity and not self._reader_closed:
                    self._cond.wait()

                if self._reader_closed:
                    raise BrokenPipeError("Pipe reader closed") from self._reader_error
                if self._writer_closed:
                    raise ValueError("Write to closed pipe")

                count = min(self.capacity - len(self._buffer), len(view) - written)
                self._buffer += view[written:written + count]
                written += count
                self.high_water = max(self.high_water, len(self._buffer))
                self._cond.notify_all()

        return written

    def close_writer(self, error: Optional[BaseException] = None):
        """
        Signal end of stream. If error is given, the reader raises it
        once the buffered bytes are consumed.
        """
        with self._cond:
            if self._writer_closed:
                return
            self._writer_closed = True
            self._writer_error = error
            self._cond.notify_all()

    # Reader end

    def read(self, size: int = -1) -> bytes:
        """
        Read up to size bytes, blocking until that many are available or the
        writer closes. A negative size reads until end of stream.
        """
        chunks = bytearray()

        with self._cond:
            while size < 0 or len(chunks) < size:
                while not self._buffer and not self._writer_closed and not self._reader_closed:
                    self._cond.wait()

                if self._reader_closed:
                    if self._reader_error is not None:
                        raise self._reader_error
                    raise ValueError("Read from closed pipe")

                if not self._buffer:
                    if self._writer_error is not None:
                        raise self._writer_error
                    break

                wanted = len(self._buffer) if size < 0 else size - len(chunks)
                taken = self._buffer[:wanted]
                del self._buffer[:wanted]
                chunks += taken
                self._cond.notify_all()

        return bytes(chunks)

    def close_reader(self, error: Optional[BaseException] = None):
        """Stop reading. Pending and future writes raise BrokenPipeError."""
        with self._cond:
            if self._reader_closed:
                return
            self._reader_closed = True
            self._reader_error = error
            self._buffer.clear()
            self._cond.notify_all()

    def abort(self, error: BaseException):
        """Fail both ends: the reader raises error, the writer gets BrokenPipeError."""
        with self._cond:
            if not self._writer_closed:
                self._writer_closed = True
                self._writer_error = error
            self._buffer.clear()
            self._cond.notify_all()
        self.close_reader(error)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def writable(self) -> bool:
        return False

    def close(self):
        self.close_reader()

    @property
    def closed(self) -> bool:
        return self._reader_closed

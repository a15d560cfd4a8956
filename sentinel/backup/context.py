"""
Cancellation signal shared by every phase of a backup run.

A RunContext is created once per job and threaded through producers, the
codec and the uploader. Cancelling it (explicitly, or when its deadline
passes) fires the registered callbacks so blocked work can be interrupted
instead of polled.
"""

import logging
import threading
from typing import Callable, List, Optional


logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Base class for errors raised by the backup pipeline."""
    pass


class RunCancelled(BackupError):
    """Raised when work is abandoned because the run was cancelled."""

    def __init__(self, reason: str = 'cancelled'):
        super().__init__(f"Backup run {reason}")
        self.reason = reason


class RunContext:
    """
    Cancellation signal with an optional deadline.

    Child contexts are cancelled together with their parent, but cancelling
    a child leaves the parent untouched.
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional['RunContext'] = None):
        """
        Args:
            timeout: Seconds until the context cancels itself (None = no deadline)
            parent: Context whose cancellation propagates to this one
        """
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._timer = None
        self._parent = parent
        self._parent_hook = None
        self.reason: Optional[str] = None

        if parent is not None:
            self._parent_hook = lambda: self.cancel(parent.reason or 'cancelled')
            parent.on_cancel(self._parent_hook)

        if timeout is not None:
            self._timer = threading.Timer(timeout, self.cancel, args=('deadline exceeded',))
            self._timer.daemon = True
            self._timer.start()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = 'cancelled'):
        """Cancel the context and run every registered callback once."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        if self._timer is not None:
            self._timer.cancel()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def check(self):
        """Raise RunCancelled if the context has been cancelled."""
        if self._event.is_set():
            raise RunCancelled(self.reason or 'cancelled')

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or until timeout elapses. Returns True if cancelled."""
        return self._event.wait(timeout)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback fired on cancellation.

        If the context is already cancelled the callback runs immediately.

        Returns:
            The callback, for use with remove_callback()
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return callback
        callback()
        return callback

    def remove_callback(self, callback: Callable[[], None]):
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def child(self) -> 'RunContext':
        """Create a context that is cancelled whenever this one is."""
        return RunContext(parent=self)

    def release(self):
        """Stop the deadline timer and detach from the parent context."""
        if self._timer is not None:
            self._timer.cancel()
        if self._parent is not None and self._parent_hook is not None:
            self._parent.remove_callback(self._parent_hook)
            self._parent_hook = None

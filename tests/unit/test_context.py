"""
Unit tests for the run context (sentinel/backup/context.py).

Tests cancellation, callbacks, deadlines and parent/child propagation.
"""

import time
import threading

import pytest

from sentinel.backup.context import BackupError, RunCancelled, RunContext


class TestRunContext:
    """Test RunContext cancellation signal."""

    def test_new_context_is_not_cancelled(self):
        """Test a fresh context passes check()."""
        ctx = RunContext()

        assert not ctx.cancelled
        assert ctx.reason is None
        ctx.check()

    def test_cancel_sets_reason_and_check_raises(self):
        """Test check() raises RunCancelled after cancel()."""
        ctx = RunContext()
        ctx.cancel('operator request')

        assert ctx.cancelled
        with pytest.raises(RunCancelled) as exc_info:
            ctx.check()

        assert exc_info.value.reason == 'operator request'
        assert 'operator request' in str(exc_info.value)
        assert isinstance(exc_info.value, BackupError)

    def test_cancel_twice_keeps_first_reason(self):
        """Test a second cancel() is ignored."""
        ctx = RunContext()
        ctx.cancel('first')
        ctx.cancel('second')

        assert ctx.reason == 'first'

    def test_callbacks_fire_once(self):
        """Test registered callbacks run exactly once on cancellation."""
        ctx = RunContext()
        calls = []
        ctx.on_cancel(lambda: calls.append('a'))
        ctx.on_cancel(lambda: calls.append('b'))

        ctx.cancel()
        ctx.cancel()

        assert calls == ['a', 'b']

    def test_callback_registered_after_cancel_runs_immediately(self):
        """Test on_cancel() on a cancelled context invokes the callback."""
        ctx = RunContext()
        ctx.cancel()
        calls = []

        ctx.on_cancel(lambda: calls.append(True))

        assert calls == [True]

    def test_removed_callback_does_not_fire(self):
        """Test remove_callback() unregisters the callback."""
        ctx = RunContext()
        calls = []
        callback = ctx.on_cancel(lambda: calls.append(True))

        ctx.remove_callback(callback)
        ctx.remove_callback(callback)
        ctx.cancel()

        assert calls == []

    def test_failing_callback_does_not_stop_others(self):
        """Test an exception in one callback does not skip the rest."""
        ctx = RunContext()
        calls = []

        def broken():
            raise RuntimeError("boom")

        ctx.on_cancel(broken)
        ctx.on_cancel(lambda: calls.append(True))
        ctx.cancel()

        assert calls == [True]

    def test_deadline_cancels_context(self):
        """Test a timeout cancels the context with 'deadline exceeded'."""
        ctx = RunContext(timeout=0.05)

        assert ctx.wait(2)
        assert ctx.reason == 'deadline exceeded'

    def test_release_stops_deadline(self):
        """Test release() disarms the deadline timer."""
        ctx = RunContext(timeout=0.1)
        ctx.release()

        assert not ctx.wait(0.3)

    def test_wait_wakes_on_cancel_from_other_thread(self):
        """Test wait() returns as soon as another thread cancels."""
        ctx = RunContext()
        timer = threading.Timer(0.05, ctx.cancel)
        timer.start()

        started = time.monotonic()
        assert ctx.wait(5)
        assert time.monotonic() - started < 2


class TestChildContext:
    """Test parent/child cancellation propagation."""

    def test_parent_cancellation_reaches_child(self):
        """Test cancelling the parent cancels the child with the same reason."""
        parent = RunContext()
        child = parent.child()

        parent.cancel('shutdown')

        assert child.cancelled
        assert child.reason == 'shutdown'

    def test_child_cancellation_does_not_reach_parent(self):
        """Test cancelling a child leaves the parent running."""
        parent = RunContext()
        child = parent.child()

        child.cancel('stop walk')

        assert child.cancelled
        assert not parent.cancelled

    def test_child_of_cancelled_parent_starts_cancelled(self):
        """Test a child created after cancellation is already cancelled."""
        parent = RunContext()
        parent.cancel('late')

        assert parent.child().cancelled

    def test_released_child_is_detached(self):
        """Test release() stops parent propagation."""
        parent = RunContext()
        child = parent.child()
        child.release()

        parent.cancel()

        assert not child.cancelled

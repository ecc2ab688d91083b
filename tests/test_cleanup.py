"""Tests for resource cleanup and signal handling."""

import os
import signal

import pytest

from rawdisk_encryptor.storage.cleanup import ResourceScope, interrupt_guard
from rawdisk_encryptor.storage.exceptions import BuildInterrupted


class TestResourceScope:
    def test_releases_in_reverse_order(self):
        order = []
        with ResourceScope() as scope:
            scope.register("source loop", lambda: order.append("source"))
            scope.register("target loop", lambda: order.append("target"))
            scope.register("mapping", lambda: order.append("mapping"))

        assert order == ["mapping", "target", "source"]

    def test_releases_on_error(self):
        order = []
        with pytest.raises(ValueError):
            with ResourceScope() as scope:
                scope.register("loop", lambda: order.append("loop"))
                raise ValueError("copy failed")

        assert order == ["loop"]

    def test_failing_release_does_not_mask_error_or_stop_others(self):
        order = []

        def broken():
            raise RuntimeError("detach failed")

        with pytest.raises(ValueError, match="original"):
            with ResourceScope() as scope:
                scope.register("first", lambda: order.append("first"))
                scope.register("broken", broken)
                raise ValueError("original")

        assert order == ["first"]

    def test_release_runs_at_most_once(self):
        calls = []
        scope = ResourceScope()
        release = scope.register("mapping", lambda: calls.append(1))

        scope.release(release)
        scope.close()
        scope.close()

        assert calls == [1]
        assert scope.pending == []

    def test_pending(self):
        scope = ResourceScope()
        scope.register("a", lambda: None)
        done = scope.register("b", lambda: None)
        scope.release(done)

        assert scope.pending == ["a"]


class TestInterruptGuard:
    def test_signal_becomes_build_interrupted(self):
        with pytest.raises(BuildInterrupted) as excinfo:
            with interrupt_guard():
                os.kill(os.getpid(), signal.SIGTERM)

        assert excinfo.value.signal_name == "SIGTERM"

    def test_scope_unwinds_on_signal(self):
        released = []
        with pytest.raises(BuildInterrupted):
            with interrupt_guard(), ResourceScope() as scope:
                scope.register("mapping", lambda: released.append("mapping"))
                os.kill(os.getpid(), signal.SIGINT)

        assert released == ["mapping"]

    def test_restores_previous_handlers(self):
        before = signal.getsignal(signal.SIGTERM)
        with interrupt_guard():
            assert signal.getsignal(signal.SIGTERM) is not before
        assert signal.getsignal(signal.SIGTERM) is before

"""Guaranteed release of host resources on every exit path.

A build acquires host-global resources one after another (source loop
device, target loop device, dm-crypt mapping, mount points). Each
acquisition registers its release with a ``ResourceScope``; leaving the scope
releases everything still held, newest first, whether the block finished,
raised, or was interrupted by a signal (see ``interrupt_guard``).

Releases never raise: a failing release is logged and the next one still
runs, so cleanup cannot mask the error that caused the unwind. Partial image
files are deliberately left on disk for postmortem debugging.

Example:
    with interrupt_guard(), ResourceScope() as scope:
        loop = attach(image, partscan=True)
        scope.register(f"detach {loop}", lambda: detach(loop))
        ...
"""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterator, Optional, Sequence

from rawdisk_encryptor.logging import LoggerFactory

from .exceptions import BuildInterrupted

if TYPE_CHECKING:
    from loguru import Logger


@dataclass
class Release:
    """A registered release callback; runs at most once."""

    name: str
    callback: Callable[[], object]
    done: bool = False


class ResourceScope:
    """LIFO registry of release callbacks, safe to close more than once."""

    def __init__(self, log: Optional[Logger] = None):
        self.log = log or LoggerFactory.for_system()
        self._releases: list[Release] = []

    def __enter__(self) -> ResourceScope:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def register(self, name: str, callback: Callable[[], object]) -> Release:
        release = Release(name, callback)
        self._releases.append(release)
        self.log.debug(f"Registered cleanup: {name}")
        return release

    @property
    def pending(self) -> list[str]:
        return [release.name for release in self._releases if not release.done]

    def release(self, release: Release) -> None:
        """Run one release now instead of at scope exit."""
        if release.done:
            return
        release.done = True
        try:
            release.callback()
        except Exception as error:
            self.log.error(f"Cleanup step '{release.name}' failed: {error}")

    def close(self) -> None:
        pending = [release for release in reversed(self._releases) if not release.done]
        if pending:
            self.log.info("Cleaning up...")
        for release in pending:
            self.log.debug(f"Cleanup: {release.name}")
            self.release(release)
        self._releases.clear()


@contextmanager
def interrupt_guard(
    signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
) -> Iterator[None]:
    """Turn termination signals into BuildInterrupted for the duration.

    Raising from the handler lets enclosing ``with`` blocks unwind normally,
    so every ResourceScope releases its resources. Outside the main thread
    signal handlers cannot be installed and the guard is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, _frame):
        raise BuildInterrupted(signal.Signals(signum).name)

    previous = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

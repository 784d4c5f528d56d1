"""Cross-process write lock for a ``.todos/`` directory.

Every mutation takes an exclusive ``flock`` on ``.todos/lock`` so that
writers from different processes on the same machine are serialized. The
lock file carries a holder line (``pid:<n> since:<ts>``) for diagnostics and
for stale-holder takeover. The OS lock is the source of truth; the takeover
path only helps when a dead process left an inherited descriptor behind.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import threading
import time
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from tdcore.errors import LockTimeoutError

logger = logging.getLogger(__name__)

LOCK_FILENAME = "lock"
DEFAULT_LOCK_TIMEOUT = 0.5  # seconds
_INITIAL_BACKOFF = 0.005
_MAX_BACKOFF = 0.010


def process_alive(pid: int) -> bool:
    """Report whether *pid* names a running process.

    A process owned by another user still counts as alive (EPERM).
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def parse_holder_pid(holder: str) -> int | None:
    """Extract the pid from a ``pid:<n> since:<ts>`` holder line."""
    for token in holder.split():
        if token.startswith("pid:"):
            try:
                return int(token[4:])
            except ValueError:
                return None
    return None


class WriteLock:
    """Re-entrant (per thread) exclusive lock over ``<todos_dir>/lock``.

    Threads of one process exclude each other through ``_mutex``; processes
    exclude each other through ``flock`` on a descriptor opened per
    acquisition.
    """

    def __init__(self, todos_dir: str | Path) -> None:
        self.path = Path(todos_dir) / LOCK_FILENAME
        self._mutex = threading.Lock()
        self._owner: int | None = None
        self._depth = 0
        self._fd: int | None = None

    # -- public API ----------------------------------------------------------

    @property
    def is_held(self) -> bool:
        """True when the calling thread currently holds the lock."""
        return self._owner == threading.get_ident() and self._depth > 0

    def acquire(self, timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        """Block up to *timeout* seconds for exclusive write access.

        Raises LockTimeoutError naming the current holder when the window
        elapses.
        """
        me = threading.get_ident()
        if self._owner == me:
            self._depth += 1
            return

        start = time.monotonic()
        deadline = start + timeout
        if not self._mutex.acquire(timeout=max(timeout, 0.0)):
            raise self._timeout_error(timeout)
        try:
            self._fd = self._acquire_file(deadline, timeout)
        except BaseException:
            self._mutex.release()
            raise
        self._owner = me
        self._depth = 1
        logger.debug("write lock acquired in %.1fms", (time.monotonic() - start) * 1000)

    def release(self) -> None:
        """Drop one level of ownership; the outermost release unlocks the file.

        Errors while unlocking are logged, never raised.
        """
        if self._owner != threading.get_ident() or self._depth == 0:
            return
        self._depth -= 1
        if self._depth > 0:
            return
        fd = self._fd
        self._fd = None
        self._owner = None
        try:
            if fd is not None:
                try:
                    os.ftruncate(fd, 0)
                    fcntl.flock(fd, fcntl.LOCK_UN)
                except OSError as exc:
                    logger.warning("Failed to release write lock %s: %s", self.path, exc)
                finally:
                    with contextlib.suppress(OSError):
                        os.close(fd)
        finally:
            self._mutex.release()

    @contextlib.contextmanager
    def held(self, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Iterator[None]:
        self.acquire(timeout)
        try:
            yield
        finally:
            self.release()

    def holder(self) -> str:
        """Return the holder line currently written in the lock file, or ``""``."""
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    # -- internals -----------------------------------------------------------

    def _acquire_file(self, deadline: float, timeout: float) -> int:
        backoff = _INITIAL_BACKOFF
        while True:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                os.close(fd)
            else:
                if self._same_file(fd):
                    self._write_holder(fd)
                    return fd
                # The path was unlinked between open and flock; retry on the new file.
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
                continue

            if self._try_steal():
                continue

            now = time.monotonic()
            if now >= deadline:
                raise self._timeout_error(timeout)
            time.sleep(min(backoff, deadline - now))
            backoff = min(backoff * 2, _MAX_BACKOFF)

    def _same_file(self, fd: int) -> bool:
        try:
            on_disk = os.stat(self.path)
        except FileNotFoundError:
            return False
        held = os.fstat(fd)
        return (on_disk.st_dev, on_disk.st_ino) == (held.st_dev, held.st_ino)

    def _write_holder(self, fd: int) -> None:
        since = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        line = f"pid:{os.getpid()} since:{since}\n"
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, line.encode("utf-8"))

    def _try_steal(self) -> bool:
        """Unlink the lock file when its recorded holder is dead."""
        pid = parse_holder_pid(self.holder())
        if pid is None or process_alive(pid):
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.warning("Could not remove stale write lock %s: %s", self.path, exc)
            return False
        logger.info("Removed stale write lock held by dead pid %d", pid)
        return True

    def _timeout_error(self, timeout: float) -> LockTimeoutError:
        holder = self.holder() or "unknown"
        msg = f"write lock timeout after {int(timeout * 1000)}ms (holder: {holder})"
        return LockTimeoutError(msg, holder=holder)

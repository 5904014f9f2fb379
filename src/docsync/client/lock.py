"""Single-instance lock for the agent.

This module provides:
- InstanceLock: OS-level advisory lock on a sentinel file

The lock is held through an open file handle. The operating system drops
it when the handle is closed, which includes the owning process dying for
any reason, so a stale lock never outlives its process.
"""

from __future__ import annotations

import contextlib
import logging
import os
import sys
from pathlib import Path
from typing import IO

from docsync.core.errors import AlreadyRunning, IoFailure

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)


def _try_lock(handle: IO[str]) -> bool:
    """Try to take an exclusive, non-blocking lock. Returns False on contention."""
    try:
        if sys.platform == "win32":
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    except OSError as e:
        # msvcrt reports contention as EACCES/EDEADLK wrapped in OSError
        if sys.platform == "win32":
            return False
        raise IoFailure(handle.name, f"cannot lock: {e}") from e
    return True


def _unlock(handle: IO[str]) -> None:
    if sys.platform == "win32":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _read_pid(lock_path: Path) -> int | None:
    try:
        return int(lock_path.read_text().strip() or 0) or None
    except (OSError, ValueError):
        return None


class InstanceLock:
    """Exclusive lock guaranteeing a single agent per state directory.

    Usage:
        with InstanceLock.acquire(config.lock_path):
            run_agent()
    """

    def __init__(self, lock_path: Path, handle: IO[str]) -> None:
        self._lock_path = lock_path
        self._handle: IO[str] | None = handle

    @classmethod
    def acquire(cls, lock_path: Path) -> InstanceLock:
        """Acquire the lock without waiting.

        Args:
            lock_path: Sentinel file; created if missing, never deleted.

        Returns:
            The held lock.

        Raises:
            AlreadyRunning: If another handle holds the lock.
            IoFailure: If the lock file cannot be opened.
        """
        lock_path = Path(lock_path)
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            # "a+" so that a failed attempt never truncates the owner's PID
            handle = open(lock_path, "a+", encoding="utf-8")
        except OSError as e:
            raise IoFailure(lock_path, f"cannot open lock file: {e}") from e

        try:
            locked = _try_lock(handle)
        except BaseException:
            handle.close()
            raise
        if not locked:
            handle.close()
            raise AlreadyRunning(lock_path, _read_pid(lock_path))

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        logger.debug("Acquired instance lock %s", lock_path)
        return cls(lock_path, handle)

    @property
    def path(self) -> Path:
        return self._lock_path

    @property
    def is_held(self) -> bool:
        return self._handle is not None

    def release(self) -> None:
        """Release the lock. Safe to call more than once."""
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            with contextlib.suppress(OSError):
                _unlock(handle)
        finally:
            handle.close()
        logger.debug("Released instance lock %s", self._lock_path)

    def __enter__(self) -> InstanceLock:
        return self

    def __exit__(self, *args: object) -> None:
        self.release()

    def __del__(self) -> None:
        self.release()

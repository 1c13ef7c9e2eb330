"""Lock strategies for serializing access to a user's authorized_keys.d.

The lock is a coarse-grained mutex held for the whole open()-close() window
of a store. It is implemented as an exclusive advisory lock on a marker file
in the user's home directory. The marker is created on first use and never
deleted; its content is never read.

Supported strategies:
- FcntlLockStrategy: POSIX flock() based locking (Unix/Linux/macOS)
- FileLockStrategy: Cross-platform locking via the filelock library

Both release the lock when the descriptor is closed, which the operating
system also does when the holding process dies. No stale-lock recovery is
needed.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from authorized.keysdir.base import LockAcquisitionError, LockTimeout
from authorized.keysdir.identity import IdentityContext, ProcessIdentity

logger = logging.getLogger(__name__)

LOCK_FILE_MODE = 0o600

# Polling interval used when a bounded wait is requested.
_POLL_INTERVAL = 0.01


@dataclass(frozen=True)
class LockHandle:
    """Handle representing an acquired lock.

    This is an opaque handle that must be passed to release the lock.

    Attributes:
        path: Path to the lock file.
        fd: File descriptor (if applicable).
        timestamp: When the lock was acquired.
        thread_id: ID of the thread that acquired the lock.
        process_id: ID of the process that acquired the lock.
    """

    path: Path
    fd: int | None = None
    timestamp: float = field(default_factory=time.time)
    thread_id: int = field(default_factory=threading.get_ident)
    process_id: int = field(default_factory=os.getpid)

    def __str__(self) -> str:
        return f"LockHandle({self.path}, pid={self.process_id})"


class LockStrategy(ABC):
    """Exclusive, blocking, process-wide advisory lock on a file.

    Implementations must be thread-safe. Two acquisitions of the same path
    exclude each other whether they come from different processes or from
    different threads of one process.
    """

    @abstractmethod
    def acquire(
        self,
        path: Path,
        timeout: float | None = None,
        identity: IdentityContext | None = None,
    ) -> LockHandle:
        """Acquire an exclusive lock on path.

        Args:
            path: Lock file, created with mode 0600 if absent.
            timeout: Maximum time to wait in seconds (None = wait forever).
            identity: Identity the lock file is created under.

        Returns:
            LockHandle for the acquired lock.

        Raises:
            LockTimeout: If timeout expires before the lock is acquired.
            LockAcquisitionError: If the lock file cannot be opened or locked.
        """
        pass

    @abstractmethod
    def release(self, handle: LockHandle) -> None:
        """Release a previously acquired lock.

        Raises:
            ValueError: If the handle is invalid or already released.
        """
        pass

    @abstractmethod
    def is_locked(self, path: Path) -> bool:
        """Check if path is currently locked by anyone."""
        pass

    @contextmanager
    def lock(
        self,
        path: Path,
        timeout: float | None = None,
        identity: IdentityContext | None = None,
    ) -> Iterator[LockHandle]:
        """Context manager for lock acquisition.

        Example:
            >>> with strategy.lock(home / ".authorized_keys.d.lock"):
            ...     # Exclusive access to the store
            ...     pass
        """
        handle = self.acquire(path, timeout, identity)
        try:
            yield handle
        finally:
            self.release(handle)


def _open_lock_file(path: Path, identity: IdentityContext | None) -> int:
    identity = identity or ProcessIdentity()
    try:
        with identity.assume():
            return os.open(str(path), os.O_RDONLY | os.O_CREAT, LOCK_FILE_MODE)
    except OSError as e:
        raise LockAcquisitionError(
            f"Cannot open lock file {path}: {e}", path=path
        ) from e


class FcntlLockStrategy(LockStrategy):
    """POSIX flock()-based locking strategy.

    flock locks belong to the open file description, so separate acquisitions
    in the same process contend with each other just like separate processes.
    """

    def __init__(self) -> None:
        if sys.platform == "win32":
            raise RuntimeError("FcntlLockStrategy is not available on Windows")

        import fcntl

        self._fcntl = fcntl
        self._held: set[int] = set()
        self._lock = threading.Lock()

    def acquire(
        self,
        path: Path,
        timeout: float | None = None,
        identity: IdentityContext | None = None,
    ) -> LockHandle:
        """Acquire a lock using fcntl.flock()."""
        fd = _open_lock_file(path, identity)

        try:
            if timeout is not None:
                # Bounded wait is implemented with polling
                deadline = time.monotonic() + timeout
                while True:
                    try:
                        self._fcntl.flock(fd, self._fcntl.LOCK_EX | self._fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() >= deadline:
                            raise LockTimeout(path, timeout) from None
                        time.sleep(_POLL_INTERVAL)
            else:
                self._fcntl.flock(fd, self._fcntl.LOCK_EX)
        except LockTimeout:
            os.close(fd)
            raise
        except OSError as e:
            os.close(fd)
            raise LockAcquisitionError(f"Cannot lock {path}: {e}", path=path) from e

        with self._lock:
            self._held.add(fd)

        logger.debug("Acquired lock %s (fd=%d)", path, fd)
        return LockHandle(path=path, fd=fd)

    def release(self, handle: LockHandle) -> None:
        """Release the lock by closing its descriptor."""
        with self._lock:
            if handle.fd not in self._held:
                raise ValueError(f"Lock not held: {handle.path}")
            self._held.discard(handle.fd)

        # Closing the last descriptor drops the flock.
        os.close(handle.fd)
        logger.debug("Released lock %s", handle.path)

    def is_locked(self, path: Path) -> bool:
        """Check if path is locked."""
        if not path.exists():
            return False

        try:
            fd = os.open(str(path), os.O_RDONLY)
        except OSError:
            return False
        try:
            self._fcntl.flock(fd, self._fcntl.LOCK_EX | self._fcntl.LOCK_NB)
            self._fcntl.flock(fd, self._fcntl.LOCK_UN)
            return False
        except BlockingIOError:
            return True
        finally:
            os.close(fd)


class FileLockStrategy(LockStrategy):
    """Cross-platform locking using the filelock library.

    The lock file is created under the target identity first; filelock then
    opens and locks it itself.
    """

    def __init__(self) -> None:
        import filelock

        self._filelock = filelock
        self._locks: dict[int, Any] = {}
        self._lock = threading.Lock()

    def acquire(
        self,
        path: Path,
        timeout: float | None = None,
        identity: IdentityContext | None = None,
    ) -> LockHandle:
        """Acquire a lock using filelock."""
        os.close(_open_lock_file(path, identity))

        # thread_local=False so the holder can release from another thread
        lock = self._filelock.FileLock(
            str(path), mode=LOCK_FILE_MODE, thread_local=False, is_singleton=False
        )
        try:
            lock.acquire(timeout=-1 if timeout is None else timeout)
        except self._filelock.Timeout as e:
            raise LockTimeout(path, timeout or 0) from e
        except OSError as e:
            raise LockAcquisitionError(f"Cannot lock {path}: {e}", path=path) from e

        handle = LockHandle(path=path)
        with self._lock:
            self._locks[id(handle)] = lock

        logger.debug("Acquired lock %s", path)
        return handle

    def release(self, handle: LockHandle) -> None:
        """Release the filelock lock."""
        with self._lock:
            lock = self._locks.pop(id(handle), None)
        if lock is None:
            raise ValueError(f"Lock not held: {handle.path}")

        lock.release()
        logger.debug("Released lock %s", handle.path)

    def is_locked(self, path: Path) -> bool:
        """Check if path is locked."""
        if not path.exists():
            return False

        lock = self._filelock.FileLock(str(path), is_singleton=False)
        try:
            lock.acquire(timeout=0)
            lock.release()
            return False
        except self._filelock.Timeout:
            return True


def get_lock_strategy(name: str = "auto") -> LockStrategy:
    """Get a lock strategy by name.

    Args:
        name: "fcntl", "filelock" or "auto".

    Returns:
        The requested LockStrategy. "auto" prefers fcntl on Unix-like systems
        and falls back to filelock elsewhere.
    """
    if name == "fcntl":
        return FcntlLockStrategy()
    if name == "filelock":
        return FileLockStrategy()
    if name != "auto":
        raise ValueError(f"Unknown lock strategy: {name}")

    if sys.platform != "win32":
        return FcntlLockStrategy()
    return FileLockStrategy()

"""Lock management for snapjournal.

This module provides the StorageLock class that serialises mutating
operations on one snapshot storage directory. Threads of one process are
serialised by a re-entrant mutex shared by every StorageLock on the same
directory; separate processes by fcntl.flock on a lock file with PID
tracking.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional
import fcntl
import os
import threading
import time

from snapjournal.errors import StorageError
from snapjournal.logger import ErrorCode


class LockError(StorageError):
    """Raised when lock cannot be acquired."""

    error_code = ErrorCode.LOCK_HELD


@dataclass
class _RootState:
    """Per-directory lock state shared by every StorageLock in the process."""
    mutex: threading.RLock = field(default_factory=threading.RLock)
    depth: int = 0
    fd: Optional[int] = None


_registry_guard = threading.Lock()
_registry: Dict[str, _RootState] = {}


def _state_for(storage_path: Path) -> _RootState:
    key = os.path.realpath(str(storage_path))
    with _registry_guard:
        state = _registry.get(key)
        if state is None:
            state = _RootState()
            _registry[key] = state
        return state


class StorageLock:
    """
    Exclusive lock scoped to one storage directory.

    Re-entrant within a thread: nested acquisitions only take the file lock
    once. Implements the context manager protocol.
    """

    LOCK_FILENAME = ".lock"

    def __init__(self, storage_path: Path, timeout: float = 5.0):
        """
        Initialize StorageLock.

        Args:
            storage_path: Snapshot storage directory the lock protects
            timeout: Seconds to wait for the lock before raising LockError
        """
        self.storage_path = Path(storage_path)
        self.lock_path = self.storage_path / self.LOCK_FILENAME
        self.timeout = timeout
        self._state = _state_for(self.storage_path)

    def acquire(self) -> bool:
        """
        Acquire the lock, waiting up to timeout seconds.

        Process:
        1. Take the in-process mutex for this directory
        2. On the outermost acquisition, open the lock file and take flock
        3. Write our PID into the lock file

        Returns True if lock acquired.

        Raises:
            LockError: If the lock is still held elsewhere when timeout expires.
        """
        start_time = time.monotonic()
        if not self._state.mutex.acquire(timeout=self.timeout):
            raise LockError(
                f"Storage {self.storage_path} is busy in this process "
                f"after {self.timeout}s timeout"
            )

        if self._state.depth > 0:
            self._state.depth += 1
            return True

        try:
            self._acquire_file_lock(start_time)
        except BaseException:
            self._state.mutex.release()
            raise

        self._state.depth = 1
        return True

    def _acquire_file_lock(self, start_time: float) -> None:
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise LockError(f"Cannot open lock file {self.lock_path}: {e}")

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                elapsed = time.monotonic() - start_time
                if elapsed >= self.timeout:
                    os.close(fd)
                    holder_pid = self.get_lock_holder_pid()
                    if holder_pid:
                        raise LockError(
                            f"Lock held by process {holder_pid} after {self.timeout}s timeout"
                        )
                    raise LockError(
                        f"Lock held by another process after {self.timeout}s timeout"
                    )
                time.sleep(0.05)

        self._state.fd = fd
        self._write_pid(fd)

    def release(self) -> None:
        """Release one level of the lock; the file lock goes with the last one."""
        if self._state.depth <= 0:
            return
        self._state.depth -= 1
        if self._state.depth == 0 and self._state.fd is not None:
            fd = self._state.fd
            self._state.fd = None
            try:
                os.ftruncate(fd, 0)
            except OSError:
                pass  # PID is informational only
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        self._state.mutex.release()

    @property
    def held(self) -> bool:
        """True if this process currently holds the lock."""
        return self._state.depth > 0

    def is_locked(self) -> bool:
        """Check if the file lock is currently held by any process."""
        if not self.lock_path.exists():
            return False

        try:
            fd = os.open(str(self.lock_path), os.O_RDONLY)
        except OSError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        except BlockingIOError:
            return True
        finally:
            os.close(fd)

    def get_lock_holder_pid(self) -> Optional[int]:
        """Return PID of process holding lock, or None."""
        try:
            content = self.lock_path.read_text().strip()
            if content:
                return int(content)
        except (OSError, ValueError):
            pass
        return None

    def _write_pid(self, fd: int) -> None:
        try:
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, str(os.getpid()).encode())
        except OSError:
            pass  # Best effort

    def __enter__(self) -> "StorageLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False  # Don't suppress exceptions

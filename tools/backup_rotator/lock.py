"""Run lock: a pid file created with an atomic exclusive create."""

import logging
import os
from pathlib import Path
from typing import Optional

from shared.logger import get_logger

from .errors import ConcurrencyConflict


def pid_alive(pid: int) -> bool:
    """Check whether a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


class LockManager:
    """
    Process-wide mutual exclusion for backup runs.

    Use as a context manager so the token is released on every exit path,
    including KeyboardInterrupt:

        with LockManager(settings.lock_file):
            ...

    Attributes:
        lock_path: Token file location
    """

    def __init__(self, lock_path: Path, logger: Optional[logging.Logger] = None):
        self.lock_path = lock_path
        self.logger = logger or get_logger(__name__)
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read_owner(self) -> Optional[int]:
        """Read the pid recorded in the token, or None if absent or malformed."""
        return self._read_pid(self.lock_path)

    def acquire(self) -> None:
        """
        Acquire the lock or fail immediately.

        A token left by a process that is no longer alive is moved aside and
        replaced. The move is atomic, so of two processes reclaiming the same
        stale token only one ends up holding the lock.

        Raises:
            ConcurrencyConflict: If a live process holds the lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        if self._try_create():
            return

        owner = self.read_owner()
        if owner is not None and pid_alive(owner):
            self.logger.error(f"Another backup process (PID {owner}) is already running. Exiting.")
            raise ConcurrencyConflict(f"Lock {self.lock_path} is held by running process {owner}")

        self.logger.warning(f"Stale lock file found (PID {owner}); removing.")
        if not self._reclaim(owner) or not self._try_create():
            owner = self.read_owner()
            self.logger.error(f"Lost lock race to process {owner}. Exiting.")
            raise ConcurrencyConflict(f"Lock {self.lock_path} was taken by process {owner}")

    def _reclaim(self, stale_owner: Optional[int]) -> bool:
        """
        Remove the token only if it still records stale_owner.

        Returns:
            False if the token was replaced by another process in the meantime
        """
        moved = self.lock_path.with_name(f"{self.lock_path.name}.stale-{os.getpid()}-{id(self)}")
        try:
            os.rename(self.lock_path, moved)
        except FileNotFoundError:
            return True

        if self._read_pid(moved) != stale_owner:
            # Someone else's fresh token; put it back unless a newer one exists
            try:
                os.link(moved, self.lock_path)
            except OSError as e:
                self.logger.debug(f"Could not restore lock file {self.lock_path}: {e}")
            moved.unlink(missing_ok=True)
            return False

        moved.unlink(missing_ok=True)
        return True

    def _read_pid(self, path: Path) -> Optional[int]:
        try:
            content = path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.debug(f"Could not read lock file {path}: {e}")
            return None
        try:
            return int(content)
        except ValueError:
            return None

    def release(self) -> None:
        """Remove the token. Failures are logged, never raised."""
        if not self._held:
            return
        self._held = False
        try:
            self.lock_path.unlink()
            self.logger.debug(f"Released lock {self.lock_path}")
        except OSError as e:
            self.logger.debug(f"Could not remove lock file {self.lock_path}: {e}")

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, f"{os.getpid()}\n".encode())
        finally:
            os.close(fd)
        self._held = True
        self.logger.debug(f"Acquired lock {self.lock_path}")
        return True

    def __enter__(self) -> "LockManager":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

"""
Single Instance Lock

PID-file lock so only one process ever drives a given state file (and
therefore the single open position). Stale locks left by a dead process
are reclaimed. The lock is released on clean exit.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        with SingleInstanceLock("levelbounce", lock_dir="state"):
            run_bot()
    """

    def __init__(self, name: str, lock_dir: str = "state"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def acquire(self) -> bool:
        """Returns True if the lock was taken, False if another live instance holds it."""
        if self.acquired:
            logger.warning("Lock already acquired by this instance")
            return True

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        if self.lock_file.exists():
            try:
                existing_pid = int(self.lock_file.read_text().strip())
            except (ValueError, OSError) as e:
                logger.warning(f"Invalid lock file, removing: {e}")
                existing_pid = None

            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). "
                    f"Cannot start. Lock file: {self.lock_file}"
                )
                return False
            if existing_pid is not None:
                logger.warning(f"Found stale lock file (PID={existing_pid} not running), removing")
            self.lock_file.unlink(missing_ok=True)

        try:
            current_pid = os.getpid()
            self.lock_file.write_text(str(current_pid))
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False
        self.acquired = True
        logger.info(f"Lock acquired (PID={current_pid}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.lock_file.unlink(missing_ok=True)
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = "levelbounce", lock_dir: str = "state") -> Optional[SingleInstanceLock]:
    """Acquire the lock, or return None if another instance is running."""
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None

"""
Single Instance Lock - Prevent Multiple Bot Instances

Two bots sharing one state file would race on the decision store and the
transaction log, and could both act on the same candle. A PID file in the
data directory keeps the process single-writer.
"""

import atexit
import os
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        with SingleInstanceLock("turntrader"):
            run_bot()
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _read_owner(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (ValueError, OSError):
            return None

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if lock acquired, False if another live instance holds it
        """
        if self.acquired:
            return True

        for _ in range(2):
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                owner = self._read_owner()
                if owner is not None and owner != os.getpid() and self._is_process_running(owner):
                    logger.error(
                        f"Another instance is running (PID={owner}). Lock file: {self.lock_file}"
                    )
                    return False
                logger.warning(f"Removing stale lock file {self.lock_file} (PID={owner})")
                self.lock_file.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self.acquired = True
            logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
            return True

        logger.error(f"Could not acquire lock {self.lock_file}")
        return False

    def release(self) -> None:
        """Release the lock (delete PID file)"""
        if not self.acquired:
            return
        try:
            if self._read_owner() == os.getpid():
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


def check_single_instance(name: str = "turntrader",
                          lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """
    Convenience function to check and acquire single instance lock.

    Returns:
        SingleInstanceLock if successful, None if another instance is running
    """
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None

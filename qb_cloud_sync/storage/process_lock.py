"""
Keeps two processing loops from working on the same task database.
"""

import logging
import os
from pathlib import Path
from typing import IO, Optional

from qb_cloud_sync.exceptions import ProcessorBusyError

if os.name == "nt":
    import msvcrt
else:
    import fcntl

log = logging.getLogger(__name__)


def _lock(handle: IO[str]) -> None:
    if os.name == "nt":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(handle: IO[str]) -> None:
    if os.name == "nt":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class ProcessorLock:
    """
    An exclusive, non-blocking lock on ``<database>.lock``.

    The lock belongs to the open file, so the operating system drops it when
    the holder exits and a killed daemon never leaves a stale lock behind.
    The holder's PID is written into the file for operators.
    """

    def __init__(self, database_path: Path):
        self.path = Path(f"{database_path}.lock")
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        """
        Takes the lock or fails immediately.

        Raises:
            ProcessorBusyError: If another holder already has it.
        """
        if self._handle is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        try:
            _lock(handle)
        except OSError as e:
            handle.close()
            raise ProcessorBusyError(
                "Another qb-cloud-sync process is already processing tasks in this"
                f" database (lock file: {self.path})."
            ) from e

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        log.debug(f"Acquired processing lock {self.path}")

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            _unlock(self._handle)
        finally:
            self._handle.close()
            self._handle = None
        log.debug(f"Released processing lock {self.path}")

    def __enter__(self) -> "ProcessorLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

"""Startup lock for the daemon.

Held only while a daemon binds its socket and writes its PID file, so two
daemons racing to start cannot both bind.

PUBLIC API:
  - DaemonLock: Non-blocking flock on daemon.lock
"""

import contextlib
import fcntl
import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..errors import DaemonLockError

__all__ = ["DaemonLock"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DaemonLock:
    """Exclusive advisory lock on a file."""

    path: Path
    _fp: io.TextIOWrapper | None = None

    @property
    def held(self) -> bool:
        return self._fp is not None

    def acquire(self) -> None:
        """Take the lock without blocking.

        Raises:
            DaemonLockError: Another process holds it.
        """
        if self._fp is not None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fp = open(self.path, "a+", encoding="utf-8")  # noqa: SIM115
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            fp.close()
            raise DaemonLockError(f"Another daemon is starting (lock {self.path} is held)") from e

        fp.seek(0)
        fp.truncate(0)
        fp.write(f"pid={os.getpid()}\n")
        fp.flush()
        self._fp = fp

    def release(self) -> None:
        """Drop the lock. Safe to call when not held."""
        fp, self._fp = self._fp, None
        if fp is None:
            return
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.debug(f"Unlock of {self.path} failed: {e}")
        with contextlib.suppress(OSError):
            fp.close()

    def __enter__(self) -> "DaemonLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()

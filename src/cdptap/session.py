"""Session files shared by the client, daemon and worker.

All files live in one session directory (``~/.cdptap`` unless overridden):

  daemon.sock   Unix socket the daemon listens on
  daemon.pid    Daemon PID, removed on clean shutdown
  daemon.lock   Held only while binding the socket and writing daemon.pid
  session.pid   Worker PID while a browser session is live
  session.json  Worker-written session metadata
  daemon.log    Daemon log file
  worker.log    Worker stderr

PUBLIC API:
  - session_path: Path of a named session file
  - ensure_session_dir: Create the session directory
  - write_atomic: Write a file via temp file + rename
  - read_pid: Parse a PID file
  - is_process_alive: Signal-0 liveness probe
  - read_metadata / write_metadata: Session metadata JSON
  - remove_file: Unlink, ignoring a missing file
  - remove_session_files: Drop worker session PID and metadata
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Literal, Optional, TypeAlias

from .config import get_config

__all__ = [
    "SessionFile",
    "session_path",
    "ensure_session_dir",
    "write_atomic",
    "read_pid",
    "is_process_alive",
    "read_metadata",
    "write_metadata",
    "remove_file",
    "remove_session_files",
]

logger = logging.getLogger(__name__)

SessionFile: TypeAlias = Literal[
    "DAEMON_SOCKET",
    "DAEMON_PID",
    "DAEMON_LOCK",
    "SESSION_PID",
    "SESSION_METADATA",
    "DAEMON_LOG",
    "WORKER_LOG",
    "CHROME_PROFILE",
]

_FILENAMES: dict[str, str] = {
    "DAEMON_SOCKET": "daemon.sock",
    "DAEMON_PID": "daemon.pid",
    "DAEMON_LOCK": "daemon.lock",
    "SESSION_PID": "session.pid",
    "SESSION_METADATA": "session.json",
    "DAEMON_LOG": "daemon.log",
    "WORKER_LOG": "worker.log",
    "CHROME_PROFILE": "chrome-profile",
}


def session_path(name: SessionFile) -> Path:
    """Get the path of a session file."""
    return get_config().session_dir / _FILENAMES[name]


def ensure_session_dir() -> Path:
    """Create the session directory (0700) if needed."""
    session_dir = get_config().session_dir
    session_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
    return session_dir


def write_atomic(path: Path, content: str) -> None:
    """Write content so readers never see a truncated file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def read_pid(path: Path) -> Optional[int]:
    """Read a PID file, None when missing or not a positive integer."""
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        pid = int(raw)
    except ValueError:
        logger.debug(f"Corrupt PID file {path}: {raw!r}")
        return None
    return pid if pid > 0 else None


def is_process_alive(pid: int) -> bool:
    """Check whether a process exists using signal 0."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except OSError:
        return False
    return True


def read_metadata() -> Optional[dict[str, Any]]:
    """Read session metadata written by the worker."""
    path = session_path("SESSION_METADATA")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring corrupt session metadata {path}: {e}")
        return None


def write_metadata(metadata: dict[str, Any]) -> None:
    """Write session metadata atomically."""
    write_atomic(session_path("SESSION_METADATA"), json.dumps(metadata, indent=2))


def remove_file(path: Path) -> bool:
    """Unlink a file. Returns False if it did not exist."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


def remove_session_files() -> None:
    """Remove the worker's PID and metadata files."""
    for name in ("SESSION_PID", "SESSION_METADATA"):
        if remove_file(session_path(name)):
            logger.debug(f"Removed {session_path(name)}")

"""Daemon control from the client side.

PUBLIC API:
  - start_daemon: Spawn a detached daemon (or run it in the foreground)
  - ensure_daemon: Start the daemon unless one is already running
  - stop_daemon: SIGTERM the daemon and wait for it to exit
  - daemon_status: Liveness plus the daemon's own status report
"""

import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from typing import Any

from ..errors import CdptapError
from ..ipc.client import get_status
from ..session import ensure_session_dir, is_process_alive, read_pid, session_path
from .server import IPCServer

__all__ = ["start_daemon", "ensure_daemon", "stop_daemon", "daemon_status"]

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 10.0
POLL_INTERVAL = 0.1


def start_daemon(foreground: bool = False, timeout: float = STARTUP_TIMEOUT) -> int:
    """Start the daemon.

    Args:
        foreground: Run in this process and block until it exits.
        timeout: Seconds to wait for the socket of a detached daemon.

    Returns:
        Daemon PID (detached) or exit code (foreground).

    Raises:
        RuntimeError: The detached daemon exited or never bound its socket.
    """
    if foreground:
        from .process import run_daemon

        return run_daemon()

    if IPCServer.is_running():
        pid = read_pid(session_path("DAEMON_PID"))
        logger.info(f"Daemon already running (pid {pid})")
        return pid or 0

    ensure_session_dir()
    proc = subprocess.Popen(
        [sys.executable, "-m", "cdptap", "daemon", "run"],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )

    socket_path = session_path("DAEMON_SOCKET")
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if socket_path.exists() and read_pid(session_path("DAEMON_PID")) == proc.pid:
            logger.info(f"Daemon started (pid {proc.pid})")
            return proc.pid
        if proc.poll() is not None:
            raise RuntimeError(
                f"Daemon exited with code {proc.returncode}, see {session_path('DAEMON_LOG')}"
            )
        time.sleep(POLL_INTERVAL)

    raise RuntimeError(f"Daemon did not start within {timeout:g}s, see {session_path('DAEMON_LOG')}")


def ensure_daemon() -> int:
    """Return the running daemon's PID, starting one if needed."""
    if IPCServer.is_running():
        return read_pid(session_path("DAEMON_PID")) or 0
    return start_daemon()


def stop_daemon(timeout: float = SHUTDOWN_TIMEOUT) -> int:
    """Stop the running daemon.

    Returns:
        The stopped daemon's PID.

    Raises:
        RuntimeError: No daemon is running or it ignored SIGTERM.
    """
    pid = read_pid(session_path("DAEMON_PID"))
    if not pid or not is_process_alive(pid):
        raise RuntimeError("Daemon is not running")

    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_alive(pid):
            return pid
        time.sleep(POLL_INTERVAL)

    raise RuntimeError(f"Daemon (pid {pid}) did not exit within {timeout:g}s")


def daemon_status(verbose: bool = False) -> dict[str, Any]:
    """Report whether the daemon runs and, if so, what it says about itself."""
    pid = read_pid(session_path("DAEMON_PID"))
    if not pid or not is_process_alive(pid):
        return {"running": False}

    status: dict[str, Any] = {"running": True, "pid": pid}
    try:
        response = asyncio.run(get_status(verbose=verbose))
    except CdptapError as e:
        status["error"] = str(e)
        return status

    status["status"] = response.get("status")
    status["data"] = response.get("data", {})
    if response.get("error"):
        status["error"] = response["error"]
    return status

"""cdptap daemon - owns the worker and serves CLI clients over a Unix socket.

PUBLIC API:
  - DaemonProcess, run_daemon: Daemon lifecycle
  - IPCServer: Socket server and request routing
  - PendingRequests: Worker request correlator
  - WorkerManager: Worker subprocess owner
  - start_daemon, ensure_daemon, stop_daemon, daemon_status: Client-side control
"""

from .control import daemon_status, ensure_daemon, start_daemon, stop_daemon
from .pending import PendingRequest, PendingRequests
from .process import DaemonProcess, run_daemon
from .server import IPCServer
from .worker_manager import WorkerLaunchOptions, WorkerManager

__all__ = [
    "DaemonProcess",
    "run_daemon",
    "IPCServer",
    "PendingRequest",
    "PendingRequests",
    "WorkerLaunchOptions",
    "WorkerManager",
    "start_daemon",
    "ensure_daemon",
    "stop_daemon",
    "daemon_status",
]

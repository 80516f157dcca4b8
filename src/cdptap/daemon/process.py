"""Daemon process lifecycle.

PUBLIC API:
  - DaemonProcess: Own the IPC server and run until signalled
  - run_daemon: Foreground daemon entry point
"""

import asyncio
import logging
import signal
from typing import Optional

from ..config import Config, get_config
from ..errors import DaemonLockError
from ..logs import BufferHandler, setup_logging
from ..session import ensure_session_dir, session_path
from .server import IPCServer
from .worker_manager import WorkerManager

__all__ = ["DaemonProcess", "run_daemon"]

logger = logging.getLogger(__name__)


class DaemonProcess:
    """One daemon: config, IPC server, correlator and worker manager.

    Attributes:
        server: The IPC server (owns the correlator).
        worker_manager: Worker subprocess owner shared with the server.
        stop_event: Set when the daemon should exit.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        worker_manager: Optional[WorkerManager] = None,
        log_buffer: Optional[BufferHandler] = None,
    ):
        self.config = config or get_config()
        self.worker_manager = worker_manager or WorkerManager(log_path=session_path("WORKER_LOG"))
        self.server = IPCServer(self.config, self.worker_manager, log_buffer)
        self.stop_event = asyncio.Event()

    @property
    def pending(self):
        return self.server.pending

    async def start(self) -> None:
        await self.server.start()
        logger.info("Daemon started")

    async def stop(self) -> None:
        self.stop_event.set()
        await self.server.stop()
        logger.info("Daemon stopped")

    async def run(self) -> None:
        """Start, then block until SIGTERM/SIGINT or ``stop_event``."""
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.stop_event.set)

        try:
            await self.stop_event.wait()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.stop()


def run_daemon(config: Optional[Config] = None) -> int:
    """Run the daemon in the foreground. Returns the exit code."""
    config = config or get_config()
    ensure_session_dir()
    log_buffer = setup_logging("daemon", config.log_level, session_path("DAEMON_LOG"))

    async def _main() -> None:
        await DaemonProcess(config, log_buffer=log_buffer).run()

    try:
        asyncio.run(_main())
    except DaemonLockError as e:
        logger.error(f"Daemon not started: {e}")
        return 1
    return 0

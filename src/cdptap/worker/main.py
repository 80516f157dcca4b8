"""Worker process entry point.

The worker owns the browser session: it launches or attaches to Chrome, keeps
the CDP connection, collects telemetry and answers daemon requests. Requests
arrive as JSONL on stdin and responses leave as JSONL on stdout; stderr is
the log stream.

PUBLIC API:
  - WorkerOptions: Parsed worker flags
  - Worker: Session lifecycle and request loop
  - main: ``python -m cdptap worker`` entry point
"""

import argparse
import asyncio
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional, TextIO

import httpx

from ..cdp.connection import CDPConnection
from ..cdp.launcher import kill_chrome, launch_chrome
from ..cdp.targets import find_page_target
from ..config import get_config
from ..errors import BufferOverflowError, CdptapError, FrameParseError
from ..ipc.framing import FrameBuffer, parse_frame, to_frame
from ..logs import setup_logging
from ..session import remove_session_files, session_path, write_atomic, write_metadata
from ..telemetry.console import start_console_collection
from ..telemetry.navigation import start_navigation_tracking
from ..telemetry.network import start_network_collection
from ..telemetry.store import TelemetryStore
from .commands import create_command_registry, dispatch

__all__ = ["WorkerOptions", "Worker", "main"]

logger = logging.getLogger(__name__)


@dataclass
class WorkerOptions:
    """Worker flags.

    Attributes:
        port: Chrome remote debugging port.
        url: Page to open once connected.
        headless: Launch Chrome headless.
        chrome_pid: PID of an externally launched Chrome to attach to.
        launch: Launch Chrome ourselves (False attaches to ``port``).
        timeout: Stop the session after this many seconds.
    """

    port: int = 9222
    url: Optional[str] = None
    headless: bool = False
    chrome_pid: Optional[int] = None
    launch: bool = True
    timeout: Optional[float] = None


class Worker:
    """One browser session driven over stdin/stdout."""

    def __init__(self, options: WorkerOptions, stdout: TextIO | None = None):
        config = get_config()
        self.options = options
        self.config = config
        self.store = TelemetryStore(config.max_network_requests, config.max_console_messages)
        self.cdp = CDPConnection()
        self.registry = create_command_registry(self.store)

        self.chrome_proc: subprocess.Popen | None = None
        self.chrome_pid: int = options.chrome_pid or 0
        self._stdout = stdout or sys.stdout
        self._cleanups: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task] = set()
        self._stop = asyncio.Event()
        self._stopped = False

    async def start(self) -> dict[str, Any]:
        """Bring up Chrome, CDP and collectors, then announce readiness.

        Returns:
            The worker_ready frame that was written.
        """
        self.store.reset()
        write_atomic(session_path("SESSION_PID"), str(os.getpid()))

        port = self.options.port
        if self.options.launch:
            self.chrome_proc = await launch_chrome(
                port, session_path("CHROME_PROFILE"), headless=self.options.headless
            )
            self.chrome_pid = self.chrome_proc.pid

        target = await find_page_target(port)
        await self.cdp.connect(target["webSocketDebuggerUrl"])
        self.store.set_target(target.get("url", ""), target.get("title", ""))

        self._cleanups.append(await start_navigation_tracking(self.cdp, self.store))
        self._cleanups.append(
            await start_network_collection(self.cdp, self.store, max_body_size=self.config.max_body_size)
        )
        self._cleanups.append(await start_console_collection(self.cdp, self.store))

        if self.options.url:
            await self.cdp.send("Page.navigate", {"url": self.options.url}, timeout=30)
            self.store.set_target(self.options.url, self.store.target_info.get("title", ""))

        write_metadata(
            {
                "workerPid": os.getpid(),
                "chromePid": self.chrome_pid,
                "port": port,
                "startTime": self.store.session_start_time,
                "targetId": target.get("id"),
                "webSocketDebuggerUrl": target["webSocketDebuggerUrl"],
                "url": self.store.target_info["url"],
                "headless": self.options.headless,
            }
        )

        ready = {
            "type": "worker_ready",
            "requestId": "ready",
            "workerPid": os.getpid(),
            "chromePid": self.chrome_pid,
            "port": port,
            "target": dict(self.store.target_info),
        }
        self._write(ready)
        logger.info(f"Worker ready on port {port} (chrome pid {self.chrome_pid})")
        return ready

    def _write(self, message: dict) -> None:
        self._stdout.write(to_frame(message))
        self._stdout.flush()

    async def _handle(self, request: dict) -> None:
        response = await dispatch(self.registry, self.cdp, request)
        try:
            self._write(response)
        except (BrokenPipeError, ValueError) as e:
            logger.warning(f"Could not write response {request.get('requestId')}: {e}")
            self.stop()

    def _on_frame(self, line: str) -> None:
        try:
            request = parse_frame(line)
        except FrameParseError as e:
            logger.warning(f"Dropping malformed request: {e}")
            return
        if not isinstance(request, dict) or not isinstance(request.get("type"), str):
            logger.warning(f"Dropping request without a type: {line[:200]}")
            return

        task = asyncio.create_task(self._handle(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def read_requests(self, reader: asyncio.StreamReader) -> None:
        """Dispatch every request from reader until EOF."""
        buffer = FrameBuffer()
        while True:
            chunk = await reader.read(65536)
            if not chunk:
                logger.info("stdin closed, shutting down")
                return
            try:
                lines = buffer.process(chunk)
            except BufferOverflowError as e:
                logger.error(f"Request channel overflow: {e}")
                return
            for line in lines:
                self._on_frame(line)

    def stop(self) -> None:
        self._stop.set()

    async def serve(self, reader: asyncio.StreamReader) -> None:
        """Run until stdin EOF, stop(), browser loss or the session timeout."""
        loop = asyncio.get_running_loop()
        timer = None
        if self.options.timeout:
            timer = loop.call_later(self.options.timeout, self._on_timeout)

        waiters = {
            asyncio.create_task(self.read_requests(reader)),
            asyncio.create_task(self._stop.wait()),
            asyncio.create_task(self.cdp.closed.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if timer:
                timer.cancel()
            for task in waiters:
                task.cancel()

        if self.cdp.closed.is_set() and not self._stop.is_set():
            logger.warning("Browser connection lost")

    def _on_timeout(self) -> None:
        logger.info(f"Session timeout ({self.options.timeout}s) reached")
        self.stop()

    async def shutdown(self) -> None:
        """Release everything the session holds. Safe to call twice."""
        if self._stopped:
            return
        self._stopped = True

        for task in list(self._tasks):
            task.cancel()

        for cleanup in reversed(self._cleanups):
            try:
                cleanup()
            except Exception as e:
                logger.warning(f"Collector cleanup failed: {e}")
        self._cleanups.clear()

        self.cdp.close()

        if self.chrome_proc is not None:
            kill_chrome(self.chrome_proc.pid)
            try:
                await asyncio.to_thread(self.chrome_proc.wait, 5)
            except subprocess.TimeoutExpired:
                kill_chrome(self.chrome_proc.pid, signal.SIGKILL)

        remove_session_files()
        logger.info("Worker stopped")


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def run_worker(options: WorkerOptions) -> int:
    """Start, serve and tear down one session. Returns the exit code."""
    worker = Worker(options)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.start()
    except (CdptapError, httpx.HTTPError, OSError, KeyError) as e:
        logger.error(f"Worker failed to start: {e}", exc_info=True)
        await worker.shutdown()
        return 1

    try:
        await worker.serve(await _stdin_reader())
    finally:
        await worker.shutdown()
    return 0


def build_parser() -> argparse.ArgumentParser:
    config = get_config()
    parser = argparse.ArgumentParser(prog="cdptap worker", description="Browser session worker")
    parser.add_argument("--port", type=int, default=config.chrome_port, help="Chrome remote debugging port")
    parser.add_argument("--url", help="Page to open once connected")
    parser.add_argument("--headless", action="store_true", default=config.headless, help="Launch Chrome headless")
    parser.add_argument("--chrome-pid", type=int, help="PID of an already running Chrome")
    parser.add_argument(
        "--launch", action=argparse.BooleanOptionalAction, default=True, help="Launch Chrome (default) or attach"
    )
    parser.add_argument("--timeout", type=float, help="Stop the session after SECONDS")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Worker entry point."""
    args = build_parser().parse_args(argv)
    setup_logging("worker", get_config().log_level)

    options = WorkerOptions(
        port=args.port,
        url=args.url,
        headless=args.headless,
        chrome_pid=args.chrome_pid,
        launch=args.launch,
        timeout=args.timeout,
    )
    return asyncio.run(run_worker(options))

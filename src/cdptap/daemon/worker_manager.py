"""Worker process manager.

Spawns at most one worker, reads its stdout as JSONL and reports messages and
exit through subscribers. The exit event fires exactly once per worker, after
all of its stdout has been delivered.

PUBLIC API:
  - WorkerLaunchOptions: Flags passed to the worker
  - WorkerManager: Launch, send, stop, subscribe
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from ..errors import BufferOverflowError, FrameParseError, WorkerStartError, WorkerUnavailableError
from ..ipc.framing import FrameBuffer, parse_frame, to_frame

__all__ = ["WorkerLaunchOptions", "WorkerManager"]

logger = logging.getLogger(__name__)

WORKER_EVENTS = ("message", "exit")


@dataclass
class WorkerLaunchOptions:
    port: int = 9222
    url: Optional[str] = None
    headless: bool = False
    timeout: Optional[float] = None
    launch: bool = True
    chrome_pid: Optional[int] = None

    def to_args(self) -> list[str]:
        args = ["--port", str(self.port)]
        if self.url:
            args += ["--url", self.url]
        if self.headless:
            args.append("--headless")
        if self.timeout:
            args += ["--timeout", str(self.timeout)]
        if not self.launch:
            args.append("--no-launch")
        if self.chrome_pid:
            args += ["--chrome-pid", str(self.chrome_pid)]
        return args


def _signal_name(returncode: Optional[int]) -> Optional[str]:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class WorkerManager:
    """Owns the worker subprocess.

    Attributes:
        process: Live worker, None when no session is running.
        ready_info: The worker_ready frame of the live worker.
    """

    def __init__(self, command: Optional[list[str]] = None, log_path: Optional[Path] = None):
        """Initialize manager.

        Args:
            command: Worker argv prefix. Defaults to ``python -m cdptap worker``.
            log_path: File receiving worker stderr. None inherits the daemon's stderr.
        """
        self.command = command or [sys.executable, "-m", "cdptap", "worker"]
        self.log_path = log_path
        self.process: asyncio.subprocess.Process | None = None
        self.ready_info: dict[str, Any] | None = None
        self._reader_task: asyncio.Task | None = None
        self._handlers: dict[str, list[Callable]] = {event: [] for event in WORKER_EVENTS}
        self._launching = False

    @property
    def worker_pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def is_launching(self) -> bool:
        return self._launching

    def has_active_worker(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def on(self, event: str, handler: Callable) -> Callable[[], None]:
        """Subscribe to "message" (msg) or "exit" (returncode, signal_name).

        Returns:
            Idempotent unsubscribe function.
        """
        if event not in self._handlers:
            raise ValueError(f"Unknown worker event: {event}")
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    def _emit(self, event: str, *args) -> None:
        for handler in list(self._handlers[event]):
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"Worker {event} handler failed: {e}", exc_info=True)

    async def launch(self, options: WorkerLaunchOptions, ready_timeout: float = 30.0) -> dict[str, Any]:
        """Spawn a worker and wait for its worker_ready frame.

        Returns:
            The worker_ready frame.

        Raises:
            WorkerStartError: Already running, spawn failed, early exit or timeout.
        """
        if self.has_active_worker() or self._launching:
            raise WorkerStartError(f"Worker already running (pid {self.worker_pid})")

        self._launching = True
        try:
            return await self._launch(options, ready_timeout)
        finally:
            self._launching = False

    async def _launch(self, options: WorkerLaunchOptions, ready_timeout: float) -> dict[str, Any]:
        cmd = [*self.command, *options.to_args()]
        logger.info(f"Launching worker: {' '.join(cmd)}")

        stderr: Any = None
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            stderr = open(self.log_path, "ab")  # noqa: SIM115
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=stderr,
                start_new_session=True,
            )
        except OSError as e:
            raise WorkerStartError(f"Failed to spawn worker: {e}") from e
        finally:
            if stderr is not None:
                stderr.close()

        buffer = FrameBuffer()
        try:
            ready, leftover = await asyncio.wait_for(self._wait_ready(proc, buffer), ready_timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise WorkerStartError(f"Worker did not become ready within {ready_timeout:g}s") from None
        except (WorkerStartError, BufferOverflowError) as e:
            await self._kill(proc)
            raise WorkerStartError(str(e)) from e

        self.process = proc
        self.ready_info = ready
        self._reader_task = asyncio.create_task(self._read_loop(proc, buffer, leftover))
        logger.info(f"Worker {proc.pid} ready (chrome pid {ready.get('chromePid')})")
        return ready

    async def _wait_ready(self, proc, buffer: FrameBuffer) -> tuple[dict, list[str]]:
        while True:
            chunk = await proc.stdout.read(65536)
            if not chunk:
                code = await proc.wait()
                raise WorkerStartError(f"Worker exited with code {code} before becoming ready")
            lines = buffer.process(chunk)
            for i, line in enumerate(lines):
                try:
                    message = parse_frame(line)
                except FrameParseError:
                    logger.debug(f"Worker stdout noise before ready: {line[:200]}")
                    continue
                if isinstance(message, dict) and message.get("type") == "worker_ready":
                    return message, lines[i + 1 :]

    async def _read_loop(self, proc, buffer: FrameBuffer, leftover: list[str]) -> None:
        try:
            for line in leftover:
                self._deliver(line)
            while True:
                chunk = await proc.stdout.read(65536)
                if not chunk:
                    break
                try:
                    lines = buffer.process(chunk)
                except BufferOverflowError as e:
                    logger.error(f"Worker {proc.pid} stdout overflow, killing it: {e}")
                    self._signal(proc, signal.SIGKILL)
                    break
                for line in lines:
                    self._deliver(line)
        finally:
            returncode = await proc.wait()
            self._on_exit(proc, returncode)

    def _deliver(self, line: str) -> None:
        try:
            message = parse_frame(line)
        except FrameParseError:
            logger.warning(f"Ignoring non-JSON worker output: {line[:200]}")
            return
        if not isinstance(message, dict):
            logger.warning(f"Ignoring non-object worker frame: {line[:200]}")
            return
        self._emit("message", message)

    def _on_exit(self, proc, returncode: int) -> None:
        signal_name = _signal_name(returncode)
        logger.info(f"Worker {proc.pid} exited (code {returncode}, signal {signal_name})")
        if self.process is proc:
            self.process = None
            self.ready_info = None
            self._reader_task = None
        self._emit("exit", returncode, signal_name)

    def send(self, message: dict) -> None:
        """Write one frame to the worker's stdin without waiting.

        Raises:
            WorkerUnavailableError: No live worker or its stdin is closed.
        """
        proc = self.process
        if proc is None or proc.returncode is not None:
            raise WorkerUnavailableError("No active worker process")
        if proc.stdin is None or proc.stdin.is_closing():
            raise WorkerUnavailableError("Worker stdin is closed")
        proc.stdin.write(to_frame(message).encode("utf-8"))

    @staticmethod
    def _signal(proc, sig: int) -> None:
        try:
            os.kill(proc.pid, sig)
        except ProcessLookupError:
            pass

    async def _kill(self, proc) -> None:
        self._signal(proc, signal.SIGKILL)
        await proc.wait()

    async def stop(self, timeout: float = 5.0) -> None:
        """SIGTERM the worker, SIGKILL after timeout. Returns after the exit event."""
        proc, task = self.process, self._reader_task
        if proc is None:
            return

        logger.info(f"Stopping worker {proc.pid}")
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        self._signal(proc, signal.SIGTERM)

        waiter = task if task is not None else asyncio.ensure_future(proc.wait())
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Worker {proc.pid} ignored SIGTERM, killing")
            self._signal(proc, signal.SIGKILL)
            await waiter

    def dispose(self) -> None:
        """Detach from the worker and signal it without waiting."""
        proc, task = self.process, self._reader_task
        self.process = None
        self.ready_info = None
        self._reader_task = None
        for handlers in self._handlers.values():
            handlers.clear()
        if task is not None:
            task.cancel()
        if proc is not None and proc.returncode is None:
            self._signal(proc, signal.SIGTERM)

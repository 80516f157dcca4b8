"""IPC server - the daemon's Unix socket front end.

PUBLIC API:
  - IPCServer: Accept clients, route requests, relay worker responses
"""

import asyncio
import inspect
import logging
import os
import time
from asyncio import StreamReader, StreamWriter
from typing import Any, Callable, Optional

from ..config import Config, get_config
from ..errors import (
    BufferOverflowError,
    DaemonLockError,
    FrameParseError,
    MessageValidationError,
    UnknownMessageTypeError,
)
from ..ipc.framing import FrameBuffer, parse_frame, to_frame
from ..ipc.messages import classify_message_type, error_response, validate_client_message
from ..logs import BufferHandler
from ..session import (
    ensure_session_dir,
    is_process_alive,
    read_pid,
    remove_file,
    remove_session_files,
    session_path,
    write_atomic,
)
from .handlers import CommandHandlers, QueryHandlers, SessionHandlers
from .lock import DaemonLock
from .pending import PendingRequests
from .responses import ResponseHandler
from .worker_manager import WorkerManager

__all__ = ["IPCServer"]

logger = logging.getLogger(__name__)


class IPCServer:
    """Unix socket server routing client requests.

    Attributes:
        socket_path: Listening socket.
        pid_path: Daemon PID file.
        pending: Correlator for forwarded worker requests.
        worker_manager: Worker subprocess owner.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        worker_manager: Optional[WorkerManager] = None,
        log_buffer: Optional[BufferHandler] = None,
    ):
        self.config = config or get_config()
        self.socket_path = session_path("DAEMON_SOCKET")
        self.pid_path = session_path("DAEMON_PID")
        self._lock = DaemonLock(session_path("DAEMON_LOCK"))
        self.start_time = int(time.time() * 1000)

        self.pending = PendingRequests()
        self.worker_manager = worker_manager or WorkerManager(log_path=session_path("WORKER_LOG"))

        handler_args = (self.worker_manager, self.pending, self.send_response, self.config)
        self.queries = QueryHandlers(*handler_args, daemon_start_time=self.start_time, log_buffer=log_buffer)
        self.commands = CommandHandlers(*handler_args)
        self.sessions = SessionHandlers(*handler_args)
        self.responses = ResponseHandler(self.pending, self.send_response)

        self._routes: dict[str, Callable[[StreamWriter, dict], Any]] = {
            "handshake_request": self.commands.handle_handshake,
            "status_request": self.queries.handle_status,
            "peek_request": self.queries.handle_peek,
            "har_data_request": self.queries.handle_har_data,
            "start_session_request": self.sessions.handle_start_session,
            "stop_session_request": self.sessions.handle_stop_session,
        }

        self._server: asyncio.Server | None = None
        self._clients: set[StreamWriter] = set()
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribers: list[Callable[[], None]] = []
        self._running = False
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._running

    @staticmethod
    def is_running() -> bool:
        """Whether a daemon is alive according to the PID file."""
        pid = read_pid(session_path("DAEMON_PID"))
        return bool(pid) and is_process_alive(pid)

    async def start(self) -> None:
        """Bind the socket and write the PID file under the startup lock.

        Raises:
            DaemonLockError: Another daemon is starting or running.
        """
        ensure_session_dir()
        self._lock.acquire()
        try:
            existing = read_pid(self.pid_path)
            if existing and existing != os.getpid() and is_process_alive(existing):
                raise DaemonLockError(f"Daemon already running (pid {existing})")

            # Stale socket from a daemon that died without cleanup
            remove_file(self.socket_path)
            self._server = await asyncio.start_unix_server(self._handle_connection, path=str(self.socket_path))
            self.socket_path.chmod(0o600)
            write_atomic(self.pid_path, str(os.getpid()))
        finally:
            self._lock.release()

        self._unsubscribers = [
            self.worker_manager.on("message", self.responses.handle_worker_message),
            self.worker_manager.on("exit", self._on_worker_exit),
        ]
        self._running = True
        logger.info(f"IPC server listening on {self.socket_path}")

    def send_response(self, writer: StreamWriter, response: dict) -> None:
        """Write one frame to a client. Closed clients are skipped."""
        if writer.is_closing():
            logger.debug(f"Client gone, dropping {response.get('type')}")
            return
        try:
            writer.write(to_frame(response).encode("utf-8"))
        except (ConnectionError, RuntimeError) as e:
            logger.debug(f"Failed to write {response.get('type')}: {e}")

    def _on_worker_exit(self, returncode: Optional[int], signal_name: Optional[str]) -> None:
        self.responses.handle_worker_exit(returncode, signal_name)
        # Crashed workers leave their files behind
        remove_session_files()

    async def _handle_connection(self, reader: StreamReader, writer: StreamWriter) -> None:
        """Read frames from one client until it disconnects."""
        self._clients.add(writer)
        buffer = FrameBuffer()
        try:
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    break
                try:
                    lines = buffer.process(chunk)
                except BufferOverflowError as e:
                    logger.error(f"Closing client: {e}")
                    break
                for line in lines:
                    self._handle_frame(writer, line)
                await writer.drain()
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug(f"Client connection error: {e}")
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    def _handle_frame(self, writer: StreamWriter, line: str) -> None:
        try:
            message = validate_client_message(parse_frame(line))
        except (FrameParseError, MessageValidationError) as e:
            logger.warning(f"Dropping malformed client frame: {e}")
            return

        message_type = message["type"]
        session_id = message["sessionId"]
        logger.debug(f"{message_type} received (sessionId: {session_id})")

        try:
            kind = classify_message_type(message_type)
        except UnknownMessageTypeError:
            self.send_response(writer, error_response(message_type, session_id, f"Unknown message type: {message_type}"))
            return

        if kind == "response":
            logger.warning(f"Ignoring {message_type} sent by a client")
            return

        handler = self.commands.handle_command if kind == "command" else self._routes[message_type]
        try:
            result = handler(writer, message)
        except Exception as e:
            self._handler_failed(writer, message, e)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda t: self._task_done(t, writer, message))

    def _task_done(self, task: asyncio.Task, writer: StreamWriter, message: dict) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if exc := task.exception():
            self._handler_failed(writer, message, exc)

    def _handler_failed(self, writer: StreamWriter, message: dict, exc: BaseException) -> None:
        logger.error(f"Handler for {message['type']} failed: {exc}", exc_info=exc)
        self.send_response(writer, error_response(message["type"], message["sessionId"], str(exc)))

    async def _step(self, name: str, action: Callable[[], Any]) -> None:
        """Run one shutdown step, logging instead of raising."""
        try:
            result = action()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Shutdown step '{name}' failed: {e}")

    async def stop(self) -> None:
        """Shut down. Idempotent; every step runs even if an earlier one fails."""
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        logger.info("Stopping IPC server")

        server = self._server
        if server is not None:
            await self._step("stop accepting", server.close)
        await self._step("stop worker", self.worker_manager.stop)
        await self._step("fail pending", lambda: self.responses.handle_worker_exit(None, None))
        for unsubscribe in self._unsubscribers:
            await self._step("unsubscribe", unsubscribe)
        await self._step("dispose worker", self.worker_manager.dispose)

        for task in list(self._tasks):
            task.cancel()
        for writer in list(self._clients):
            await self._step("close client", writer.close)
        if server is not None:
            await self._step("close server", lambda: asyncio.wait_for(server.wait_closed(), 2))

        await self._step("remove socket", lambda: remove_file(self.socket_path))
        await self._step("remove pid file", self._remove_own_pid)
        await self._step("release lock", self._lock.release)
        logger.info("IPC server stopped")

    def _remove_own_pid(self) -> None:
        if read_pid(self.pid_path) == os.getpid():
            remove_file(self.pid_path)

"""Daemon request handlers.

Handlers answer client requests directly or forward them to the worker. A
forwarded request is answered later by ResponseHandler, by its timeout, or by
the worker exit path, whichever removes the pending entry first.

PUBLIC API:
  - BaseHandler: Shared worker forwarding with timeout and pending tracking
  - QueryHandlers: status, peek, har_data
  - CommandHandlers: handshake and generic command forwarding
  - SessionHandlers: start_session, stop_session
  - client_response_type: Client-facing response type of a worker command
"""

import asyncio
import logging
import os
from typing import Any, Callable, Optional, TypeAlias

from ..config import Config
from ..errors import CdptapError, WorkerStartError
from ..ipc.messages import command_from_type, error_response, generate_request_id, ok_response
from ..logs import BufferHandler
from ..session import is_process_alive, read_metadata, read_pid, session_path
from .pending import PendingRequest, PendingRequests
from .worker_manager import WorkerLaunchOptions, WorkerManager

__all__ = [
    "BaseHandler",
    "QueryHandlers",
    "CommandHandlers",
    "SessionHandlers",
    "client_response_type",
    "SendResponse",
]

logger = logging.getLogger(__name__)

SendResponse: TypeAlias = Callable[[Any, dict], None]

# Worker commands whose replies use a daemon-level response type
_DAEMON_RESPONSE_TYPES = {
    "worker_status": "status_response",
    "worker_peek": "peek_response",
    "worker_har_data": "har_data_response",
}

SESSION_METADATA_FIELDS = (
    "workerPid",
    "chromePid",
    "startTime",
    "port",
    "targetId",
    "webSocketDebuggerUrl",
    "url",
    "headless",
)


def client_response_type(command_name: str) -> str:
    return _DAEMON_RESPONSE_TYPES.get(command_name, f"{command_name}_response")


class BaseHandler:
    """Shared forwarding logic.

    Attributes:
        DEFAULT_WORKER_TIMEOUT_MS: Deadline for forwarded queries.
    """

    DEFAULT_WORKER_TIMEOUT_MS = 5000

    def __init__(
        self,
        worker_manager: WorkerManager,
        pending: PendingRequests,
        send_response: SendResponse,
        config: Config,
    ):
        self.worker_manager = worker_manager
        self.pending = pending
        self.send_response = send_response
        self.config = config

    def has_active_worker(self) -> bool:
        return self.worker_manager.has_active_worker()

    def send_no_worker_response(
        self, writer, session_id: str, message_type: str, error: str = "No active worker process"
    ) -> None:
        self.send_response(writer, error_response(message_type, session_id, error))
        logger.debug(f"{message_type} rejected: {error}")

    def send_error_response(
        self,
        writer,
        session_id: str,
        response_type: str,
        error: str,
        status_data: Optional[dict[str, Any]] = None,
    ) -> None:
        self.send_response(writer, error_response(response_type, session_id, error, status_data))
        logger.debug(f"{response_type} error sent: {error}")

    def forward_to_worker(
        self,
        writer,
        session_id: str,
        command_name: str,
        worker_request: dict[str, Any],
        timeout_ms: Optional[int] = None,
        status_data: Optional[dict[str, Any]] = None,
    ) -> str:
        """Track a worker request and send it.

        The entry is registered before sending, so an instant reply always
        finds it. A send that fails synchronously is answered right away.

        Returns:
            The worker requestId.
        """
        timeout_ms = timeout_ms or self.config.worker_timeout_ms or self.DEFAULT_WORKER_TIMEOUT_MS
        request_id = worker_request["requestId"]
        response_type = client_response_type(command_name)
        loop = asyncio.get_running_loop()

        def on_timeout() -> None:
            if self.pending.remove(request_id) is None:
                return
            logger.warning(f"{command_name} ({request_id}) timed out after {timeout_ms}ms")
            self.send_error_response(
                writer, session_id, response_type, f"Worker response timeout ({timeout_ms / 1000:g}s)", status_data
            )

        self.pending.add(
            request_id,
            PendingRequest(
                writer=writer,
                session_id=session_id,
                command_name=command_name,
                response_type=response_type,
                timer=loop.call_later(timeout_ms / 1000, on_timeout),
                status_data=status_data,
            ),
        )

        try:
            self.worker_manager.send(worker_request)
        except (CdptapError, OSError, RuntimeError) as e:
            self.pending.remove(request_id)
            self.send_error_response(writer, session_id, response_type, str(e), status_data)
            return request_id

        logger.debug(f"Forwarded {worker_request['type']} to worker (requestId: {request_id})")
        return request_id


class QueryHandlers(BaseHandler):
    """Telemetry queries: status, peek and HAR data."""

    def __init__(self, *args, daemon_start_time: int, log_buffer: Optional[BufferHandler] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.daemon_start_time = daemon_start_time
        self.log_buffer = log_buffer

    def handle_status(self, writer, request: dict) -> None:
        session_id = request["sessionId"]
        data: dict[str, Any] = {
            "daemonPid": os.getpid(),
            "daemonStartTime": self.daemon_start_time,
            "socketPath": str(session_path("DAEMON_SOCKET")),
        }
        if request.get("verbose") and self.log_buffer is not None:
            data["recentLogs"] = self.log_buffer.tail(50)

        session_pid = read_pid(session_path("SESSION_PID"))
        if session_pid and is_process_alive(session_pid):
            data["sessionPid"] = session_pid
            if metadata := read_metadata():
                data["sessionMetadata"] = {k: metadata[k] for k in SESSION_METADATA_FIELDS if k in metadata}

        if self.has_active_worker():
            self.forward_to_worker(
                writer,
                session_id,
                "worker_status",
                {"type": "worker_status_request", "requestId": generate_request_id("worker_status")},
                status_data=data,
            )
            return

        self.send_response(writer, ok_response("status_request", session_id, data))

    def handle_peek(self, writer, request: dict) -> None:
        session_id = request["sessionId"]
        if not self.has_active_worker():
            self.send_no_worker_response(writer, session_id, "peek_request", "No active session")
            return

        worker_request: dict[str, Any] = {
            "type": "worker_peek_request",
            "requestId": generate_request_id("worker_peek"),
            "lastN": request.get("lastN", 10),
        }
        if request.get("offset"):
            worker_request["offset"] = request["offset"]
        self.forward_to_worker(writer, session_id, "worker_peek", worker_request)

    def handle_har_data(self, writer, request: dict) -> None:
        session_id = request["sessionId"]
        if not self.has_active_worker():
            self.send_no_worker_response(writer, session_id, "har_data_request", "No active session")
            return

        self.forward_to_worker(
            writer,
            session_id,
            "worker_har_data",
            {"type": "worker_har_data_request", "requestId": generate_request_id("worker_har_data")},
        )


class CommandHandlers(BaseHandler):
    """Handshake and generic forwarding of ``<command>_request`` frames."""

    def handle_handshake(self, writer, request: dict) -> None:
        self.send_response(
            writer, ok_response("handshake_request", request["sessionId"], message="Handshake successful")
        )

    def handle_command(self, writer, request: dict) -> None:
        session_id = request["sessionId"]
        command_name = command_from_type(request["type"])
        if command_name is None:
            self.send_error_response(writer, session_id, request["type"], f"Unknown command: {request['type']}")
            return

        if not self.has_active_worker():
            self.send_no_worker_response(writer, session_id, request["type"])
            return

        params = {k: v for k, v in request.items() if k not in ("type", "sessionId")}
        worker_request = {**params, "type": f"{command_name}_request", "requestId": generate_request_id(command_name)}
        self.forward_to_worker(
            writer, session_id, command_name, worker_request, timeout_ms=self.config.command_timeout_ms
        )


class SessionHandlers(BaseHandler):
    """Browser session lifecycle."""

    async def handle_start_session(self, writer, request: dict) -> None:
        session_id = request["sessionId"]
        if self.has_active_worker() or self.worker_manager.is_launching:
            pid = self.worker_manager.worker_pid
            error = f"Session already running (worker pid {pid})" if pid else "Session is already starting"
            self.send_error_response(writer, session_id, "start_session_response", error)
            return

        options = WorkerLaunchOptions(
            port=int(request.get("port") or self.config.chrome_port),
            url=request.get("url"),
            headless=bool(request.get("headless", self.config.headless)),
            timeout=request.get("timeout"),
            launch=bool(request.get("launch", True)),
            chrome_pid=request.get("chromePid"),
        )
        try:
            ready = await self.worker_manager.launch(options, self.config.worker_ready_timeout_s)
        except WorkerStartError as e:
            logger.error(f"Session start failed: {e}")
            self.send_error_response(writer, session_id, "start_session_response", str(e))
            return

        data = {k: ready.get(k) for k in ("workerPid", "chromePid", "port", "target")}
        self.send_response(writer, ok_response("start_session_request", session_id, data))

    async def handle_stop_session(self, writer, request: dict) -> None:
        session_id = request["sessionId"]
        if not self.has_active_worker():
            self.send_no_worker_response(writer, session_id, "stop_session_request", "No active session")
            return

        worker_pid = self.worker_manager.worker_pid
        await self.worker_manager.stop()
        self.send_response(writer, ok_response("stop_session_request", session_id, {"workerPid": worker_pid}))

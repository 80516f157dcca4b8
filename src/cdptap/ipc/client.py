"""Client side of the daemon socket.

Each call opens one connection, writes one request frame and reads until the
matching response arrives. Failures surface as typed IPC errors.

PUBLIC API:
  - send_request: One request/response round trip
  - validate_response: Raise IPCResponseError on status "error"
  - require_data: Extract a required field from response data
  - connect_to_daemon: Handshake
  - get_status, get_peek, get_har_data: Telemetry queries
  - get_details, call_cdp, get_network_headers: Worker commands
  - start_session, stop_session: Browser session lifecycle
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Optional

from ..config import get_config
from ..errors import (
    BufferOverflowError,
    FrameParseError,
    IPCConnectionError,
    IPCEarlyCloseError,
    IPCParseError,
    IPCResponseError,
    IPCTimeoutError,
)
from ..session import session_path
from .framing import FrameBuffer, parse_frame, to_frame
from .messages import ClientResponse, response_type

__all__ = [
    "send_request",
    "validate_response",
    "require_data",
    "connect_to_daemon",
    "get_status",
    "get_peek",
    "get_har_data",
    "get_details",
    "call_cdp",
    "get_network_headers",
    "start_session",
    "stop_session",
]

logger = logging.getLogger(__name__)

# Worker command requests whose reply uses a daemon-level response type
_EXPECTED_RESPONSE = {
    "worker_status_request": "status_response",
    "worker_peek_request": "peek_response",
    "worker_har_data_request": "har_data_response",
}


def _kind(message_type: str) -> str:
    return message_type.removesuffix("_request")


def _new_session_id() -> str:
    return str(uuid.uuid4())


async def send_request(
    message: dict[str, Any], timeout: Optional[float] = None, socket_path: Optional[Path] = None
) -> ClientResponse:
    """Send one request to the daemon and wait for its response.

    Args:
        message: Request frame with ``type`` and ``sessionId``.
        timeout: Seconds to wait. Defaults to the configured client timeout.
        socket_path: Daemon socket. Defaults to the session socket.

    Raises:
        IPCConnectionError: Socket unreachable or reset.
        IPCTimeoutError: No matching response before the deadline.
        IPCParseError: A response frame is not valid JSON.
        IPCEarlyCloseError: Daemon closed the connection first.
    """
    message_type = message["type"]
    kind = _kind(message_type)
    expected = _EXPECTED_RESPONSE.get(message_type, response_type(message_type))
    if timeout is None:
        timeout = get_config().client_timeout_ms / 1000
    path = socket_path or session_path("DAEMON_SOCKET")

    try:
        reader, writer = await asyncio.open_unix_connection(str(path))
    except OSError as e:
        raise IPCConnectionError(f"IPC {kind} connection error: {e}") from e

    try:
        writer.write(to_frame(message).encode("utf-8"))
        await writer.drain()
        return await asyncio.wait_for(_read_response(reader, kind, message["sessionId"], expected), timeout)
    except asyncio.TimeoutError:
        raise IPCTimeoutError(f"{kind} request timeout after {timeout:g}s") from None
    except (ConnectionResetError, BrokenPipeError) as e:
        raise IPCConnectionError(f"IPC {kind} connection error: {e}") from e
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


async def _read_response(reader: asyncio.StreamReader, kind: str, session_id: str, expected: str) -> ClientResponse:
    buffer = FrameBuffer()
    while True:
        chunk = await reader.read(65536)
        if not chunk:
            raise IPCEarlyCloseError(f"Daemon closed the connection before the {kind} response")
        try:
            lines = buffer.process(chunk)
        except BufferOverflowError as e:
            raise IPCParseError(f"Failed to parse {kind} response: {e}") from e

        for line in lines:
            try:
                response = parse_frame(line)
            except FrameParseError as e:
                raise IPCParseError(f"Failed to parse {kind} response") from e
            if not isinstance(response, dict):
                raise IPCParseError(f"Failed to parse {kind} response")
            if response.get("sessionId") == session_id and response.get("type") == expected:
                return response  # type: ignore[return-value]
            logger.debug(f"Skipping unrelated frame {response.get('type')} while waiting for {expected}")


def validate_response(response: ClientResponse) -> ClientResponse:
    """Return the response unchanged, or raise if the daemon reported an error."""
    if response.get("status") == "error":
        raise IPCResponseError(response.get("error") or "Unknown daemon error")
    return response


def require_data(response: ClientResponse, field: str, description: str) -> Any:
    """Extract ``data[field]``.

    Raises:
        IPCResponseError: On an error response or a missing field.
    """
    data = validate_response(response).get("data") or {}
    if field not in data:
        raise IPCResponseError(f"Response is missing {description}")
    return data[field]


async def _request(message_type: str, *, ipc_timeout: Optional[float] = None, **fields) -> ClientResponse:
    message = {"type": message_type, "sessionId": _new_session_id()}
    message.update({k: v for k, v in fields.items() if v is not None})
    return await send_request(message, ipc_timeout)


async def connect_to_daemon(timeout: Optional[float] = None) -> ClientResponse:
    return validate_response(await _request("handshake_request", ipc_timeout=timeout))


async def get_status(verbose: bool = False) -> ClientResponse:
    """Daemon status, enriched with live worker activity when a session runs.

    Status error responses may still carry partial data, so they are returned
    rather than raised.
    """
    return await _request("status_request", verbose=verbose or None)


async def get_peek(last_n: Optional[int] = 10, offset: Optional[int] = None) -> ClientResponse:
    return validate_response(await _request("peek_request", lastN=last_n, offset=offset))


async def get_har_data() -> ClientResponse:
    return validate_response(await _request("har_data_request"))


async def get_details(kind: str, item_id: str | int) -> ClientResponse:
    return validate_response(await _request("worker_details_request", itemType=kind, id=item_id))


async def call_cdp(method: str, params: Optional[dict[str, Any]] = None) -> ClientResponse:
    return validate_response(await _request("cdp_call_request", method=method, params=params or {}))


async def get_network_headers(request_id: Optional[str] = None, header_name: Optional[str] = None) -> ClientResponse:
    return validate_response(
        await _request("worker_network_headers_request", id=request_id, headerName=header_name)
    )


async def start_session(
    url: Optional[str] = None,
    port: Optional[int] = None,
    headless: Optional[bool] = None,
    timeout: Optional[float] = None,
    launch: Optional[bool] = None,
    chrome_pid: Optional[int] = None,
) -> ClientResponse:
    """Ask the daemon to launch a worker and wait until it is ready."""
    return validate_response(
        await _request(
            "start_session_request",
            url=url,
            port=port,
            headless=headless,
            timeout=timeout,
            launch=launch,
            chromePid=chrome_pid,
        )
    )


async def stop_session() -> ClientResponse:
    return validate_response(await _request("stop_session_request"))

"""Message schema for the client↔daemon and daemon↔worker channels.

Messages are a tagged union discriminated by ``type``. Client messages carry
a ``sessionId`` chosen by the client and echoed back unchanged; worker messages
carry a daemon-generated ``requestId``.

PUBLIC API:
  - DAEMON_REQUEST_TYPES: Request types answered or orchestrated by the daemon
  - COMMANDS: Worker dispatch table keys
  - validate_client_message: Minimal shape check at the deserialization boundary
  - classify_message_type: Route a type tag to "daemon", "command" or "response"
  - response_type: Map ``x_request`` to ``x_response``
  - command_from_type: Extract the command name from a request/response type
  - generate_request_id: Daemon-unique worker request id
  - ok_response / error_response: Client response builders
"""

import itertools
import secrets
from typing import Any, Literal, NotRequired, TypeAlias, TypedDict

from ..errors import MessageValidationError, UnknownMessageTypeError

__all__ = [
    "DAEMON_REQUEST_TYPES",
    "COMMANDS",
    "CommandName",
    "ClientMessage",
    "ClientResponse",
    "WorkerRequest",
    "WorkerResponse",
    "WorkerReadyMessage",
    "validate_client_message",
    "classify_message_type",
    "response_type",
    "command_from_type",
    "generate_request_id",
    "ok_response",
    "error_response",
]

CommandName: TypeAlias = Literal[
    "worker_status",
    "worker_peek",
    "worker_har_data",
    "worker_details",
    "cdp_call",
    "worker_network_headers",
]

COMMANDS: tuple[str, ...] = (
    "worker_status",
    "worker_peek",
    "worker_har_data",
    "worker_details",
    "cdp_call",
    "worker_network_headers",
)

DAEMON_REQUEST_TYPES: tuple[str, ...] = (
    "handshake_request",
    "status_request",
    "peek_request",
    "har_data_request",
    "start_session_request",
    "stop_session_request",
)


class ClientMessage(TypedDict):
    """Any client request frame: ``{type, sessionId, ...fields}``."""

    type: str
    sessionId: str


class ClientResponse(TypedDict):
    """Any daemon response frame."""

    type: str
    sessionId: str
    status: Literal["ok", "error"]
    data: NotRequired[dict[str, Any]]
    error: NotRequired[str]
    message: NotRequired[str]


class WorkerRequest(TypedDict):
    """Daemon to worker request: ``{type: "<command>_request", requestId, ...params}``."""

    type: str
    requestId: str


class WorkerResponse(TypedDict):
    """Worker to daemon response."""

    type: str
    requestId: str
    success: bool
    data: NotRequired[dict[str, Any]]
    error: NotRequired[str]


class WorkerReadyMessage(TypedDict):
    """First frame a worker writes once its browser session is live."""

    type: Literal["worker_ready"]
    requestId: Literal["ready"]
    workerPid: int
    chromePid: int
    port: int
    target: dict[str, str]


def validate_client_message(obj: Any) -> ClientMessage:
    """Check the minimal shape every client frame must have.

    Raises:
        MessageValidationError: If ``type`` is not a string or ``sessionId`` is missing.
    """
    if not isinstance(obj, dict):
        raise MessageValidationError(f"Expected a JSON object, got {type(obj).__name__}")
    if not isinstance(obj.get("type"), str):
        raise MessageValidationError("Message is missing a string 'type' field")
    if "sessionId" not in obj:
        raise MessageValidationError("Message is missing the 'sessionId' field")
    return obj  # type: ignore[return-value]


def command_from_type(message_type: str) -> str | None:
    """Extract ``worker_peek`` from ``worker_peek_request``/``worker_peek_response``."""
    for suffix in ("_request", "_response"):
        if message_type.endswith(suffix):
            name = message_type[: -len(suffix)]
            return name if name in COMMANDS else None
    return None


def classify_message_type(message_type: str) -> Literal["daemon", "command", "response"]:
    """Decide how the daemon routes a client frame.

    Raises:
        UnknownMessageTypeError: If the tag is not part of the protocol.
    """
    if message_type in DAEMON_REQUEST_TYPES:
        return "daemon"
    if message_type.endswith("_request") and command_from_type(message_type):
        return "command"
    if message_type.endswith("_response"):
        return "response"
    raise UnknownMessageTypeError(f"Unknown message type: {message_type}")


def response_type(request_type: str) -> str:
    """Map a request type to its response type. Response types map to themselves."""
    if request_type.endswith("_response"):
        return request_type
    if request_type.endswith("_request"):
        return request_type[: -len("_request")] + "_response"
    return request_type + "_response"


_request_counter = itertools.count(1)


def generate_request_id(command: str) -> str:
    """Build a request id unique for the lifetime of this process."""
    return f"{command}_{next(_request_counter)}_{secrets.token_hex(4)}"


def ok_response(message_type: str, session_id: str, data: dict[str, Any] | None = None, **fields) -> ClientResponse:
    """Build a success response for ``message_type`` (request or response tag)."""
    response: dict[str, Any] = {"type": response_type(message_type), "sessionId": session_id, "status": "ok"}
    if data is not None:
        response["data"] = data
    response.update(fields)
    return response  # type: ignore[return-value]


def error_response(
    message_type: str, session_id: str, error: str, data: dict[str, Any] | None = None
) -> ClientResponse:
    """Build an error response, optionally carrying partial data."""
    response: dict[str, Any] = {
        "type": response_type(message_type),
        "sessionId": session_id,
        "status": "error",
        "error": error,
    }
    if data is not None:
        response["data"] = data
    return response  # type: ignore[return-value]

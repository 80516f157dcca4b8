"""Inter-process communication between CLI clients, the daemon and the worker.

PUBLIC API:
  - FrameBuffer, to_frame, parse_frame: JSONL framing
  - COMMANDS, DAEMON_REQUEST_TYPES: Protocol tables
  - DaemonClient helpers live in cdptap.ipc.client
"""

from .framing import MAX_FRAME_BUFFER_SIZE, FrameBuffer, parse_frame, to_frame
from .messages import (
    COMMANDS,
    DAEMON_REQUEST_TYPES,
    classify_message_type,
    command_from_type,
    error_response,
    generate_request_id,
    ok_response,
    response_type,
    validate_client_message,
)

__all__ = [
    "MAX_FRAME_BUFFER_SIZE",
    "FrameBuffer",
    "parse_frame",
    "to_frame",
    "COMMANDS",
    "DAEMON_REQUEST_TYPES",
    "classify_message_type",
    "command_from_type",
    "error_response",
    "generate_request_id",
    "ok_response",
    "response_type",
    "validate_client_message",
]

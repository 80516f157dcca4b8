"""Exception hierarchy for cdptap.

Every error carries a stable ``kind`` string so callers on the far side of a
process boundary can branch on it (retry on ``timeout``, not on ``parse``).

PUBLIC API:
  - CdptapError: Base exception for all cdptap errors
  - IPCError: Base for client-side IPC transport failures
  - IPCConnectionError: Daemon socket unreachable
  - IPCTimeoutError: No response before the deadline
  - IPCParseError: Response frame is not valid JSON
  - IPCEarlyCloseError: Daemon closed the socket mid-response
  - IPCResponseError: Daemon answered with status "error"
  - BufferOverflowError: Peer streamed data without a newline
  - FrameParseError: A frame is not valid JSON
  - NotFoundError: Unknown item id or index
  - UnknownItemKindError: Discriminator outside a known enumeration
  - UnknownCommandError: Command name not in the dispatch table
  - UnknownMessageTypeError: Message tag not recognized
  - MessageValidationError: Message missing required fields
  - DuplicateRequestError: Request id already pending
  - CDPError: Browser returned a protocol error
  - CDPConnectionClosedError: CDP transport closed with calls in flight
  - CDPTimeoutError: CDP call exceeded its timeout
  - WorkerError: Base for worker process failures
  - WorkerStartError: Worker failed to become ready
  - WorkerUnavailableError: No live worker to send to
  - DaemonLockError: Another daemon holds the startup lock
  - ChromeLaunchError: Chrome could not be started
"""

from typing import Iterable

__all__ = [
    "CdptapError",
    "IPCError",
    "IPCConnectionError",
    "IPCTimeoutError",
    "IPCParseError",
    "IPCEarlyCloseError",
    "IPCResponseError",
    "BufferOverflowError",
    "FrameParseError",
    "NotFoundError",
    "UnknownItemKindError",
    "UnknownCommandError",
    "UnknownMessageTypeError",
    "MessageValidationError",
    "DuplicateRequestError",
    "CDPError",
    "CDPConnectionClosedError",
    "CDPTimeoutError",
    "WorkerError",
    "WorkerStartError",
    "WorkerUnavailableError",
    "DaemonLockError",
    "ChromeLaunchError",
]


class CdptapError(Exception):
    """Base exception for all cdptap errors."""

    kind = "error"


class IPCError(CdptapError):
    """Base exception for client-side IPC failures."""

    kind = "ipc"


class IPCConnectionError(IPCError):
    """Raised when the daemon socket cannot be reached."""

    kind = "connection"


class IPCTimeoutError(IPCError):
    """Raised when the daemon does not answer before the deadline."""

    kind = "timeout"


class IPCParseError(IPCError):
    """Raised when a response frame cannot be parsed."""

    kind = "parse"


class IPCEarlyCloseError(IPCError):
    """Raised when the daemon closes the connection before responding."""

    kind = "early_close"


class IPCResponseError(IPCError):
    """Raised when the daemon answers with status "error"."""

    kind = "response"


class BufferOverflowError(CdptapError):
    """Raised when buffered input exceeds the frame size limit."""

    kind = "buffer_overflow"

    def __init__(self, buffer_size: int, max_size: int):
        super().__init__(
            f"Frame buffer overflow: {buffer_size} bytes exceeds maximum {max_size} bytes. "
            "Peer is sending data without newlines."
        )
        self.buffer_size = buffer_size
        self.max_size = max_size


class FrameParseError(CdptapError, ValueError):
    """Raised when a single frame cannot be decoded as JSON."""

    kind = "parse"

    def __init__(self, line: str, reason: str):
        preview = line if len(line) <= 200 else line[:200] + "..."
        super().__init__(f"Invalid JSON frame ({reason}): {preview}")
        self.line = line


class NotFoundError(CdptapError):
    """Raised when an item id, index or command cannot be found."""

    kind = "not_found"


class UnknownItemKindError(NotFoundError):
    """Raised when a discriminator value is outside its enumeration."""

    def __init__(self, what: str, got: object, expected: Iterable[str]):
        choices = ", ".join(repr(e) for e in expected)
        super().__init__(f"unknown {what}: got {got!r}, expected one of {choices}")
        self.got = got


class UnknownCommandError(UnknownItemKindError):
    """Raised when a command is not in the dispatch table."""

    def __init__(self, got: object, expected: Iterable[str]):
        super().__init__("command", got, expected)


class UnknownMessageTypeError(CdptapError):
    """Raised when a message type tag is not recognized."""

    kind = "unknown_type"


class MessageValidationError(CdptapError):
    """Raised when a message lacks required fields."""

    kind = "invalid_message"


class DuplicateRequestError(CdptapError):
    """Raised when a request id is registered while still pending."""

    kind = "duplicate_request"


class CDPError(CdptapError):
    """Raised when the browser answers a call with an error object."""

    kind = "cdp"

    def __init__(self, method: str, code: int | None, message: str):
        super().__init__(f"CDP {method} failed: {message}" + (f" (code {code})" if code is not None else ""))
        self.method = method
        self.code = code
        self.cdp_message = message


class CDPConnectionClosedError(CdptapError):
    """Raised for calls still in flight when the CDP transport closes."""

    kind = "connection_closed"


class CDPTimeoutError(CdptapError):
    """Raised when a CDP call exceeds its timeout."""

    kind = "timeout"


class WorkerError(CdptapError):
    """Base exception for worker process failures."""

    kind = "worker"


class WorkerStartError(WorkerError):
    """Raised when the worker exits or stalls before signalling ready."""


class WorkerUnavailableError(WorkerError):
    """Raised when sending to a worker that is not running."""


class DaemonLockError(CdptapError):
    """Raised when another daemon holds the startup lock."""

    kind = "locked"


class ChromeLaunchError(CdptapError):
    """Raised when Chrome cannot be found or started."""

    kind = "chrome_launch"

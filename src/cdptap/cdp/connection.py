"""CDP connection - one WebSocket, request correlation and event fan-out.

WebSocketApp owns the socket on its own thread. Every frame is parsed there
and handed to the asyncio loop with call_soon_threadsafe, so pending calls and
event handlers are only ever touched from the loop thread.

PUBLIC API:
  - CDPConnection: Connect, send, subscribe, close
"""

import asyncio
import inspect
import json
import logging
import threading
from typing import Any, Callable, TypeAlias

import websocket

from ..errors import CDPConnectionClosedError, CDPError, CDPTimeoutError

__all__ = ["CDPConnection", "EventHandler"]

logger = logging.getLogger(__name__)

EventHandler: TypeAlias = Callable[[dict], Any]


class CDPConnection:
    """Single CDP WebSocket connection bridged into asyncio.

    Attributes:
        ws_url: Debugger URL of the connected target.
        closed: Set once the transport is gone, for whatever reason.
    """

    def __init__(self, ws_factory: Callable[..., Any] = websocket.WebSocketApp):
        """Initialize connection.

        Args:
            ws_factory: WebSocketApp-compatible constructor.
        """
        self._ws_factory = ws_factory
        self.ws_url: str | None = None
        self.ws_app: Any = None
        self.ws_thread: threading.Thread | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._opened: asyncio.Event | None = None
        self.closed = asyncio.Event()

        # CDP request/response tracking
        self._next_id = 1
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}

        # Event name -> handlers, in registration order
        self._handlers: dict[str, list[EventHandler]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_connected(self) -> bool:
        """True between a successful connect() and close/transport loss."""
        return self.ws_app is not None and not self.closed.is_set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self, ws_url: str, timeout: float = 5.0) -> None:
        """Open the WebSocket and wait for it to be ready.

        Args:
            ws_url: Target webSocketDebuggerUrl.
            timeout: Seconds to wait for the socket to open.

        Raises:
            RuntimeError: If already connected.
            CDPConnectionClosedError: If the socket does not open in time.
        """
        if self.ws_app:
            raise RuntimeError("Already connected")

        self._loop = asyncio.get_running_loop()
        self._opened = asyncio.Event()
        self.closed.clear()
        self.ws_url = ws_url

        self.ws_app = self._ws_factory(
            ws_url,
            on_open=self._on_open,
            on_message=self._on_message,
            on_error=self._on_error,
            on_close=self._on_close,
        )

        self.ws_thread = threading.Thread(
            target=self.ws_app.run_forever,
            kwargs={
                "ping_interval": 30,
                "ping_timeout": 10,
                "skip_utf8_validation": True,
            },
            name="cdp-websocket",
        )
        self.ws_thread.daemon = True
        self.ws_thread.start()

        opened = asyncio.ensure_future(self._opened.wait())
        lost = asyncio.ensure_future(self.closed.wait())
        try:
            await asyncio.wait({opened, lost}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            opened.cancel()
            lost.cancel()

        if not self._opened.is_set():
            self.close()
            raise CDPConnectionClosedError(f"Failed to connect to {ws_url}")

        logger.info(f"Connected to {ws_url}")

    async def send(self, method: str, params: dict | None = None, timeout: float | None = None) -> dict:
        """Send a CDP command and wait for its result.

        Args:
            method: CDP method (e.g. "Page.navigate").
            params: Optional parameters.
            timeout: Seconds to wait. None waits until the transport closes.

        Returns:
            The 'result' object of the response.

        Raises:
            CDPError: Browser answered with an error object.
            CDPTimeoutError: No answer within timeout.
            CDPConnectionClosedError: Not connected, or the transport closed.
        """
        if not self.is_connected:
            raise CDPConnectionClosedError(f"Not connected (sending {method})")

        msg_id = self._next_id
        self._next_id += 1

        future = self._loop.create_future()
        self._pending[msg_id] = (method, future)

        message: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            message["params"] = params

        try:
            self.ws_app.send(json.dumps(message))
        except Exception as e:
            self._pending.pop(msg_id, None)
            raise CDPConnectionClosedError(f"Failed to send {method}: {e}") from e

        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self._pending.pop(msg_id, None)
            raise CDPTimeoutError(f"CDP {method} timed out after {timeout}s") from None

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to a CDP event.

        Handlers receive the event params. A handler returning an awaitable is
        scheduled as a task.

        Returns:
            Idempotent unsubscribe function.
        """
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._handlers[event]

        return unsubscribe

    def close(self) -> None:
        """Close the socket, fail pending calls and drop every handler."""
        ws_app, self.ws_app = self.ws_app, None
        if ws_app is not None:
            try:
                ws_app.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

        if self.ws_thread and self.ws_thread.is_alive() and self.ws_thread is not threading.current_thread():
            self.ws_thread.join(timeout=2)
        self.ws_thread = None

        self._fail_pending("Connection closed")
        self._handlers.clear()
        for task in list(self._tasks):
            task.cancel()
        self.closed.set()

    # Socket thread callbacks

    def _post(self, callback: Callable, *args) -> None:
        """Run callback on the loop thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def _on_open(self, ws):
        self._post(self._handle_open)

    def _on_message(self, ws, message):
        try:
            data = json.loads(message)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed CDP frame: {e}")
            return
        self._post(self._handle_frame, data)

    def _on_error(self, ws, error):
        logger.error(f"WebSocket error: {error}")

    def _on_close(self, ws, code, reason):
        logger.info(f"WebSocket closed: {code} {reason}")
        self._post(self._handle_close, code, reason)

    # Loop thread

    def _handle_open(self) -> None:
        if self._opened is not None:
            self._opened.set()

    def _handle_close(self, code, reason) -> None:
        self._fail_pending(f"Connection closed ({code} {reason})" if code else "Connection closed")
        self.closed.set()

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for method, future in pending.values():
            if not future.done():
                future.set_exception(CDPConnectionClosedError(f"{reason} while waiting for {method}"))

    def _handle_frame(self, data: dict) -> None:
        if "id" in data:
            entry = self._pending.pop(data["id"], None)
            if entry is None:
                logger.debug(f"Response for unknown CDP id {data['id']}")
                return
            method, future = entry
            if future.done():
                return
            if "error" in data:
                error = data["error"] or {}
                future.set_exception(CDPError(method, error.get("code"), error.get("message", str(error))))
            else:
                future.set_result(data.get("result", {}))
            return

        method = data.get("method")
        if not method:
            return

        params = data.get("params", {})
        # Copy so handlers may unsubscribe while we iterate
        for handler in list(self._handlers.get(method, ())):
            try:
                result = handler(params)
            except Exception as e:
                logger.error(f"Handler for {method} failed: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if exc := task.exception():
            logger.error(f"Async event handler failed: {exc}")

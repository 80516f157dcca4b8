"""Bounded in-memory telemetry store owned by the worker.

Network requests and console messages live in ring buffers. When a buffer is
full the oldest entry is evicted and counted, so a long session keeps the most
recent activity with constant memory.

PUBLIC API:
  - TelemetryStore: Ring buffers, id index and session facts
  - PeekResult: Snapshot returned by peek()
  - DEFAULT_MAX_ITEMS: Default capacity of each buffer
"""

import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..errors import NotFoundError, UnknownItemKindError
from .models import ConsoleMessage, NetworkRequest

__all__ = ["TelemetryStore", "PeekResult", "DEFAULT_MAX_ITEMS", "ITEM_KINDS", "now_ms"]

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = 10000
ITEM_KINDS = ("network", "console")


def now_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class PeekResult:
    """Most recent items of each kind, oldest first."""

    network: list[NetworkRequest] = field(default_factory=list)
    console: list[ConsoleMessage] = field(default_factory=list)
    total_network: int = 0
    total_console: int = 0
    has_more_network: bool = False
    has_more_console: bool = False


def _slice_bounds(total: int, count: Optional[int], offset: int) -> tuple[int, int]:
    """Window of ``count`` items ending ``offset`` items before the newest."""
    end = max(0, total - offset)
    start = 0 if count is None else max(0, end - count)
    return start, end


class TelemetryStore:
    """Telemetry captured for one browser session.

    Attributes:
        max_network: Network buffer capacity.
        max_console: Console buffer capacity.
        dropped_network: Network requests evicted so far.
        dropped_console: Console messages evicted so far.
        session_start_time: Epoch ms when the session started.
        target_info: Page url/title.
        active_telemetry: Names of running collectors.
        page_state: Load progress of the current document.
    """

    def __init__(self, max_network: int = DEFAULT_MAX_ITEMS, max_console: int = DEFAULT_MAX_ITEMS):
        if max_network < 1 or max_console < 1:
            raise ValueError("Buffer capacity must be at least 1")
        self.max_network = max_network
        self.max_console = max_console
        self._network: deque[NetworkRequest] = deque(maxlen=max_network)
        self._console: deque[ConsoleMessage] = deque(maxlen=max_console)
        self._by_request_id: dict[str, NetworkRequest] = {}
        self.reset()

    def reset(self) -> None:
        """Clear all telemetry and start a new session clock."""
        self._network.clear()
        self._console.clear()
        self._by_request_id.clear()
        self.dropped_network = 0
        self.dropped_console = 0
        self.session_start_time = now_ms()
        self.target_info: dict[str, str] = {"url": "", "title": ""}
        self.active_telemetry: list[str] = []
        self.page_state: dict[str, Any] = {"readyState": "loading"}
        self.navigation_id = 0

    # Session facts

    def next_navigation(self) -> int:
        """Advance and return the navigation id."""
        self.navigation_id += 1
        return self.navigation_id

    def set_target(self, url: str, title: str = "") -> None:
        self.target_info = {"url": url, "title": title}

    # Writes

    def push_network_request(self, request: NetworkRequest) -> None:
        """Append a request, evicting the oldest if full."""
        if len(self._network) == self.max_network:
            evicted = self._network[0]
            if self._by_request_id.get(evicted.request_id) is evicted:
                del self._by_request_id[evicted.request_id]
            self.dropped_network += 1
            if self.dropped_network == 1:
                logger.info(f"Network buffer full ({self.max_network}), evicting oldest requests")
        self._network.append(request)
        self._by_request_id[request.request_id] = request

    def push_console_message(self, message: ConsoleMessage) -> None:
        """Append a console message, evicting the oldest if full."""
        if len(self._console) == self.max_console:
            self.dropped_console += 1
            if self.dropped_console == 1:
                logger.info(f"Console buffer full ({self.max_console}), evicting oldest messages")
        self._console.append(message)

    # Reads

    @property
    def network_count(self) -> int:
        return len(self._network)

    @property
    def console_count(self) -> int:
        return len(self._console)

    def get_network_request(self, request_id: str) -> Optional[NetworkRequest]:
        """Latest request with this id, None if unknown or evicted."""
        return self._by_request_id.get(request_id)

    def last_network_request(self) -> Optional[NetworkRequest]:
        return self._network[-1] if self._network else None

    def last_console_message(self) -> Optional[ConsoleMessage]:
        return self._console[-1] if self._console else None

    def find_latest_request(self, predicate: Callable[[NetworkRequest], bool]) -> Optional[NetworkRequest]:
        """Newest request matching predicate."""
        return next((r for r in reversed(self._network) if predicate(r)), None)

    def peek(self, last_n: Optional[int] = None, offset: int = 0) -> PeekResult:
        """Return up to ``last_n`` most recent items of each kind.

        Args:
            last_n: Items per kind. None returns everything.
            offset: Skip this many of the newest items first.
        """
        offset = max(0, offset)
        total_network = len(self._network)
        total_console = len(self._console)
        net_start, net_end = _slice_bounds(total_network, last_n, offset)
        con_start, con_end = _slice_bounds(total_console, last_n, offset)

        return PeekResult(
            network=list(itertools.islice(self._network, net_start, net_end)),
            console=list(itertools.islice(self._console, con_start, con_end)),
            total_network=total_network,
            total_console=total_console,
            has_more_network=net_start > 0,
            has_more_console=con_start > 0,
        )

    def find_by_id(self, kind: str, item_id: Any) -> NetworkRequest | ConsoleMessage:
        """Look up one item.

        Network requests are found by requestId, console messages by their
        position in the buffer.

        Raises:
            UnknownItemKindError: kind is not "network" or "console".
            NotFoundError: No such item.
        """
        if kind == "network":
            request = self._by_request_id.get(str(item_id))
            if request is None:
                raise NotFoundError(f"Network request not found: {item_id}")
            return request

        if kind == "console":
            total = len(self._console)
            try:
                index = int(item_id)
            except (TypeError, ValueError):
                index = -1
            if 0 <= index < total:
                return self._console[index]
            if total == 0:
                raise NotFoundError(f"Console message not found at index: {item_id} (no console messages captured)")
            raise NotFoundError(f"Console message not found at index: {item_id} (available: 0-{total - 1})")

        raise UnknownItemKindError("item kind", kind, ITEM_KINDS)

    def export_all(self) -> list[dict[str, Any]]:
        """Every stored network request as a dict, oldest first."""
        return [r.to_dict() for r in self._network]

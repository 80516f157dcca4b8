"""Pending request correlator.

Tracks every request forwarded to the worker until exactly one of three
things happens: the worker answers, the timer fires, or the worker exits.
Whoever removes the entry first owns the reply; later removals get None.

PUBLIC API:
  - PendingRequest: One in-flight worker request
  - PendingRequests: requestId -> PendingRequest table
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from ..errors import DuplicateRequestError

__all__ = ["PendingRequest", "PendingRequests"]

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """Routing info for one worker request.

    Attributes:
        writer: Client connection to answer on.
        session_id: Client's sessionId, echoed in the reply.
        command_name: Worker command (e.g. "worker_peek").
        response_type: Client-facing response type (e.g. "peek_response").
        timer: Timeout handle, cancelled on removal.
        status_data: Partial status data to return if the worker fails.
    """

    writer: Any
    session_id: str
    command_name: str
    response_type: str
    timer: Optional[asyncio.TimerHandle] = None
    status_data: Optional[dict[str, Any]] = None
    created_at: float = field(default_factory=time.monotonic)


class PendingRequests:
    """Table of in-flight worker requests keyed by requestId."""

    def __init__(self):
        self._entries: dict[str, PendingRequest] = {}

    def add(self, request_id: str, entry: PendingRequest) -> None:
        """Register a request.

        Raises:
            DuplicateRequestError: If request_id is already pending.
        """
        if request_id in self._entries:
            raise DuplicateRequestError(f"Request {request_id} is already pending")
        self._entries[request_id] = entry

    def remove(self, request_id: str) -> Optional[PendingRequest]:
        """Take a request out of the table and cancel its timer.

        Returns:
            The entry, or None if it was already resolved.
        """
        entry = self._entries.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def get(self, request_id: str) -> Optional[PendingRequest]:
        return self._entries.get(request_id)

    def items(self) -> list[tuple[str, PendingRequest]]:
        """Snapshot, safe to iterate while removing."""
        return list(self._entries.items())

    def clear(self) -> list[tuple[str, PendingRequest]]:
        """Remove everything, cancelling timers. Returns what was pending."""
        drained = self.items()
        for request_id, _ in drained:
            self.remove(request_id)
        return drained

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

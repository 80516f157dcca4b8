"""Captured telemetry records.

PUBLIC API:
  - NetworkRequest: One HTTP request, updated in place over its lifecycle
  - ConsoleMessage: One console call or uncaught exception
  - StackFrame: Source location of a console call
"""

from dataclasses import dataclass, field, fields
from typing import Any, Optional

__all__ = ["NetworkRequest", "ConsoleMessage", "StackFrame"]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _to_camel_dict(obj) -> dict[str, Any]:
    """Dataclass fields as camelCase keys, None values omitted."""
    out = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        if isinstance(value, list):
            value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
        out[_camel(f.name)] = value
    return out


@dataclass
class StackFrame:
    url: str
    line_number: int
    column_number: int
    function_name: Optional[str] = None
    script_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return _to_camel_dict(self)


@dataclass
class NetworkRequest:
    """HTTP request as seen through the Network domain.

    Created on ``requestWillBeSent`` and filled in by later lifecycle events,
    so an in-flight request has no status yet and ``finished`` is False.
    """

    request_id: str
    url: str
    method: str
    timestamp: float
    status: Optional[int] = None
    mime_type: Optional[str] = None
    resource_type: Optional[str] = None
    request_headers: Optional[dict[str, str]] = None
    response_headers: Optional[dict[str, str]] = None
    request_body: Optional[str] = None
    response_body: Optional[str] = None
    encoded_data_length: Optional[float] = None
    timing: Optional[dict[str, float]] = None
    server_ip_address: Optional[str] = None
    loading_finished_time: Optional[float] = None
    error_text: Optional[str] = None
    canceled: Optional[bool] = None
    blocked_reason: Optional[str] = None
    navigation_id: Optional[int] = None
    finished: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = _to_camel_dict(self)
        # CDP spelling
        if "serverIpAddress" in data:
            data["serverIPAddress"] = data.pop("serverIpAddress")
        return data

    def to_preview(self) -> dict[str, Any]:
        """Compact form for peek listings."""
        preview: dict[str, Any] = {
            "requestId": self.request_id,
            "timestamp": self.timestamp,
            "method": self.method,
            "url": self.url,
        }
        if self.status is not None:
            preview["status"] = self.status
        if self.mime_type is not None:
            preview["mimeType"] = self.mime_type
        if self.resource_type is not None:
            preview["resourceType"] = self.resource_type
        return preview


@dataclass
class ConsoleMessage:
    type: str
    text: str
    timestamp: float
    args: list[Any] = field(default_factory=list)
    navigation_id: Optional[int] = None
    stack_trace: Optional[list[StackFrame]] = None

    def to_dict(self) -> dict[str, Any]:
        return _to_camel_dict(self)

    def to_preview(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text, "timestamp": self.timestamp}

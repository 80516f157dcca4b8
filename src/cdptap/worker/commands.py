"""Worker command dispatch table.

Each handler takes the CDP connection and the request params and returns the
response data. Handlers raise on failure; dispatch() turns the exception into
a ``success: false`` response.

PUBLIC API:
  - create_command_registry: Build the handler table over a store
  - dispatch: Run one worker request against the table
  - MAX_PEEK_ITEMS / DEFAULT_PEEK_ITEMS: Peek limits
"""

import logging
from typing import Any, Awaitable, Callable, Optional, TypeAlias

from .. import __version__
from ..errors import NotFoundError, UnknownCommandError
from ..ipc.messages import WorkerResponse, command_from_type, response_type
from ..telemetry.models import NetworkRequest
from ..telemetry.store import TelemetryStore, now_ms

__all__ = ["create_command_registry", "dispatch", "CommandRegistry", "MAX_PEEK_ITEMS", "DEFAULT_PEEK_ITEMS"]

logger = logging.getLogger(__name__)

MAX_PEEK_ITEMS = 10000
DEFAULT_PEEK_ITEMS = 10

Handler: TypeAlias = Callable[[Any, dict], Awaitable[dict]]
CommandRegistry: TypeAlias = dict[str, Handler]


def effective_last_n(requested: Optional[int]) -> Optional[int]:
    """0 means everything, missing means the default, anything else is capped."""
    if requested == 0:
        return None
    if requested is None:
        return DEFAULT_PEEK_ITEMS
    return max(0, min(int(requested), MAX_PEEK_ITEMS))


def filter_headers(headers: dict[str, str], name: str) -> dict[str, str]:
    """Keep headers matching name case-insensitively, original casing preserved."""
    wanted = name.lower()
    return {k: v for k, v in headers.items() if k.lower() == wanted}


def find_headers_target(store: TelemetryStore, request_id: Optional[str]) -> NetworkRequest:
    """Pick the request whose headers to show.

    Explicit id first. Otherwise the latest Document of the current
    navigation, then the latest HTML response, then the latest request that
    has response headers at all.
    """
    if request_id:
        request = store.get_network_request(request_id)
        if request is None:
            raise NotFoundError(f"Network request not found: {request_id}")
        return request

    navigation_id = store.navigation_id
    for predicate in (
        lambda r: r.navigation_id == navigation_id and r.resource_type == "Document",
        lambda r: "html" in (r.mime_type or ""),
        lambda r: bool(r.response_headers),
    ):
        if request := store.find_latest_request(predicate):
            return request

    raise NotFoundError("No network requests with headers found")


def create_command_registry(store: TelemetryStore) -> CommandRegistry:
    """Build the command table bound to a telemetry store."""

    def target() -> dict[str, str]:
        return {"url": store.target_info.get("url", ""), "title": store.target_info.get("title", "")}

    async def worker_status(cdp, params: dict) -> dict:
        activity: dict[str, Any] = {
            "networkRequestsCaptured": store.network_count,
            "consoleMessagesCaptured": store.console_count,
        }
        if last := store.last_network_request():
            activity["lastNetworkRequestAt"] = last.timestamp
        if last := store.last_console_message():
            activity["lastConsoleMessageAt"] = last.timestamp
        if store.dropped_network or store.dropped_console:
            activity["droppedNetworkRequests"] = store.dropped_network
            activity["droppedConsoleMessages"] = store.dropped_console

        return {
            "startTime": store.session_start_time,
            "duration": now_ms() - store.session_start_time,
            "target": target(),
            "activeTelemetry": list(store.active_telemetry),
            "activity": activity,
            "pageState": dict(store.page_state),
            "navigationId": store.navigation_id,
        }

    async def worker_peek(cdp, params: dict) -> dict:
        result = store.peek(effective_last_n(params.get("lastN")), int(params.get("offset") or 0))
        return {
            "version": __version__,
            "startTime": store.session_start_time,
            "duration": now_ms() - store.session_start_time,
            "target": target(),
            "activeTelemetry": list(store.active_telemetry),
            "network": [r.to_preview() for r in result.network],
            "console": [m.to_preview() for m in result.console],
            "totalNetwork": result.total_network,
            "totalConsole": result.total_console,
            "hasMoreNetwork": result.has_more_network,
            "hasMoreConsole": result.has_more_console,
        }

    async def worker_har_data(cdp, params: dict) -> dict:
        return {"requests": store.export_all()}

    async def worker_details(cdp, params: dict) -> dict:
        item = store.find_by_id(params.get("itemType"), params.get("id"))
        return {"item": item.to_dict()}

    async def cdp_call(cdp, params: dict) -> dict:
        method = params.get("method")
        if not method:
            raise ValueError("cdp_call requires 'method'")
        result = await cdp.send(method, params.get("params") or {})
        return {"result": result}

    async def worker_network_headers(cdp, params: dict) -> dict:
        request = find_headers_target(store, params.get("id"))
        request_headers = dict(request.request_headers or {})
        response_headers = dict(request.response_headers or {})
        if header_name := params.get("headerName"):
            request_headers = filter_headers(request_headers, header_name)
            response_headers = filter_headers(response_headers, header_name)
        return {
            "url": request.url,
            "requestId": request.request_id,
            "requestHeaders": request_headers,
            "responseHeaders": response_headers,
        }

    registry: CommandRegistry = {
        "worker_status": worker_status,
        "worker_peek": worker_peek,
        "worker_har_data": worker_har_data,
        "worker_details": worker_details,
        "cdp_call": cdp_call,
        "worker_network_headers": worker_network_headers,
    }
    return registry


async def dispatch(registry: CommandRegistry, cdp, request: dict) -> WorkerResponse:
    """Run one request and build its response. Never raises."""
    request_type = str(request.get("type", ""))
    request_id = request.get("requestId", "")
    params = {k: v for k, v in request.items() if k not in ("type", "requestId")}

    try:
        command = command_from_type(request_type)
        if command is None or command not in registry:
            raise UnknownCommandError(request_type, registry)
        data = await registry[command](cdp, params)
    except Exception as e:
        logger.warning(f"{request_type} ({request_id}) failed: {e}")
        return {"type": response_type(request_type), "requestId": request_id, "success": False, "error": str(e)}

    return {"type": response_type(request_type), "requestId": request_id, "success": True, "data": data}

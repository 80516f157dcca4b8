"""Network collection via the Network domain.

Requests enter the store on requestWillBeSent and are updated in place as
their response, completion or failure arrives.

PUBLIC API:
  - start_network_collection: Subscribe handlers, returns cleanup
  - body_skip_reason: Why a response body is not fetched (None to fetch)
"""

import asyncio
import logging
from typing import Callable, Optional
from urllib.parse import urlparse

from ..errors import CdptapError
from .models import NetworkRequest
from .store import TelemetryStore, now_ms

__all__ = ["start_network_collection", "body_skip_reason"]

logger = logging.getLogger(__name__)

CHROME_NETWORK_BUFFER_TOTAL = 50 * 1024 * 1024
CHROME_NETWORK_BUFFER_PER_RESOURCE = 10 * 1024 * 1024
CHROME_POST_DATA_LIMIT = 1024 * 1024

SKIP_BODY_MIME_PREFIXES = ("image/", "font/", "audio/", "video/")
SKIP_BODY_MIME_TYPES = ("text/css", "application/font-woff", "application/octet-stream")
SKIP_BODY_EXTENSIONS = (".css", ".map", ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".woff", ".woff2", ".ttf")

TIMING_FIELDS = (
    "requestTime",
    "proxyStart",
    "proxyEnd",
    "dnsStart",
    "dnsEnd",
    "connectStart",
    "connectEnd",
    "sslStart",
    "sslEnd",
    "sendStart",
    "sendEnd",
    "receiveHeadersEnd",
)


def body_skip_reason(url: str, mime_type: Optional[str], size: Optional[float], max_body_size: int) -> Optional[str]:
    """Decide whether a response body is worth fetching."""
    mime = (mime_type or "").lower()
    if mime.startswith(SKIP_BODY_MIME_PREFIXES) or mime in SKIP_BODY_MIME_TYPES:
        return f"binary or asset type {mime}"
    if urlparse(url).path.lower().endswith(SKIP_BODY_EXTENSIONS):
        return "asset file extension"
    if size is not None and size > max_body_size:
        return f"response too large ({int(size)} bytes > {max_body_size})"
    return None


async def start_network_collection(
    cdp,
    store: TelemetryStore,
    max_body_size: int = 5 * 1024 * 1024,
    fetch_bodies: bool = True,
) -> Callable[[], None]:
    """Enable Network and record requests into the store.

    Args:
        cdp: Connected CDPConnection.
        store: Destination store.
        max_body_size: Largest encoded body that is fetched.
        fetch_bodies: Fetch response bodies on loadingFinished.

    Returns:
        Cleanup function that unsubscribes handlers and cancels body fetches.
    """
    try:
        await cdp.send(
            "Network.enable",
            {
                "maxTotalBufferSize": CHROME_NETWORK_BUFFER_TOTAL,
                "maxResourceBufferSize": CHROME_NETWORK_BUFFER_PER_RESOURCE,
                "maxPostDataSize": CHROME_POST_DATA_LIMIT,
            },
        )
    except CdptapError:
        logger.debug("Network buffer limits not supported, using defaults")
        await cdp.send("Network.enable")

    body_fetches: set[asyncio.Task] = set()

    def on_request_will_be_sent(params: dict) -> None:
        request = params.get("request") or {}
        store.push_network_request(
            NetworkRequest(
                request_id=params["requestId"],
                url=request.get("url", ""),
                method=request.get("method", "GET"),
                timestamp=now_ms(),
                resource_type=params.get("type"),
                request_headers=request.get("headers"),
                request_body=request.get("postData"),
                navigation_id=store.navigation_id,
            )
        )

    def on_response_received(params: dict) -> None:
        entry = store.get_network_request(params.get("requestId", ""))
        if entry is None:
            return
        response = params.get("response") or {}
        entry.status = response.get("status")
        entry.mime_type = response.get("mimeType")
        entry.response_headers = response.get("headers")
        entry.resource_type = params.get("type") or entry.resource_type
        if timing := response.get("timing"):
            entry.timing = {k: timing[k] for k in TIMING_FIELDS if k in timing}
        if ip := response.get("remoteIPAddress"):
            entry.server_ip_address = ip

    async def fetch_body(entry: NetworkRequest) -> None:
        try:
            result = await cdp.send("Network.getResponseBody", {"requestId": entry.request_id})
        except CdptapError as e:
            logger.debug(f"No body for {entry.request_id}: {e}")
            return
        entry.response_body = result.get("body")

    def on_loading_finished(params: dict) -> None:
        entry = store.get_network_request(params.get("requestId", ""))
        if entry is None:
            return
        entry.finished = True
        entry.encoded_data_length = params.get("encodedDataLength")
        entry.loading_finished_time = params.get("timestamp")
        if not fetch_bodies:
            return

        reason = body_skip_reason(entry.url, entry.mime_type, entry.encoded_data_length, max_body_size)
        if reason:
            entry.response_body = f"[SKIPPED: {reason}]"
            return

        task = asyncio.ensure_future(fetch_body(entry))
        body_fetches.add(task)
        task.add_done_callback(body_fetches.discard)

    def on_loading_failed(params: dict) -> None:
        entry = store.get_network_request(params.get("requestId", ""))
        if entry is None:
            return
        entry.finished = True
        entry.status = 0
        entry.error_text = params.get("errorText") or None
        if params.get("canceled"):
            entry.canceled = True
        if blocked := params.get("blockedReason"):
            entry.blocked_reason = blocked
        entry.resource_type = params.get("type") or entry.resource_type

    unsubscribers = [
        cdp.on("Network.requestWillBeSent", on_request_will_be_sent),
        cdp.on("Network.responseReceived", on_response_received),
        cdp.on("Network.loadingFinished", on_loading_finished),
        cdp.on("Network.loadingFailed", on_loading_failed),
    ]
    store.active_telemetry.append("network")

    def cleanup() -> None:
        for unsubscribe in unsubscribers:
            unsubscribe()
        if body_fetches:
            logger.debug(f"Cancelling {len(body_fetches)} pending body fetches")
        for task in list(body_fetches):
            task.cancel()
        if "network" in store.active_telemetry:
            store.active_telemetry.remove("network")

    return cleanup

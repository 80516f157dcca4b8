"""HAR 1.2 export of captured network requests.

Works on the exported dict form (``TelemetryStore.export_all()``), so the
client can build a HAR from a ``har_data`` response without the store.

PUBLIC API:
  - build_har: Build a HAR document
"""

from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import parse_qsl, urlsplit

__all__ = ["build_har"]

UNKNOWN_TIMING = -1
DEFAULT_HTTP_VERSION = "HTTP/1.1"


def _headers(headers: Optional[dict[str, str]]) -> list[dict[str, str]]:
    return [{"name": k, "value": str(v)} for k, v in (headers or {}).items()]


def _header(headers: Optional[dict[str, str]], name: str) -> Optional[str]:
    name = name.lower()
    for key, value in (headers or {}).items():
        if key.lower() == name:
            return value
    return None


def _cookies(header_value: Optional[str]) -> list[dict[str, str]]:
    if not header_value:
        return []
    cookies = []
    for part in header_value.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name:
            cookies.append({"name": name, "value": value})
    return cookies


def _timings(req: dict) -> dict[str, float]:
    timing = req.get("timing")
    if not timing:
        return {"blocked": UNKNOWN_TIMING, "dns": UNKNOWN_TIMING, "connect": UNKNOWN_TIMING,
                "send": 0, "wait": 0, "receive": 0, "ssl": UNKNOWN_TIMING}

    def span(start: str, end: str) -> float:
        a, b = timing.get(start, -1), timing.get(end, -1)
        return round(b - a, 3) if a >= 0 and b >= 0 else UNKNOWN_TIMING

    receive = 0.0
    finished = req.get("loadingFinishedTime")
    if finished and timing.get("requestTime"):
        receive = max(0.0, round((finished - timing["requestTime"]) * 1000 - timing.get("receiveHeadersEnd", 0), 3))

    return {
        "blocked": UNKNOWN_TIMING,
        "dns": span("dnsStart", "dnsEnd"),
        "connect": span("connectStart", "connectEnd"),
        "ssl": span("sslStart", "sslEnd"),
        "send": max(0, span("sendStart", "sendEnd")),
        "wait": max(0, span("sendEnd", "receiveHeadersEnd")),
        "receive": receive,
    }


def _entry(req: dict) -> dict[str, Any]:
    url = req.get("url", "")
    request_headers = req.get("requestHeaders")
    response_headers = req.get("responseHeaders")
    timings = _timings(req)

    request: dict[str, Any] = {
        "method": req.get("method", "GET"),
        "url": url,
        "httpVersion": DEFAULT_HTTP_VERSION,
        "cookies": _cookies(_header(request_headers, "cookie")),
        "headers": _headers(request_headers),
        "queryString": [{"name": k, "value": v} for k, v in parse_qsl(urlsplit(url).query, keep_blank_values=True)],
        "headersSize": -1,
        "bodySize": len(req["requestBody"].encode("utf-8")) if req.get("requestBody") else 0,
    }
    if req.get("requestBody"):
        request["postData"] = {
            "mimeType": _header(request_headers, "content-type") or "application/octet-stream",
            "text": req["requestBody"],
        }

    body = req.get("responseBody")
    if body and body.startswith("[SKIPPED:"):
        body = None
    content: dict[str, Any] = {
        "size": len(body.encode("utf-8")) if body else 0,
        "mimeType": req.get("mimeType") or "x-unknown",
    }
    if body:
        content["text"] = body

    response = {
        "status": req.get("status") or 0,
        "statusText": req.get("errorText", ""),
        "httpVersion": DEFAULT_HTTP_VERSION,
        "cookies": _cookies(_header(response_headers, "set-cookie")),
        "headers": _headers(response_headers),
        "content": content,
        "redirectURL": _header(response_headers, "location") or "",
        "headersSize": -1,
        "bodySize": int(req.get("encodedDataLength") or -1),
    }

    entry: dict[str, Any] = {
        "startedDateTime": datetime.fromtimestamp(req.get("timestamp", 0) / 1000, tz=timezone.utc).isoformat(),
        "time": sum(v for v in timings.values() if v > 0),
        "request": request,
        "response": response,
        "cache": {},
        "timings": timings,
    }
    if req.get("serverIPAddress"):
        entry["serverIPAddress"] = req["serverIPAddress"]
    return entry


def build_har(
    requests: list[dict[str, Any]],
    version: str = "0.0.0",
    chrome_version: Optional[str] = None,
) -> dict[str, Any]:
    """Build a HAR 1.2 document.

    Args:
        requests: Exported network requests, oldest first.
        version: cdptap version for the creator block.
        chrome_version: Browser version, when known.
    """
    log: dict[str, Any] = {
        "version": "1.2",
        "creator": {"name": "cdptap", "version": version},
        "entries": [_entry(r) for r in requests],
    }
    if chrome_version:
        log["browser"] = {"name": "Chrome", "version": chrome_version}
    return {"log": log}

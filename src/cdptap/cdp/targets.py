"""Chrome DevTools HTTP endpoints.

PUBLIC API:
  - get_version: Browser version info from /json/version
  - list_targets: Page targets with a debugger URL
  - create_target: Open a new tab
  - find_page_target: Pick the page to attach to
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

__all__ = ["get_version", "list_targets", "create_target", "find_page_target"]

logger = logging.getLogger(__name__)


def _base_url(port: int, host: str = "127.0.0.1") -> str:
    return f"http://{host}:{port}"


async def get_version(port: int, timeout: float = 2.0) -> dict[str, Any]:
    """Get /json/version from Chrome.

    Raises:
        httpx.HTTPError: Chrome is not answering on the port.
    """
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(f"{_base_url(port)}/json/version")
        response.raise_for_status()
        return response.json()


async def list_targets(port: int, timeout: float = 2.0) -> list[dict[str, Any]]:
    """List page targets that expose a webSocketDebuggerUrl."""
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(f"{_base_url(port)}/json")
        response.raise_for_status()
        targets = response.json()
    return [t for t in targets if t.get("type") == "page" and "webSocketDebuggerUrl" in t]


async def create_target(port: int, url: str = "about:blank", timeout: float = 5.0) -> dict[str, Any]:
    """Open a new tab via /json/new."""
    async with httpx.AsyncClient(timeout=timeout) as client:
        # Newer Chrome requires PUT for /json/new
        response = await client.put(f"{_base_url(port)}/json/new?{quote(url, safe='')}")
        response.raise_for_status()
        return response.json()


async def find_page_target(port: int, url: Optional[str] = None) -> dict[str, Any]:
    """Find the page target to attach to.

    Prefers a page already showing ``url``, then the first page, and opens a
    new tab only when Chrome has no pages at all.
    """
    pages = await list_targets(port)
    if url:
        for page in pages:
            if page.get("url") == url:
                return page
    if pages:
        return pages[0]

    logger.info(f"No page targets on port {port}, opening a new tab")
    return await create_target(port)

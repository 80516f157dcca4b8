"""Navigation tracking via the Page domain.

PUBLIC API:
  - start_navigation_tracking: Bump the navigation id on main-frame navigations
"""

import logging
from typing import Callable

from ..errors import CdptapError
from .store import TelemetryStore, now_ms

__all__ = ["start_navigation_tracking"]

logger = logging.getLogger(__name__)


async def start_navigation_tracking(cdp, store: TelemetryStore) -> Callable[[], None]:
    """Track main-frame navigations and load state.

    Returns:
        Cleanup function that unsubscribes every handler.
    """
    await cdp.send("Page.enable")

    def on_frame_navigated(params: dict) -> None:
        frame = params.get("frame") or {}
        # Subframes carry a parentId
        if frame.get("parentId"):
            return
        navigation_id = store.next_navigation()
        store.set_target(frame.get("url", ""), store.target_info.get("title", ""))
        store.page_state = {"readyState": "loading", "navigatedAt": now_ms()}
        logger.debug(f"Navigation {navigation_id}: {frame.get('url')}")

    def on_dom_content(params: dict) -> None:
        store.page_state["readyState"] = "interactive"
        store.page_state["domContentLoadedAt"] = now_ms()

    def on_load(params: dict) -> None:
        store.page_state["readyState"] = "complete"
        store.page_state["loadedAt"] = now_ms()

    async def refresh_title(params: dict) -> None:
        # Title is only known once the document has parsed
        try:
            info = await cdp.send("Target.getTargetInfo")
        except CdptapError as e:
            logger.debug(f"Could not refresh target title: {e}")
            return
        target = info.get("targetInfo") or {}
        store.set_target(target.get("url", store.target_info["url"]), target.get("title", ""))

    unsubscribers = [
        cdp.on("Page.frameNavigated", on_frame_navigated),
        cdp.on("Page.domContentEventFired", on_dom_content),
        cdp.on("Page.loadEventFired", on_load),
        cdp.on("Page.loadEventFired", refresh_title),
    ]

    def cleanup() -> None:
        for unsubscribe in unsubscribers:
            unsubscribe()

    return cleanup

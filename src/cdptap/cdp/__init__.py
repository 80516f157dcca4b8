"""Chrome DevTools Protocol transport.

PUBLIC API:
  - CDPConnection: WebSocket connection with request correlation and events
  - find_page_target: Pick a page target over the HTTP endpoint
  - launch_chrome / kill_chrome: Chrome process management
"""

from .connection import CDPConnection
from .launcher import kill_chrome, launch_chrome
from .targets import find_page_target

__all__ = ["CDPConnection", "find_page_target", "launch_chrome", "kill_chrome"]

"""Browser telemetry capture and storage.

PUBLIC API:
  - TelemetryStore: Bounded store of network and console telemetry
  - NetworkRequest / ConsoleMessage: Captured records
  - start_network_collection / start_console_collection / start_navigation_tracking: Collectors
  - build_har: HAR 1.2 export
"""

from .console import start_console_collection
from .har import build_har
from .models import ConsoleMessage, NetworkRequest
from .navigation import start_navigation_tracking
from .network import start_network_collection
from .store import PeekResult, TelemetryStore

__all__ = [
    "TelemetryStore",
    "PeekResult",
    "NetworkRequest",
    "ConsoleMessage",
    "start_network_collection",
    "start_console_collection",
    "start_navigation_tracking",
    "build_har",
]

"""Logging setup per process role.

PUBLIC API:
  - setup_logging: Configure root logging for client, daemon or worker
  - BufferHandler: In-memory ring buffer of recent log lines
"""

import logging
import sys
from collections import deque
from pathlib import Path
from typing import Literal, Optional

__all__ = ["setup_logging", "BufferHandler", "LOG_FORMAT"]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%H:%M:%S"


class BufferHandler(logging.Handler):
    """Keep the last ``capacity`` formatted records in memory."""

    def __init__(self, capacity: int = 500):
        super().__init__()
        self.buffer: deque[str] = deque(maxlen=capacity)

    def emit(self, record):
        self.buffer.append(f"[{record.levelname}] {record.name}: {record.getMessage()}")

    def tail(self, n: int = 50) -> list[str]:
        """Return the most recent n lines, oldest first."""
        if n <= 0:
            return []
        return list(self.buffer)[-n:]


def setup_logging(
    role: Literal["client", "daemon", "worker"],
    level: str = "INFO",
    log_file: Optional[Path] = None,
) -> Optional[BufferHandler]:
    """Configure logging for a process role.

    Clients only surface warnings on stderr. The daemon writes to its log file
    and keeps a ring buffer for status queries. The worker logs to stderr,
    which the daemon redirects into worker.log.

    Args:
        role: Process role.
        level: Level name for cdptap loggers.
        log_file: Destination file for the daemon.

    Returns:
        The BufferHandler for the daemon role, None otherwise.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if role == "client":
        logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT, datefmt=DATE_FORMAT, stream=sys.stderr)
        return None

    if role == "daemon" and log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT, filename=str(log_file))
    else:
        logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT, stream=sys.stderr)

    if role != "daemon":
        return None

    # cdptap logger drops to DEBUG for the buffer; file output stays at `level`
    for handler in root.handlers:
        handler.setLevel(level)

    buffer_handler = BufferHandler()
    buffer_handler.setLevel(logging.DEBUG)
    cdptap_logger = logging.getLogger("cdptap")
    cdptap_logger.setLevel(logging.DEBUG)
    cdptap_logger.addHandler(buffer_handler)
    return buffer_handler

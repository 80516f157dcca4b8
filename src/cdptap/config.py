"""Configuration management for cdptap.

Settings come from cdptap.toml (current or parent directories) with
environment variables layered on top.

PUBLIC API:
  - Config: Resolved settings for daemon, worker and client
  - get_config: Get or create the cached configuration
  - reset_config: Drop the cached configuration (tests, env changes)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import tomllib

__all__ = ["Config", "get_config", "reset_config"]

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "cdptap.toml"


def _find_config_file() -> Optional[Path]:
    """Find cdptap.toml in current or parent directories."""
    current = Path.cwd()

    for parent in [current] + list(current.parents):
        config_file = parent / CONFIG_FILENAME
        if config_file.exists():
            return config_file

    return None


def _load_config(path: Optional[Path] = None) -> dict:
    """Load raw configuration from file."""
    if path is None:
        path = _find_config_file()

    if path is None or not path.exists():
        return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        logger.warning(f"Ignoring malformed {path}: {e}")
        return {}


def _env_int(name: str) -> Optional[int]:
    """Read a positive integer from the environment, None if unset or invalid."""
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}")
        return None
    return value if value > 0 else None


@dataclass(frozen=True)
class Config:
    """Resolved cdptap settings.

    Attributes:
        session_dir: Directory holding socket, PID, lock and log files.
        worker_timeout_ms: Deadline for daemon-to-worker queries.
        command_timeout_ms: Deadline for forwarded browser commands.
        client_timeout_ms: How long a CLI client waits for the daemon.
        worker_ready_timeout_s: How long the daemon waits for worker_ready.
        chrome_port: Default Chrome remote debugging port.
        headless: Launch Chrome headless by default.
        max_network_requests: Telemetry store cap for network requests.
        max_console_messages: Telemetry store cap for console messages.
        max_body_size: Largest response body fetched into the store.
        log_level: Logging level name.
    """

    session_dir: Path
    worker_timeout_ms: int = 5000
    command_timeout_ms: int = 10000
    client_timeout_ms: int = 45000
    worker_ready_timeout_s: float = 30.0
    chrome_port: int = 9222
    headless: bool = False
    max_network_requests: int = 10000
    max_console_messages: int = 10000
    max_body_size: int = 5 * 1024 * 1024
    log_level: str = "INFO"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Build configuration from file and environment.

        Args:
            path: Explicit config file. Defaults to discovery from cwd.

        Returns:
            Resolved Config.
        """
        data = _load_config(path)
        daemon = data.get("daemon", {})
        worker = data.get("worker", {})
        client = data.get("client", {})

        session_dir = os.environ.get("CDPTAP_SESSION_DIR") or daemon.get("session_dir")
        session_dir_path = Path(session_dir).expanduser() if session_dir else Path.home() / ".cdptap"

        worker_timeout_ms = int(daemon.get("worker_timeout_ms", 5000))
        command_timeout_ms = int(daemon.get("command_timeout_ms", 10000))
        client_timeout_ms = int(client.get("timeout_ms", 45000))

        # Single override for every IPC deadline, used by tests
        if ipc_override := _env_int("CDPTAP_IPC_TIMEOUT_MS"):
            worker_timeout_ms = ipc_override
            command_timeout_ms = ipc_override
            client_timeout_ms = ipc_override

        log_level = os.environ.get("CDPTAP_LOG_LEVEL") or daemon.get("log_level", "INFO")

        return cls(
            session_dir=session_dir_path,
            worker_timeout_ms=worker_timeout_ms,
            command_timeout_ms=command_timeout_ms,
            client_timeout_ms=client_timeout_ms,
            worker_ready_timeout_s=float(daemon.get("worker_ready_timeout_s", 30.0)),
            chrome_port=int(worker.get("port", 9222)),
            headless=bool(worker.get("headless", False)),
            max_network_requests=int(worker.get("max_network_requests", 10000)),
            max_console_messages=int(worker.get("max_console_messages", 10000)),
            max_body_size=int(worker.get("max_body_size", 5 * 1024 * 1024)),
            log_level=str(log_level).upper(),
        )


# Global instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global configuration."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def reset_config() -> None:
    """Forget the cached configuration so the next call re-reads it."""
    global _config
    _config = None

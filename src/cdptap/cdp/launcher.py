"""Chrome launch and teardown.

PUBLIC API:
  - find_chrome: Locate a Chrome/Chromium binary
  - launch_chrome: Start Chrome with remote debugging and wait for it
  - kill_chrome: Terminate a Chrome process group
"""

import asyncio
import logging
import os
import shlex
import shutil
import signal
import subprocess
from pathlib import Path
from typing import Optional

import httpx

from ..errors import ChromeLaunchError
from .targets import get_version

__all__ = ["find_chrome", "launch_chrome", "kill_chrome", "CHROME_CANDIDATES"]

logger = logging.getLogger(__name__)

CHROME_CANDIDATES = (
    "google-chrome-stable",
    "google-chrome",
    "chromium-browser",
    "chromium",
)


def find_chrome() -> Optional[str]:
    """Find a Chrome executable, honouring CHROME_PATH first."""
    if explicit := os.environ.get("CHROME_PATH"):
        return explicit if Path(explicit).exists() or shutil.which(explicit) else None

    for name in CHROME_CANDIDATES:
        if path := shutil.which(name):
            return path
    return None


def build_chrome_args(chrome_exe: str, port: int, user_data_dir: Path, headless: bool = False) -> list[str]:
    """Command line for a debuggable Chrome with a throwaway profile."""
    args = [
        chrome_exe,
        f"--remote-debugging-port={port}",
        "--remote-allow-origins=*",
        f"--user-data-dir={user_data_dir}",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-background-networking",
    ]
    if headless:
        args.append("--headless=new")
    if extra := os.environ.get("CDPTAP_CHROME_FLAGS"):
        args.extend(shlex.split(extra))
    args.append("about:blank")
    return args


async def launch_chrome(
    port: int,
    user_data_dir: Path,
    headless: bool = False,
    timeout: float = 15.0,
) -> subprocess.Popen:
    """Launch Chrome and wait until its DevTools endpoint answers.

    Args:
        port: Remote debugging port.
        user_data_dir: Profile directory for this session.
        headless: Run without a window.
        timeout: Seconds to wait for /json/version.

    Returns:
        The Chrome process.

    Raises:
        ChromeLaunchError: Binary missing, early exit, or endpoint never answered.
    """
    chrome_exe = find_chrome()
    if not chrome_exe:
        raise ChromeLaunchError(
            "Chrome not found. Install google-chrome-stable or chromium, or set CHROME_PATH."
        )

    user_data_dir.mkdir(parents=True, exist_ok=True)
    cmd = build_chrome_args(chrome_exe, port, user_data_dir, headless)
    logger.info(f"Launching {chrome_exe} on port {port}")

    try:
        proc = subprocess.Popen(cmd, start_new_session=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as e:
        raise ChromeLaunchError(f"Failed to start {chrome_exe}: {e}") from e

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if proc.poll() is not None:
            raise ChromeLaunchError(f"Chrome exited during startup with code {proc.returncode}")
        try:
            await get_version(port, timeout=1.0)
            return proc
        except httpx.HTTPError:
            await asyncio.sleep(0.2)

    kill_chrome(proc.pid)
    raise ChromeLaunchError(f"Chrome did not open port {port} within {timeout}s")


def kill_chrome(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Signal the Chrome process group. Returns False if it was already gone."""
    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning(f"Not permitted to signal Chrome process group {pid}")
        return False

"""Pytest configuration and fixtures for cdptap tests."""

import shutil
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from cdptap.config import get_config, reset_config
from cdptap.telemetry.models import ConsoleMessage, NetworkRequest
from cdptap.telemetry.store import TelemetryStore


@pytest.fixture(autouse=True)
def session_dir(monkeypatch: pytest.MonkeyPatch):
    """Isolated session directory, short enough for Unix socket paths."""
    tmpdir = Path(tempfile.mkdtemp(prefix="cdt-"))
    monkeypatch.setenv("CDPTAP_SESSION_DIR", str(tmpdir))
    monkeypatch.delenv("CDPTAP_IPC_TIMEOUT_MS", raising=False)
    monkeypatch.delenv("CDPTAP_LOG_LEVEL", raising=False)
    monkeypatch.chdir(tmpdir)
    reset_config()
    yield tmpdir
    reset_config()
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def config():
    return get_config()


@pytest.fixture
def store():
    """Telemetry store with a small cap."""
    s = TelemetryStore(max_network=200, max_console=200)
    s.set_target("https://example.com/", "Example")
    return s


def make_request(i: int, **overrides) -> NetworkRequest:
    fields = {
        "request_id": f"req-{i}",
        "url": f"https://example.com/{i}",
        "method": "GET",
        "timestamp": 1_700_000_000_000 + i,
    }
    fields.update(overrides)
    return NetworkRequest(**fields)


def make_console(i: int, **overrides) -> ConsoleMessage:
    fields = {"type": "log", "text": f"message {i}", "timestamp": 1_700_000_000_000 + i}
    fields.update(overrides)
    return ConsoleMessage(**fields)


@pytest.fixture
def mock_cdp():
    """CDP connection stub whose send() is awaited by command handlers."""
    cdp = MagicMock()

    async def send(method, params=None, timeout=None):
        return {"method": method, "params": params}

    cdp.send = MagicMock(side_effect=send)
    return cdp


FAKE_WORKER = r'''
import json, os, sys, time

mode = os.environ.get("FAKE_WORKER_MODE", "normal")

def write(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()

if mode == "exit_early":
    sys.exit(3)
if mode == "never_ready":
    time.sleep(60)
    sys.exit(0)

write({"type": "worker_ready", "requestId": "ready", "workerPid": os.getpid(),
       "chromePid": 4242, "port": 9222, "target": {"url": "about:blank", "title": ""}})

for line in sys.stdin:
    line = line.strip()
    if not line:
        continue
    request = json.loads(line)
    command = request["type"][: -len("_request")]
    if mode == "silent":
        continue
    if mode == "crash":
        os._exit(7)
    if mode == "noisy":
        sys.stdout.buffer.write(b"\xff\xfe garbage\n")
        sys.stdout.buffer.flush()
    if command == "worker_status":
        data = {"startTime": 1, "duration": 2, "target": {"url": "about:blank", "title": "Blank"},
                "activeTelemetry": ["network", "console"], "activity": {"networkRequestsCaptured": 0},
                "pageState": {"readyState": "complete"}, "navigationId": 1}
    elif command == "worker_peek":
        data = {"version": "0.1.0", "startTime": 1_700_000_000_000, "duration": 5,
                "target": {"url": "about:blank", "title": ""},
                "network": [{"requestId": "1", "url": "about:blank"}], "console": []}
    elif command == "worker_har_data":
        data = {"requests": [{"requestId": "1", "url": "about:blank"}]}
    else:
        data = {"echo": request}
    write({"type": command + "_response", "requestId": request["requestId"], "success": True, "data": data})
'''


@pytest.fixture
def fake_worker_command(tmp_path):
    """argv prefix running a scripted worker that speaks the stdio protocol."""
    script = tmp_path / "fake_worker.py"
    script.write_text(FAKE_WORKER)
    return [sys.executable, str(script)]

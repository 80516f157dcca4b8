"""Tests for the IPC client against a scripted daemon socket."""

import asyncio
import json

import pytest

from cdptap.config import reset_config
from cdptap.errors import (
    IPCConnectionError,
    IPCEarlyCloseError,
    IPCParseError,
    IPCResponseError,
    IPCTimeoutError,
)
from cdptap.ipc import client
from cdptap.session import ensure_session_dir, session_path


@pytest.fixture
async def mock_daemon():
    """Start a Unix server whose reply behaviour each test sets."""
    ensure_session_dir()
    received: list[dict] = []
    state = {"reply": lambda request: []}

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        line = await reader.readline()
        if line:
            request = json.loads(line)
            received.append(request)
            chunks = state["reply"](request)
            if chunks is None:
                # Hold the connection until the client gives up
                await reader.read()
            else:
                for chunk in chunks:
                    writer.write(chunk)
                    await writer.drain()
        writer.close()

    server = await asyncio.start_unix_server(handle, path=str(session_path("DAEMON_SOCKET")))

    def set_reply(reply):
        state["reply"] = reply

    set_reply.received = received
    yield set_reply
    server.close()
    await server.wait_closed()


def frame(obj: dict) -> bytes:
    return (json.dumps(obj) + "\n").encode()


def ok(request: dict, response_type: str, data: dict | None = None) -> bytes:
    return frame({"type": response_type, "sessionId": request["sessionId"], "status": "ok", "data": data or {}})


class TestSendRequest:
    """Tests for send_request error typing."""

    @pytest.mark.asyncio
    async def test_connection_error_when_no_daemon(self):
        """Test a missing socket raises IPCConnectionError."""
        with pytest.raises(IPCConnectionError, match="IPC status connection error"):
            await client.send_request({"type": "status_request", "sessionId": "s1"}, timeout=1)

    @pytest.mark.asyncio
    async def test_matching_response_returned(self, mock_daemon):
        """Test unrelated frames are skipped until the matching one arrives."""

        def reply(request):
            yield frame({"type": "status_response", "sessionId": "someone-else", "status": "ok"})
            yield ok(request, "status_response", {"daemonPid": 1})[:10]
            yield ok(request, "status_response", {"daemonPid": 1})[10:]

        mock_daemon(reply)
        response = await client.send_request({"type": "status_request", "sessionId": "s1"}, timeout=2)

        assert response["data"] == {"daemonPid": 1}
        assert mock_daemon.received[0]["type"] == "status_request"

    @pytest.mark.asyncio
    async def test_timeout(self, mock_daemon):
        """Test a daemon that never answers raises IPCTimeoutError."""
        mock_daemon(lambda request: None)
        with pytest.raises(IPCTimeoutError, match="peek request timeout after 0.2s"):
            await client.send_request({"type": "peek_request", "sessionId": "s1"}, timeout=0.2)

    @pytest.mark.asyncio
    async def test_timeout_from_environment(self, mock_daemon, monkeypatch):
        """Test the client deadline honours CDPTAP_IPC_TIMEOUT_MS."""
        monkeypatch.setenv("CDPTAP_IPC_TIMEOUT_MS", "150")
        reset_config()
        mock_daemon(lambda request: None)
        with pytest.raises(IPCTimeoutError, match="after 0.15s"):
            await client.send_request({"type": "status_request", "sessionId": "s1"})

    @pytest.mark.asyncio
    async def test_parse_error(self, mock_daemon):
        """Test garbage responses raise IPCParseError."""
        mock_daemon(lambda request: [b"this is not json\n"])
        with pytest.raises(IPCParseError, match="Failed to parse status response"):
            await client.send_request({"type": "status_request", "sessionId": "s1"}, timeout=2)

    @pytest.mark.asyncio
    async def test_early_close(self, mock_daemon):
        """Test a connection closed mid-response raises IPCEarlyCloseError."""
        mock_daemon(lambda request: [b'{"type": "status_resp'])
        with pytest.raises(IPCEarlyCloseError):
            await client.send_request({"type": "status_request", "sessionId": "s1"}, timeout=2)

    @pytest.mark.asyncio
    async def test_worker_command_expects_daemon_response_type(self, mock_daemon):
        """Test worker_status requests wait for status_response."""
        mock_daemon(lambda request: [ok(request, "status_response", {"activity": {}})])
        response = await client.send_request({"type": "worker_status_request", "sessionId": "s1"}, timeout=2)
        assert response["type"] == "status_response"


class TestHelpers:
    """Tests for the high-level helpers."""

    @pytest.mark.asyncio
    async def test_get_details(self, mock_daemon):
        """Test details sends itemType and id with a fresh sessionId."""
        mock_daemon(lambda request: [ok(request, "worker_details_response", {"item": {"requestId": "7"}})])

        response = await client.get_details("network", "7")

        request = mock_daemon.received[0]
        assert request["type"] == "worker_details_request"
        assert request["itemType"] == "network"
        assert request["id"] == "7"
        assert len(request["sessionId"]) == 36
        assert client.require_data(response, "item", "item details") == {"requestId": "7"}

    @pytest.mark.asyncio
    async def test_error_response_raises(self, mock_daemon):
        """Test helpers raise IPCResponseError on status error."""
        mock_daemon(
            lambda request: [
                frame({"type": "peek_response", "sessionId": request["sessionId"], "status": "error", "error": "No active session"})
            ]
        )
        with pytest.raises(IPCResponseError, match="No active session"):
            await client.get_peek()

    @pytest.mark.asyncio
    async def test_status_error_returned_with_partial_data(self, mock_daemon):
        """Test status errors are returned so partial data stays usable."""
        mock_daemon(
            lambda request: [
                frame(
                    {
                        "type": "status_response",
                        "sessionId": request["sessionId"],
                        "status": "error",
                        "error": "Worker response timeout (5s)",
                        "data": {"daemonPid": 1},
                    }
                )
            ]
        )
        response = await client.get_status()
        assert response["data"] == {"daemonPid": 1}

    @pytest.mark.asyncio
    async def test_start_session_fields(self, mock_daemon):
        """Test start_session only sends the fields that are set."""
        mock_daemon(lambda request: [ok(request, "start_session_response", {"workerPid": 5})])

        await client.start_session(url="https://example.com", headless=True, timeout=30)

        request = mock_daemon.received[0]
        assert request["url"] == "https://example.com"
        assert request["headless"] is True
        assert request["timeout"] == 30
        assert "port" not in request

    def test_require_data_missing_field(self):
        """Test a missing field raises with its description."""
        with pytest.raises(IPCResponseError, match="missing CDP result"):
            client.require_data({"type": "cdp_call_response", "sessionId": "s", "status": "ok", "data": {}}, "result", "CDP result")

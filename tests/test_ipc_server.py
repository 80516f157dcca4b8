"""Integration tests for the daemon IPC server.

The server runs in-process on a socket in the short temporary session
directory; the worker is the scripted fake from conftest.
"""

import asyncio
import json
import os
import time

import pytest

from cdptap.config import reset_config
from cdptap.daemon.responses import WORKER_EXITED_ERROR
from cdptap.daemon.server import IPCServer
from cdptap.daemon.worker_manager import WorkerManager
from cdptap.errors import DaemonLockError
from cdptap.logs import BufferHandler
from cdptap.session import session_path, write_metadata


class Client:
    """Raw JSONL connection to the daemon socket."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._counter = 0

    @classmethod
    async def connect(cls) -> "Client":
        reader, writer = await asyncio.open_unix_connection(str(session_path("DAEMON_SOCKET")))
        return cls(reader, writer)

    async def write_raw(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def send(self, message_type: str, **fields) -> str:
        self._counter += 1
        session_id = f"s{self._counter}"
        await self.write_raw((json.dumps({"type": message_type, "sessionId": session_id, **fields}) + "\n").encode())
        return session_id

    async def read(self, timeout: float = 5) -> dict:
        line = await asyncio.wait_for(self.reader.readline(), timeout)
        assert line, "daemon closed the connection"
        return json.loads(line)

    async def request(self, message_type: str, timeout: float = 5, **fields) -> dict:
        session_id = await self.send(message_type, **fields)
        response = await self.read(timeout)
        assert response["sessionId"] == session_id
        return response

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass


@pytest.fixture
async def make_server(fake_worker_command, monkeypatch):
    servers = []

    async def factory(**env) -> IPCServer:
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        reset_config()
        server = IPCServer(worker_manager=WorkerManager(command=fake_worker_command), log_buffer=BufferHandler())
        await server.start()
        servers.append(server)
        return server

    yield factory

    for server in servers:
        await server.stop()


@pytest.fixture
async def server(make_server):
    s = await make_server()
    yield s
    await s.stop()


@pytest.fixture
async def client(server):
    c = await Client.connect()
    yield c
    await c.close()


async def start_session(client: Client) -> dict:
    response = await client.request("start_session_request", timeout=15, url="about:blank")
    assert response["status"] == "ok", response
    return response


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_writes_socket_and_pid(self, server):
        """Test start binds a private socket and writes the daemon PID."""
        socket_path = session_path("DAEMON_SOCKET")
        assert socket_path.exists()
        assert oct(socket_path.stat().st_mode & 0o777) == oct(0o600)
        assert session_path("DAEMON_PID").read_text() == str(os.getpid())
        assert IPCServer.is_running()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_cleans_up(self, make_server):
        """Test stop removes socket and PID and can be called twice."""
        server = await make_server()

        await server.stop()
        await server.stop()

        assert not session_path("DAEMON_SOCKET").exists()
        assert not session_path("DAEMON_PID").exists()
        assert not server.running

    @pytest.mark.asyncio
    async def test_stop_without_start(self, fake_worker_command):
        """Test stopping a server that never started is safe, twice over."""
        server = IPCServer(worker_manager=WorkerManager(command=fake_worker_command))

        await server.stop()
        await server.stop()

        assert not session_path("DAEMON_SOCKET").exists()
        assert not server.running

    @pytest.mark.asyncio
    async def test_refuses_when_daemon_alive(self, make_server):
        """Test a live daemon PID blocks a second server."""
        session_path("DAEMON_PID").parent.mkdir(parents=True, exist_ok=True)
        session_path("DAEMON_PID").write_text(str(os.getppid()))

        with pytest.raises(DaemonLockError, match="already running"):
            await make_server()

    @pytest.mark.asyncio
    async def test_replaces_stale_socket(self, make_server):
        """Test a leftover socket file from a dead daemon is removed."""
        session_path("DAEMON_SOCKET").parent.mkdir(parents=True, exist_ok=True)
        session_path("DAEMON_SOCKET").write_text("stale")
        session_path("DAEMON_PID").write_text("999999999")

        server = await make_server()
        try:
            client = await Client.connect()
            response = await client.request("handshake_request")
            assert response["message"] == "Handshake successful"
            await client.close()
        finally:
            await server.stop()


class TestRouting:
    """Tests for daemon-handled requests and frame handling."""

    @pytest.mark.asyncio
    async def test_handshake(self, client):
        """Test handshake echoes the sessionId."""
        response = await client.request("handshake_request")
        assert response["type"] == "handshake_response"
        assert response["status"] == "ok"

    @pytest.mark.asyncio
    async def test_status_without_worker(self, client):
        """Test status answers locally when no session runs."""
        response = await client.request("status_request")

        assert response["type"] == "status_response"
        assert response["status"] == "ok"
        assert response["data"]["daemonPid"] == os.getpid()
        assert "sessionPid" not in response["data"]
        assert "recentLogs" not in response["data"]

    @pytest.mark.asyncio
    async def test_status_verbose_includes_logs(self, client):
        """Test verbose status carries recent log lines."""
        response = await client.request("status_request", verbose=True)
        assert isinstance(response["data"]["recentLogs"], list)

    @pytest.mark.asyncio
    async def test_status_ignores_stale_session_files(self, client):
        """Test metadata of a dead session is not reported."""
        session_path("SESSION_PID").write_text("999999999")
        write_metadata({"workerPid": 999999999})

        response = await client.request("status_request")

        assert "sessionPid" not in response["data"]
        assert "sessionMetadata" not in response["data"]

    @pytest.mark.asyncio
    async def test_malformed_frame_dropped(self, client):
        """Test invalid JSON is dropped and the connection keeps working."""
        await client.write_raw(b"{not json\n")
        await client.write_raw(b'{"type": "status_request"}\n')

        response = await client.request("handshake_request")

        assert response["type"] == "handshake_response"

    @pytest.mark.asyncio
    async def test_invalid_utf8_dropped(self, client):
        """Test undecodable bytes are dropped and the connection keeps working."""
        await client.write_raw(b"\xff\xfe garbage\n")

        response = await client.request("handshake_request")

        assert response["type"] == "handshake_response"
        assert response["status"] == "ok"

    @pytest.mark.asyncio
    async def test_unknown_type(self, client):
        """Test unknown types get an error response."""
        response = await client.request("bogus_request")

        assert response["status"] == "error"
        assert response["error"] == "Unknown message type: bogus_request"
        assert response["type"] == "bogus_response"

    @pytest.mark.asyncio
    async def test_client_response_frames_ignored(self, client):
        """Test a response sent by a client gets no reply."""
        await client.send("peek_response")
        response = await client.request("handshake_request")
        assert response["type"] == "handshake_response"

    @pytest.mark.asyncio
    async def test_requests_without_worker(self, client):
        """Test worker-backed requests fail cleanly with no session."""
        peek = await client.request("peek_request")
        har = await client.request("har_data_request")
        command = await client.request("cdp_call_request", method="Page.reload")
        stop = await client.request("stop_session_request")

        assert peek["error"] == "No active session"
        assert har["error"] == "No active session"
        assert command["error"] == "No active worker process"
        assert command["type"] == "cdp_call_response"
        assert stop["error"] == "No active session"


class TestSession:
    """Tests for forwarding to a live worker."""

    @pytest.mark.asyncio
    async def test_start_session(self, client, server):
        """Test start_session reports the worker's ready info."""
        response = await start_session(client)

        assert response["type"] == "start_session_response"
        assert response["data"]["chromePid"] == 4242
        assert response["data"]["workerPid"] == server.worker_manager.worker_pid

    @pytest.mark.asyncio
    async def test_start_session_twice(self, client):
        """Test a second start is rejected while a session runs."""
        await start_session(client)
        response = await client.request("start_session_request")

        assert response["status"] == "error"
        assert "already running" in response["error"]

    @pytest.mark.asyncio
    async def test_status_merges_worker_activity(self, client):
        """Test status combines daemon facts with worker activity."""
        await start_session(client)

        response = await client.request("status_request")

        data = response["data"]
        assert response["status"] == "ok"
        assert data["daemonPid"] == os.getpid()
        assert data["activity"] == {"networkRequestsCaptured": 0}
        assert data["pageState"] == {"readyState": "complete", "url": "about:blank", "title": "Blank"}
        assert data["navigationId"] == 1
        assert data["activeTelemetry"] == ["network", "console"]

    @pytest.mark.asyncio
    async def test_peek_reshaped(self, client):
        """Test peek responses are wrapped in a preview."""
        await start_session(client)

        response = await client.request("peek_request", lastN=5)

        preview = response["data"]["preview"]
        assert response["type"] == "peek_response"
        assert preview["success"] is True
        assert preview["partial"] is True
        assert preview["data"]["network"] == [{"requestId": "1", "url": "about:blank"}]
        assert preview["timestamp"].startswith("2023-11-14T")

    @pytest.mark.asyncio
    async def test_har_data_reshaped(self, client):
        """Test HAR data responses carry the request list."""
        await start_session(client)

        response = await client.request("har_data_request")

        assert response["data"]["requests"] == [{"requestId": "1", "url": "about:blank"}]
        assert "sessionPid" in response["data"]

    @pytest.mark.asyncio
    async def test_generic_command_forwarded(self, client):
        """Test command requests are forwarded with their params."""
        await start_session(client)

        response = await client.request("cdp_call_request", method="Page.reload", params={"ignoreCache": True})

        echoed = response["data"]["echo"]
        assert response["type"] == "cdp_call_response"
        assert echoed["method"] == "Page.reload"
        assert echoed["params"] == {"ignoreCache": True}
        assert "sessionId" not in echoed

    @pytest.mark.asyncio
    async def test_concurrent_requests_keep_their_session_ids(self, client):
        """Test interleaved requests on one connection are answered by sessionId."""
        await start_session(client)

        sent = [await client.send("peek_request") for _ in range(5)]
        sent.append(await client.send("status_request"))
        received = [await client.read() for _ in range(len(sent))]

        assert sorted(r["sessionId"] for r in received) == sorted(sent)
        by_id = {r["sessionId"]: r for r in received}
        assert by_id[sent[-1]]["type"] == "status_response"
        assert all(by_id[s]["type"] == "peek_response" for s in sent[:-1])

    @pytest.mark.asyncio
    async def test_concurrent_clients(self, server, client):
        """Test separate connections each get their own responses."""
        await start_session(client)
        others = [await Client.connect() for _ in range(3)]
        try:
            responses = await asyncio.gather(*(c.request("peek_request") for c in others))
            assert all(r["status"] == "ok" for r in responses)
        finally:
            for other in others:
                await other.close()

    @pytest.mark.asyncio
    async def test_stop_session(self, client, server):
        """Test stop_session terminates the worker and clears session files."""
        started = await start_session(client)

        response = await client.request("stop_session_request", timeout=10)

        assert response["status"] == "ok"
        assert response["data"]["workerPid"] == started["data"]["workerPid"]
        assert not server.worker_manager.has_active_worker()
        assert not session_path("SESSION_PID").exists()


class TestWorkerFailure:
    """Tests for timeouts and worker crashes."""

    @pytest.mark.asyncio
    async def test_timeout_message(self, make_server, monkeypatch):
        """Test a silent worker yields a timeout error naming the deadline."""
        monkeypatch.setenv("FAKE_WORKER_MODE", "silent")
        server = await make_server(CDPTAP_IPC_TIMEOUT_MS="300")
        client = await Client.connect()
        try:
            await start_session(client)
            response = await client.request("peek_request")

            assert response["status"] == "error"
            assert response["error"] == "Worker response timeout (0.3s)"
            assert len(server.pending) == 0
        finally:
            await client.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_status_timeout_keeps_partial_data(self, make_server, monkeypatch):
        """Test a status timeout still returns the daemon's own facts."""
        monkeypatch.setenv("FAKE_WORKER_MODE", "silent")
        server = await make_server(CDPTAP_IPC_TIMEOUT_MS="300")
        client = await Client.connect()
        try:
            await start_session(client)
            response = await client.request("status_request")

            assert response["status"] == "error"
            assert response["data"]["daemonPid"] == os.getpid()
        finally:
            await client.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_worker_crash_fails_pending_fast(self, make_server, monkeypatch):
        """Test a crash answers in-flight requests well before any timeout."""
        monkeypatch.setenv("FAKE_WORKER_MODE", "crash")
        server = await make_server()
        client = await Client.connect()
        try:
            await start_session(client)

            started = time.monotonic()
            response = await client.request("peek_request")

            assert response["status"] == "error"
            assert response["error"] == WORKER_EXITED_ERROR
            assert time.monotonic() - started < 2
            assert len(server.pending) == 0
        finally:
            await client.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_stop_fails_pending_requests(self, make_server, monkeypatch):
        """Test daemon shutdown answers every pending request."""
        monkeypatch.setenv("FAKE_WORKER_MODE", "silent")
        server = await make_server()
        client = await Client.connect()
        try:
            await start_session(client)
            await client.send("peek_request")
            await asyncio.sleep(0.1)
            assert len(server.pending) == 1

            await server.stop()

            response = await client.read()
            assert response["error"] == WORKER_EXITED_ERROR
            assert len(server.pending) == 0
        finally:
            await client.close()
            await server.stop()

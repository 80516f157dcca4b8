"""Tests for the telemetry store."""

import pytest

from cdptap.errors import NotFoundError, UnknownItemKindError
from cdptap.telemetry.store import TelemetryStore

from conftest import make_console, make_request


def fill(store: TelemetryStore, network: int = 0, console: int = 0) -> None:
    for i in range(network):
        store.push_network_request(make_request(i))
    for i in range(console):
        store.push_console_message(make_console(i))


class TestPeek:
    """Tests for TelemetryStore.peek."""

    def test_peek_last_n(self, store):
        """Test peek returns the newest items, oldest first."""
        fill(store, network=150, console=150)

        result = store.peek(10)

        assert [r.request_id for r in result.network] == [f"req-{i}" for i in range(140, 150)]
        assert [m.text for m in result.console][-1] == "message 149"
        assert result.total_network == 150
        assert result.has_more_network is True

    def test_peek_none_returns_everything(self, store):
        """Test last_n=None returns all items with no more to page."""
        fill(store, network=150, console=3)

        result = store.peek(None)

        assert len(result.network) == 150
        assert len(result.console) == 3
        assert result.has_more_network is False
        assert result.has_more_console is False

    def test_peek_with_offset(self, store):
        """Test offset skips the newest items."""
        fill(store, network=20)

        result = store.peek(5, offset=5)

        assert [r.request_id for r in result.network] == [f"req-{i}" for i in range(10, 15)]

    def test_peek_offset_past_end(self, store):
        """Test an offset beyond the buffer yields nothing."""
        fill(store, network=3)
        result = store.peek(5, offset=10)
        assert result.network == []
        assert result.has_more_network is False

    def test_peek_empty_store(self, store):
        """Test peek on an empty store."""
        result = store.peek(10)
        assert result.network == []
        assert result.console == []
        assert result.total_network == 0


class TestFindById:
    """Tests for TelemetryStore.find_by_id."""

    def test_find_network_request(self, store):
        """Test network lookup by requestId."""
        fill(store, network=150)
        assert store.find_by_id("network", "req-75").url == "https://example.com/75"

    def test_find_console_by_index(self, store):
        """Test console lookup by buffer index, numeric strings included."""
        fill(store, console=150)
        assert store.find_by_id("console", 3).text == "message 3"
        assert store.find_by_id("console", "149").text == "message 149"

    def test_network_not_found(self, store):
        """Test missing network request message."""
        with pytest.raises(NotFoundError, match="Network request not found: nope"):
            store.find_by_id("network", "nope")

    def test_console_out_of_range(self, store):
        """Test the error names the valid index range."""
        fill(store, console=5)
        with pytest.raises(NotFoundError, match=r"available: 0-4"):
            store.find_by_id("console", 5)
        with pytest.raises(NotFoundError, match=r"available: 0-4"):
            store.find_by_id("console", "abc")
        with pytest.raises(NotFoundError, match=r"available: 0-4"):
            store.find_by_id("console", -1)

    def test_console_empty(self, store):
        """Test the error when nothing has been captured."""
        with pytest.raises(NotFoundError, match="no console messages captured"):
            store.find_by_id("console", 0)

    def test_unknown_kind(self, store):
        """Test an unknown kind lists the valid kinds."""
        with pytest.raises(UnknownItemKindError) as exc:
            store.find_by_id("cookies", "x")
        assert "'network'" in str(exc.value)
        assert exc.value.got == "cookies"


class TestEviction:
    """Tests for the bounded buffers."""

    def test_network_eviction_drops_oldest_and_index(self):
        """Test the oldest request is evicted along with its id index."""
        store = TelemetryStore(max_network=100, max_console=100)
        fill(store, network=150)

        assert store.network_count == 100
        assert store.dropped_network == 50
        assert store.get_network_request("req-0") is None
        assert store.get_network_request("req-50") is not None
        with pytest.raises(NotFoundError):
            store.find_by_id("network", "req-49")

    def test_console_eviction(self):
        """Test console indexes shift as the oldest messages are evicted."""
        store = TelemetryStore(max_network=100, max_console=100)
        fill(store, console=150)

        assert store.console_count == 100
        assert store.dropped_console == 50
        assert store.find_by_id("console", 0).text == "message 50"

    def test_reused_request_id_survives_eviction_of_older_entry(self):
        """Test evicting an older entry keeps the index of a newer one with the same id."""
        store = TelemetryStore(max_network=2, max_console=2)
        store.push_network_request(make_request(0, request_id="dup", url="https://a/"))
        store.push_network_request(make_request(1, request_id="dup", url="https://b/"))
        store.push_network_request(make_request(2))

        assert store.get_network_request("dup").url == "https://b/"

    def test_capacity_must_be_positive(self):
        """Test a zero capacity is rejected."""
        with pytest.raises(ValueError):
            TelemetryStore(max_network=0)


class TestSessionState:
    """Tests for session facts and export."""

    def test_reset(self, store):
        """Test reset clears telemetry and session state."""
        fill(store, network=3, console=3)
        store.next_navigation()
        store.active_telemetry.append("network")

        store.reset()

        assert store.network_count == 0
        assert store.console_count == 0
        assert store.navigation_id == 0
        assert store.active_telemetry == []
        assert store.page_state == {"readyState": "loading"}
        assert store.target_info == {"url": "", "title": ""}

    def test_find_latest_request(self, store):
        """Test predicate search returns the newest match."""
        fill(store, network=10)
        found = store.find_latest_request(lambda r: int(r.request_id.split("-")[1]) % 3 == 0)
        assert found.request_id == "req-9"

    def test_export_all_camel_case(self, store):
        """Test export uses camelCase keys and omits unset fields."""
        store.push_network_request(make_request(1, status=200, server_ip_address="10.0.0.1"))

        exported = store.export_all()

        assert exported[0]["requestId"] == "req-1"
        assert exported[0]["status"] == 200
        assert exported[0]["serverIPAddress"] == "10.0.0.1"
        assert "mimeType" not in exported[0]

    def test_previews(self, store):
        """Test compact preview shapes."""
        request = make_request(1, status=404, mime_type="text/html")
        assert request.to_preview() == {
            "requestId": "req-1",
            "timestamp": 1_700_000_000_001,
            "method": "GET",
            "url": "https://example.com/1",
            "status": 404,
            "mimeType": "text/html",
        }
        assert make_console(2).to_preview() == {"type": "log", "text": "message 2", "timestamp": 1_700_000_000_002}

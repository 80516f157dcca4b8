"""Tests for daemon handler forwarding."""

from unittest.mock import MagicMock

import pytest

from cdptap.daemon.handlers import CommandHandlers
from cdptap.daemon.pending import PendingRequests
from cdptap.errors import WorkerUnavailableError


@pytest.fixture
def broken_worker():
    """Worker manager that looks alive but cannot be written to."""
    manager = MagicMock()
    manager.has_active_worker.return_value = True
    manager.send.side_effect = WorkerUnavailableError("Worker stdin is closed")
    return manager


class TestForwardToWorker:
    """Tests for BaseHandler.forward_to_worker."""

    @pytest.mark.asyncio
    async def test_send_failure_answers_immediately(self, broken_worker, config):
        """Test a failed send replies at once and leaves nothing pending."""
        pending = PendingRequests()
        sent = []
        handlers = CommandHandlers(broken_worker, pending, lambda writer, response: sent.append(response), config)

        handlers.handle_command(MagicMock(), {"type": "cdp_call_request", "sessionId": "s1", "method": "Page.reload"})

        assert len(pending) == 0
        assert len(sent) == 1
        assert sent[0]["type"] == "cdp_call_response"
        assert sent[0]["sessionId"] == "s1"
        assert sent[0]["status"] == "error"
        assert "Worker stdin is closed" in sent[0]["error"]
        broken_worker.send.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_failure_cancels_timer(self, broken_worker, config, monkeypatch):
        """Test the timeout timer of a failed send is cancelled."""
        pending = PendingRequests()
        removed = []
        original_remove = pending.remove

        def remove(request_id):
            entry = original_remove(request_id)
            removed.append(entry)
            return entry

        monkeypatch.setattr(pending, "remove", remove)
        handlers = CommandHandlers(broken_worker, pending, lambda writer, response: None, config)

        handlers.handle_command(MagicMock(), {"type": "cdp_call_request", "sessionId": "s1", "method": "Page.reload"})

        assert len(removed) == 1
        assert removed[0].timer.cancelled()

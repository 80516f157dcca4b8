"""Worker response routing.

PUBLIC API:
  - ResponseHandler: Resolve pending requests from worker messages and exit
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ..ipc.messages import command_from_type
from ..session import read_pid, session_path
from .handlers import SendResponse
from .pending import PendingRequest, PendingRequests

__all__ = ["ResponseHandler", "WORKER_EXITED_ERROR"]

logger = logging.getLogger(__name__)

WORKER_EXITED_ERROR = "Worker process exited before responding"


class ResponseHandler:
    """Turns worker responses into client responses."""

    def __init__(self, pending: PendingRequests, send_response: SendResponse):
        self.pending = pending
        self.send_response = send_response

    def handle_worker_message(self, message: dict[str, Any]) -> None:
        message_type = message.get("type", "")
        request_id = message.get("requestId")

        if message_type == "worker_ready":
            logger.debug("Ignoring repeated worker_ready")
            return
        if not message_type.endswith("_response") or command_from_type(message_type) is None:
            logger.warning(f"Unexpected worker message type: {message_type}")
            return

        entry = self.pending.remove(request_id) if request_id else None
        if entry is None:
            logger.warning(f"No pending request for {message_type} ({request_id}), dropping")
            return

        self.send_response(entry.writer, self._client_response(entry, message))

    def handle_worker_exit(self, returncode: Optional[int], signal_name: Optional[str]) -> None:
        """Fail every pending request now instead of waiting for timeouts."""
        drained = self.pending.clear()
        if not drained:
            return

        logger.warning(f"Worker exited (code {returncode}, signal {signal_name}), failing {len(drained)} pending")
        for _, entry in drained:
            response: dict[str, Any] = {
                "type": entry.response_type,
                "sessionId": entry.session_id,
                "status": "error",
                "error": WORKER_EXITED_ERROR,
            }
            if entry.status_data is not None:
                response["data"] = entry.status_data
            self.send_response(entry.writer, response)

    def _client_response(self, entry: PendingRequest, message: dict[str, Any]) -> dict[str, Any]:
        success = bool(message.get("success"))
        data = message.get("data") if success else None
        error = message.get("error")

        if entry.command_name == "worker_status":
            return self._status_response(entry, success, data, error)

        response: dict[str, Any] = {
            "type": entry.response_type,
            "sessionId": entry.session_id,
            "status": "ok" if success else "error",
        }
        if data is not None:
            response["data"] = self._reshape(entry.command_name, data)
        if error:
            response["error"] = error
        return response

    def _reshape(self, command_name: str, data: dict[str, Any]) -> dict[str, Any]:
        if command_name == "worker_peek":
            start = data.get("startTime") or 0
            return {
                "sessionPid": read_pid(session_path("SESSION_PID")) or 0,
                "preview": {
                    "version": data.get("version"),
                    "success": True,
                    "timestamp": datetime.fromtimestamp(start / 1000, tz=timezone.utc).isoformat(),
                    "duration": data.get("duration"),
                    "target": data.get("target"),
                    "data": {"network": data.get("network", []), "console": data.get("console", [])},
                    "partial": True,
                },
            }
        if command_name == "worker_har_data":
            return {
                "sessionPid": read_pid(session_path("SESSION_PID")) or 0,
                "requests": data.get("requests", []),
            }
        return data

    def _status_response(
        self, entry: PendingRequest, success: bool, data: Optional[dict], error: Optional[str]
    ) -> dict[str, Any]:
        response: dict[str, Any] = {"type": "status_response", "sessionId": entry.session_id}
        base = entry.status_data

        if success and data is not None:
            enriched = dict(base or {})
            enriched["activity"] = data.get("activity")
            enriched["pageState"] = {**(data.get("pageState") or {}), **(data.get("target") or {})}
            enriched["navigationId"] = data.get("navigationId")
            enriched["activeTelemetry"] = data.get("activeTelemetry", [])
            response.update(status="ok", data=enriched)
            return response

        if base is not None:
            response.update(status="error" if error else "ok", data=base)
            if error:
                response["error"] = error
            return response

        response.update(status="error", error=error or "Failed to retrieve status data")
        return response

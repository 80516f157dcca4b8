"""Console collection via the Runtime and Log domains.

PUBLIC API:
  - start_console_collection: Subscribe handlers, returns cleanup
  - format_remote_object: Render a RemoteObject the way DevTools prints it
  - format_console_args: Join formatted console arguments
"""

import json
import logging
from typing import Any, Callable, Optional

from ..errors import CdptapError
from .models import ConsoleMessage, StackFrame
from .store import TelemetryStore, now_ms

__all__ = ["start_console_collection", "format_remote_object", "format_console_args"]

logger = logging.getLogger(__name__)


def _format_preview_property(prop: dict) -> str:
    if prop.get("type") == "string":
        return f'"{prop.get("value", "")}"'
    if prop.get("type") == "undefined":
        return "undefined"
    return prop.get("value") or prop.get("type", "")


def _format_object_preview(preview: dict) -> str:
    props = preview.get("properties") or []
    suffix = ", …" if preview.get("overflow") else ""

    if preview.get("subtype") == "array":
        indexed = sorted((p for p in props if p.get("name", "").isdigit()), key=lambda p: int(p["name"]))
        return "[" + ", ".join(_format_preview_property(p) for p in indexed) + suffix + "]"

    pairs = [f"{p.get('name')}: {_format_preview_property(p)}" for p in props]
    return "{" + ", ".join(pairs) + suffix + "}"


def format_remote_object(arg: dict) -> str:
    """Format a Runtime.RemoteObject as text.

    Strings are not quoted at the top level, objects and arrays use their
    preview when present, and errors use their description (which includes
    the stack).
    """
    if "value" in arg:
        value = arg["value"]
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        if value is None:
            return "null"
        return json.dumps(value)

    if arg.get("type") == "undefined":
        return "undefined"
    if arg.get("subtype") == "error" and arg.get("description"):
        return arg["description"]
    if arg.get("type") == "object" and arg.get("preview"):
        return _format_object_preview(arg["preview"])
    return arg.get("description") or f"[{arg.get('type', 'unknown')}]"


def format_console_args(args: list[dict]) -> str:
    return " ".join(format_remote_object(a) for a in args)


def _convert_stack_trace(stack_trace: Optional[dict]) -> Optional[list[StackFrame]]:
    frames = (stack_trace or {}).get("callFrames") or []
    if not frames:
        return None
    return [
        StackFrame(
            url=f.get("url", ""),
            line_number=f.get("lineNumber", 0),
            column_number=f.get("columnNumber", 0),
            function_name=f.get("functionName") or None,
            script_id=f.get("scriptId"),
        )
        for f in frames
    ]


async def start_console_collection(cdp, store: TelemetryStore) -> Callable[[], None]:
    """Enable Runtime/Log and record console output into the store.

    Args:
        cdp: Connected CDPConnection.
        store: Destination store.

    Returns:
        Cleanup function that unsubscribes every handler.
    """
    await cdp.send("Runtime.enable")
    try:
        await cdp.send("Log.enable")
    except CdptapError as e:
        logger.debug(f"Log domain unavailable: {e}")

    def on_console_api_called(params: dict) -> None:
        args = params.get("args") or []
        store.push_console_message(
            ConsoleMessage(
                type=params.get("type", "log"),
                text=format_console_args(args),
                timestamp=params.get("timestamp") or now_ms(),
                args=args,
                navigation_id=store.navigation_id,
                stack_trace=_convert_stack_trace(params.get("stackTrace")),
            )
        )

    def on_exception_thrown(params: dict) -> None:
        details: dict[str, Any] = params.get("exceptionDetails") or {}
        exception = details.get("exception") or {}
        # "Uncaught" alone is useless; prefer the error description
        text = exception.get("description") or details.get("text") or "Unknown error"
        store.push_console_message(
            ConsoleMessage(
                type="error",
                text=text,
                timestamp=params.get("timestamp") or now_ms(),
                navigation_id=store.navigation_id,
                stack_trace=_convert_stack_trace(details.get("stackTrace")),
            )
        )

    def on_log_entry(params: dict) -> None:
        entry = params.get("entry") or {}
        # console-api entries already arrive through Runtime.consoleAPICalled
        if entry.get("source") == "console-api":
            return
        store.push_console_message(
            ConsoleMessage(
                type=entry.get("level", "info"),
                text=entry.get("text", ""),
                timestamp=entry.get("timestamp") or now_ms(),
                navigation_id=store.navigation_id,
                stack_trace=_convert_stack_trace(entry.get("stackTrace")),
            )
        )

    unsubscribers = [
        cdp.on("Runtime.consoleAPICalled", on_console_api_called),
        cdp.on("Runtime.exceptionThrown", on_exception_thrown),
        cdp.on("Log.entryAdded", on_log_entry),
    ]
    store.active_telemetry.append("console")

    def cleanup() -> None:
        for unsubscribe in unsubscribers:
            unsubscribe()
        if "console" in store.active_telemetry:
            store.active_telemetry.remove("console")

    return cleanup

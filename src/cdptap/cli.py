"""Client commands.

Each command is one daemon round trip. Results are printed as JSON on stdout;
errors go to stderr as ``{"error", "kind"}`` with a non-zero exit code.

PUBLIC API:
  - main: Parse argv and run one client command
  - build_parser: argparse definition
  - EXIT_CODES: Exit code per error kind
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from . import __version__
from .config import get_config
from .daemon.control import ensure_daemon
from .errors import CdptapError
from .ipc import client
from .logs import setup_logging
from .telemetry.har import build_har

__all__ = ["main", "build_parser", "EXIT_CODES"]

logger = logging.getLogger(__name__)

EXIT_CODES = {
    "ok": 0,
    "error": 1,
    "response": 1,
    "usage": 2,
    "connection": 3,
    "early_close": 3,
    "timeout": 4,
    "parse": 5,
}


def _print(obj: Any) -> None:
    json.dump(obj, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


async def _start(args) -> dict:
    response = await client.start_session(
        url=args.url,
        port=args.port,
        headless=args.headless,
        timeout=args.timeout,
        launch=args.launch,
        chrome_pid=args.chrome_pid,
    )
    return response.get("data", {})


async def _stop(args) -> dict:
    return (await client.stop_session()).get("data", {})


async def _status(args) -> dict:
    response = await client.get_status(verbose=args.verbose)
    result: dict[str, Any] = {"status": response.get("status"), **response.get("data", {})}
    if response.get("error"):
        result["error"] = response["error"]
    return result


async def _peek(args) -> dict:
    return (await client.get_peek(last_n=args.last, offset=args.offset or None)).get("data", {})


async def _details(args) -> dict:
    return client.require_data(await client.get_details(args.kind, args.id), "item", "item details")


async def _cdp(args) -> dict:
    params = json.loads(args.params) if args.params else {}
    return client.require_data(await client.call_cdp(args.method, params), "result", "CDP result")


async def _headers(args) -> dict:
    return (await client.get_network_headers(args.id, args.header)).get("data", {})


async def _har(args) -> dict:
    requests = client.require_data(await client.get_har_data(), "requests", "network requests")
    har = build_har(requests, __version__)
    if args.output:
        Path(args.output).write_text(json.dumps(har, indent=2), encoding="utf-8")
        return {"path": args.output, "entries": len(har["log"]["entries"])}
    return har


COMMANDS = {
    "start": _start,
    "stop": _stop,
    "status": _status,
    "peek": _peek,
    "details": _details,
    "cdp": _cdp,
    "headers": _headers,
    "har": _har,
}


def build_parser() -> argparse.ArgumentParser:
    config = get_config()
    parser = argparse.ArgumentParser(prog="cdptap", description="Chrome DevTools Protocol session tool")
    parser.add_argument("--version", action="version", version=f"cdptap {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Launch a browser session")
    start.add_argument("url", nargs="?", help="Page to open")
    start.add_argument("--port", type=int, default=config.chrome_port, help="Chrome remote debugging port")
    start.add_argument("--headless", action="store_true", default=None, help="Launch Chrome headless")
    start.add_argument("--launch", action=argparse.BooleanOptionalAction, default=None, help="Launch or attach")
    start.add_argument("--chrome-pid", type=int, help="PID of an already running Chrome")
    start.add_argument("--timeout", type=float, help="Stop the session after SECONDS")

    sub.add_parser("stop", help="Stop the browser session")

    status = sub.add_parser("status", help="Daemon and session status")
    status.add_argument("-v", "--verbose", action="store_true", help="Include recent daemon logs")

    peek = sub.add_parser("peek", help="Recent network requests and console messages")
    peek.add_argument("-n", "--last", type=int, default=10, help="Items per kind, 0 for all")
    peek.add_argument("--offset", type=int, default=0, help="Skip the newest N items")

    details = sub.add_parser("details", help="One captured item in full")
    details.add_argument("kind", choices=("network", "console"))
    details.add_argument("id", help="Network requestId or console index")

    cdp = sub.add_parser("cdp", help="Send a raw CDP command")
    cdp.add_argument("method", help="CDP method, e.g. Page.reload")
    cdp.add_argument("params", nargs="?", help="JSON params object")

    headers = sub.add_parser("headers", help="Request and response headers")
    headers.add_argument("id", nargs="?", help="Network requestId, defaults to the main document")
    headers.add_argument("--header", help="Only this header (case-insensitive)")

    har = sub.add_parser("har", help="Export captured traffic as HAR")
    har.add_argument("-o", "--output", help="Write to FILE instead of stdout")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run one client command. Returns the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging("client")

    try:
        ensure_daemon()
        result = asyncio.run(COMMANDS[args.command](args))
    except CdptapError as e:
        _print_error(str(e), e.kind)
        return EXIT_CODES.get(e.kind, 1)
    except RuntimeError as e:
        _print_error(str(e), "error")
        return EXIT_CODES["error"]
    except json.JSONDecodeError as e:
        _print_error(f"Invalid JSON params: {e}", "usage")
        return EXIT_CODES["usage"]

    _print(result)
    return EXIT_CODES["ok"]


def _print_error(message: str, kind: str) -> None:
    json.dump({"error": message, "kind": kind}, sys.stderr)
    sys.stderr.write("\n")

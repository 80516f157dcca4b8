"""cdptap - Chrome DevTools Protocol sessions for short-lived CLI calls.

A daemon keeps one browser session alive in a worker process; each CLI
invocation is a single request over the daemon's Unix socket.

PUBLIC API:
  - main: Entry point function for CLI
  - __version__: Package version string
"""

import sys
from importlib.metadata import version

__version__ = version("cdptap")


def _handle_daemon():
    """Handle daemon subcommand (cdptap daemon start|stop|status|run)."""
    import json

    from cdptap.daemon import daemon_status, run_daemon, start_daemon, stop_daemon

    action = sys.argv[2] if len(sys.argv) > 2 else "start"

    if action == "run":
        sys.exit(run_daemon())
    elif action == "start":
        try:
            pid = start_daemon()
            print(f"Daemon running (pid: {pid})")
        except RuntimeError as e:
            print(f"Error: {e}")
            sys.exit(1)
    elif action == "stop":
        try:
            stop_daemon()
            print("Daemon stopped")
        except RuntimeError as e:
            print(f"Error: {e}")
            sys.exit(1)
    elif action == "status":
        status = daemon_status(verbose="-v" in sys.argv or "--verbose" in sys.argv)
        if status["running"]:
            print(f"Daemon running (pid: {status['pid']})")
            data = status.get("data", {})
            if data.get("sessionPid"):
                print(f"Session: worker pid {data['sessionPid']}")
                print(json.dumps(data, indent=2, default=str))
            else:
                print("No active session")
            if status.get("error"):
                print(f"Error: {status['error']}")
        else:
            print("Daemon not running")
    else:
        print(f"Unknown daemon action: {action}")
        print("Usage: cdptap daemon [start|stop|status|run]")
        sys.exit(1)


def _handle_worker():
    """Handle worker subcommand (spawned by the daemon, speaks JSONL on stdio)."""
    from cdptap.worker.main import main as worker_main

    sys.exit(worker_main(sys.argv[2:]))


CLI_SUBCOMMANDS = {
    "daemon": _handle_daemon,
    "worker": _handle_worker,
}


def main():
    """Entry point for cdptap.

    Process roles are chosen by subcommand:
    - `cdptap daemon ...`: Daemon control, or `run` to serve in the foreground
    - `cdptap worker ...`: Browser session worker, spawned by the daemon
    - anything else: One client command against the daemon (auto-started)
    """
    if len(sys.argv) > 1 and sys.argv[1] in CLI_SUBCOMMANDS:
        CLI_SUBCOMMANDS[sys.argv[1]]()
        return

    from cdptap.cli import main as cli_main

    sys.exit(cli_main(sys.argv[1:]))


__all__ = ["main", "__version__"]

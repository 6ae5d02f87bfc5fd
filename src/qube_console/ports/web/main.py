from __future__ import annotations

import argparse
import sys
from typing import Optional

import uvicorn

from ...daemon.server import call_daemon
from ...kernel.settings import load_settings
from ...util.obslog import setup_root_json_logging


def _check_daemon_running() -> bool:
    """Check if daemon is running (don't start it)."""
    resp = call_daemon({"op": "ping"})
    return bool(resp.get("ok", False))


def main(argv: Optional[list[str]] = None) -> int:
    web = load_settings().web
    parser = argparse.ArgumentParser(prog="qube-console web", description="qube console web port (FastAPI)")
    parser.add_argument("--host", default=web.host, help=f"Bind host (default: {web.host})")
    parser.add_argument("--port", type=int, default=web.port, help=f"Bind port (default: {web.port})")
    parser.add_argument("--reload", action="store_true", help="Enable autoreload (dev)")
    parser.add_argument("--log-level", default="info", help="Uvicorn log level (default: info)")
    args = parser.parse_args(argv)

    if not _check_daemon_running():
        print("error: daemon is not running. Start it with: qube-console daemon start", file=sys.stderr)
        return 1

    setup_root_json_logging(component="web", level=str(args.log_level))
    try:
        uvicorn.run(
            "qube_console.ports.web.app:create_app",
            factory=True,
            host=str(args.host),
            port=int(args.port),
            log_level=str(args.log_level),
            reload=bool(args.reload),
        )
    except (KeyboardInterrupt, SystemExit):
        pass

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

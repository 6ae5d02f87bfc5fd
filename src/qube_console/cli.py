from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
from typing import Any

from . import __version__
from .daemon.server import call_daemon
from .errors import ParseError
from .kernel.activation import parse_activation_url
from .kernel.engine import EngineClient, EngineError
from .kernel.settings import load_settings


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _ensure_daemon_running() -> bool:
    resp = call_daemon({"op": "ping"})
    if resp.get("ok"):
        return True

    try:
        subprocess.run(
            [sys.executable, "-m", "qube_console.daemon_main", "start"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except Exception:
        return False

    for _ in range(30):
        time.sleep(0.05)
        resp = call_daemon({"op": "ping"})
        if resp.get("ok"):
            return True
    return False


def _daemon_unavailable() -> int:
    _print_json({"ok": False, "error": {"code": "daemon_unavailable", "message": "qube-consoled unavailable"}})
    return 2


def cmd_daemon(args: argparse.Namespace) -> int:
    if args.action == "status":
        resp = call_daemon({"op": "ping"})
        if resp.get("ok"):
            r = resp.get("result") if isinstance(resp.get("result"), dict) else {}
            print(f"qube-consoled: running pid={r.get('pid')} version={r.get('version')}")
            return 0
        print("qube-consoled: not running")
        return 1

    if args.action == "start":
        if _ensure_daemon_running():
            print("qube-consoled: running")
            return 0
        print("qube-consoled: failed to start")
        return 1

    if args.action == "stop":
        resp = call_daemon({"op": "shutdown"})
        if resp.get("ok"):
            print("qube-consoled: shutdown requested")
            return 0
        print("qube-consoled: not running")
        return 0

    return 2


def cmd_session_start(args: argparse.Namespace) -> int:
    if not _ensure_daemon_running():
        return _daemon_unavailable()
    resp = call_daemon({"op": "session_start", "args": {"container_id": args.container}})
    _print_json(resp)
    return 0 if resp.get("ok") else 2


def cmd_session_send(args: argparse.Namespace) -> int:
    text = " ".join(args.text)
    resp = call_daemon({"op": "session_send", "args": {"container_id": args.container, "text": text}})
    if args.json or not resp.get("ok"):
        _print_json(resp)
        return 0 if resp.get("ok") else 2
    result = resp.get("result") if isinstance(resp.get("result"), dict) else {}
    output = str(result.get("output") or "")
    if output:
        print(output)
    return 0


def cmd_session_stop(args: argparse.Namespace) -> int:
    resp = call_daemon({"op": "session_stop", "args": {"container_id": args.container}})
    _print_json(resp)
    return 0 if resp.get("ok") else 2


def cmd_session_list(args: argparse.Namespace) -> int:
    resp = call_daemon({"op": "session_list"})
    _print_json(resp)
    return 0 if resp.get("ok") else 2


def cmd_console(args: argparse.Namespace) -> int:
    if not args.stream and not _ensure_daemon_running():
        return _daemon_unavailable()
    from .ports.tui.app import run_console

    return run_console(
        str(args.container or ""),
        stream=bool(args.stream),
        base_url=str(args.url or ""),
        tagged=not bool(args.raw),
    )


def cmd_open(args: argparse.Namespace) -> int:
    settings = load_settings()
    try:
        event = parse_activation_url(args.url, scheme=settings.activation.scheme)
    except ParseError as e:
        _print_json({"ok": False, "error": {"code": e.code, "message": e.message}})
        return 2
    if not _ensure_daemon_running():
        return _daemon_unavailable()
    from .ports.tui.app import run_console

    # A running console receives the URL through the single-instance socket.
    return run_console("", argv=[event.url], settings=settings)


def cmd_containers(args: argparse.Namespace) -> int:
    client = EngineClient.from_settings(load_settings().engine)
    try:
        items = client.list_containers()
    except EngineError as e:
        _print_json({"ok": False, "error": {"code": e.code, "message": e.message}})
        return 2
    if args.json:
        _print_json({"ok": True, "result": {"containers": [c.model_dump() for c in items]}})
        return 0
    if not items:
        print("(no containers)")
        return 0
    for c in items:
        status = "running" if c.running else "stopped"
        print(f"{c.name}\t{status}\tpid={c.pid if c.pid > 0 else '-'}\timage={c.image or '-'}\tports={c.ports or '-'}")
    return 0


def cmd_web(args: argparse.Namespace) -> int:
    if not _ensure_daemon_running():
        return _daemon_unavailable()
    from .ports.web.main import main as web_main

    argv: list[str] = []
    if args.host:
        argv += ["--host", str(args.host)]
    if args.port:
        argv += ["--port", str(int(args.port))]
    if args.reload:
        argv.append("--reload")
    return int(web_main(argv))


def cmd_version(args: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="qube-console", description="Interactive consoles for qube containers")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_daemon = sub.add_parser("daemon", help="Manage the console daemon (qube-consoled)")
    p_daemon.add_argument("action", choices=["start", "stop", "status"], help="Daemon action")
    p_daemon.set_defaults(func=cmd_daemon)

    p_session = sub.add_parser("session", help="Eval sessions (request/response bridge)")
    session_sub = p_session.add_subparsers(dest="action", required=True)

    p_session_start = session_sub.add_parser("start", help="Start (or reuse) the eval session of a container")
    p_session_start.add_argument("container", help="Container name")
    p_session_start.set_defaults(func=cmd_session_start)

    p_session_send = session_sub.add_parser("send", help="Send one command and print its output")
    p_session_send.add_argument("container", help="Container name")
    p_session_send.add_argument("text", nargs="+", help="Command text")
    p_session_send.add_argument("--json", action="store_true", help="Print the full daemon response")
    p_session_send.set_defaults(func=cmd_session_send)

    p_session_stop = session_sub.add_parser("stop", help="Stop a container's eval session")
    p_session_stop.add_argument("container", help="Container name")
    p_session_stop.set_defaults(func=cmd_session_stop)

    p_session_list = session_sub.add_parser("list", help="List eval sessions")
    p_session_list.set_defaults(func=cmd_session_list)

    p_console = sub.add_parser("console", help="Open the interactive console")
    p_console.add_argument("container", nargs="?", default="", help="Container name (or wait for qube:// activation)")
    p_console.add_argument("--stream", action="store_true", help="Use the websocket stream instead of the daemon bridge")
    p_console.add_argument("--url", default="", help="Web port base url for --stream (default: ws://<web.host>:<web.port>)")
    p_console.add_argument("--raw", action="store_true", help="Raw websocket framing (no command tags)")
    p_console.set_defaults(func=cmd_console)

    p_open = sub.add_parser("open", help="Handle a qube:// activation url")
    p_open.add_argument("url", help="Activation url, e.g. qube://console/web-1")
    p_open.set_defaults(func=cmd_open)

    p_containers = sub.add_parser("containers", help="List containers known to the engine")
    p_containers.add_argument("--json", action="store_true", help="Print JSON")
    p_containers.set_defaults(func=cmd_containers)

    p_web = sub.add_parser("web", help="Run the web port (FastAPI)")
    p_web.add_argument("--host", default="", help="Bind host (default: settings web.host)")
    p_web.add_argument("--port", type=int, default=0, help="Bind port (default: settings web.port)")
    p_web.add_argument("--reload", action="store_true", help="Enable autoreload (dev)")
    p_web.set_defaults(func=cmd_web)

    p_version = sub.add_parser("version", help="Show version")
    p_version.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())

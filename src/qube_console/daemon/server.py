from __future__ import annotations

import json
import logging
import os
import signal
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .. import __version__
from ..contracts.v1 import DaemonError, DaemonRequest, DaemonResponse
from ..errors import ConsoleError, error_from_code
from ..kernel.activation import container_from_location
from ..kernel.settings import Settings, load_settings
from ..paths import ensure_home
from ..runners.eval import EvalSession, SessionRegistry
from ..runners.launcher import Launcher
from ..util.fs import atomic_write_text
from ..util.time import utc_now_iso
from .correlator import CommandCorrelator
from .streaming import stream_session_to_socket


logger = logging.getLogger("qube_console.daemon")


@dataclass
class DaemonPaths:
    home: Path

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def sock_path(self) -> Path:
        return self.daemon_dir / "qube-consoled.sock"

    @property
    def pid_path(self) -> Path:
        return self.daemon_dir / "qube-consoled.pid"

    @property
    def log_path(self) -> Path:
        return self.daemon_dir / "qube-consoled.log"


def default_paths() -> DaemonPaths:
    return DaemonPaths(home=ensure_home())


class ConsoleService:
    """Everything the daemon owns: the session registry and the correlator."""

    def __init__(self, *, settings: Optional[Settings] = None, launcher: Optional[Launcher] = None) -> None:
        self.settings = settings or Settings()
        ev = self.settings.eval
        self.registry = SessionRegistry(
            launcher=launcher or Launcher(command=ev.command),
            max_backlog_bytes=ev.max_backlog_bytes,
        )
        self.correlator = CommandCorrelator.from_settings(ev)
        self.registry.set_exit_hook(self._on_session_exit)

    def _on_session_exit(self, session: EvalSession) -> None:
        logger.info(
            "eval process exited code=%s",
            session.exit_code,
            extra={"container_id": session.container_id, "pid": session.pid},
        )

    def close(self) -> None:
        self.registry.dispose_all()


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            s.sendall(b'{"op":"ping"}\n')
            _ = s.recv(1024)
            return True
    except Exception:
        return False


def _write_pid(pid_path: Path) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(pid_path, str(os.getpid()) + "\n")


def _remove_stale_socket(sock_path: Path) -> None:
    try:
        if sock_path.exists() and not _is_socket_alive(sock_path):
            sock_path.unlink()
    except Exception:
        pass


def _recv_json_line(conn: socket.socket) -> Dict[str, Any]:
    buf = b""
    while b"\n" not in buf:
        chunk = conn.recv(65536)
        if not chunk:
            break
        buf += chunk
        if len(buf) > 2_000_000:
            break
    line = buf.split(b"\n", 1)[0]
    try:
        return json.loads(line.decode("utf-8", errors="replace"))
    except Exception:
        return {}


def _send_json(conn: socket.socket, obj: Dict[str, Any]) -> None:
    data = (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
    conn.sendall(data)


def _error(code: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> DaemonResponse:
    return DaemonResponse(ok=False, error=DaemonError(code=code, message=message, details=(details or {})))


def _console_error(e: ConsoleError) -> DaemonResponse:
    return _error(e.code, e.message, details=e.to_details())


def _container_arg(args: Dict[str, Any]) -> str:
    cid = str(args.get("container_id") or "").strip()
    if cid:
        return cid
    return container_from_location(str(args.get("location") or ""))


def handle_request(req: DaemonRequest, service: ConsoleService) -> Tuple[DaemonResponse, bool]:
    op = str(req.op or "").strip()
    args = req.args or {}

    if op == "ping":
        return DaemonResponse(ok=True, result={"version": __version__, "pid": os.getpid(), "ts": utc_now_iso()}), False

    if op == "shutdown":
        try:
            service.close()
        except Exception:
            logger.exception("dispose on shutdown failed")
        return DaemonResponse(ok=True, result={"message": "shutting down"}), True

    try:
        if op == "session_start":
            cid = _container_arg(args)
            if not cid:
                return _error("missing_container_id", "missing container_id"), False
            session = service.registry.get_or_create(cid)
            return DaemonResponse(ok=True, result={"container_id": cid, "session": session.info().model_dump()}), False

        if op == "session_send":
            cid = _container_arg(args)
            if not cid:
                return _error("missing_container_id", "missing container_id (or location with ?name=)"), False
            text = str(args.get("text") or "")
            session = service.registry.get(cid)
            captured = service.correlator.send(session, text, command_id=str(args.get("command_id") or "") or None)
            return (
                DaemonResponse(
                    ok=True,
                    result={"container_id": cid, "output": captured.text, "captured": captured.model_dump()},
                ),
                False,
            )

        if op == "session_stop":
            cid = _container_arg(args)
            if not cid:
                return _error("missing_container_id", "missing container_id"), False
            if not service.registry.dispose(cid):
                return _error("session_not_found", f"no console session for {cid}", details={"container_id": cid}), False
            return DaemonResponse(ok=True, result={"container_id": cid, "stopped": True}), False

        if op == "session_list":
            sessions = [s.model_dump() for s in service.registry.list()]
            return DaemonResponse(ok=True, result={"sessions": sessions}), False
    except ConsoleError as e:
        logger.info("%s failed: %s", op, e.message, extra={"op": op, "container_id": e.container_id})
        return _console_error(e), False

    return _error("unknown_op", f"unknown op: {op}"), False


def _handle_attach(conn: socket.socket, req: DaemonRequest, service: ConsoleService) -> bool:
    """Reply to eval_attach; on success the connection becomes a stream. True if handed off."""
    args = req.args or {}
    cid = _container_arg(args)
    session: Optional[EvalSession] = None
    if not cid:
        resp = _error("missing_container_id", "missing container_id")
    else:
        try:
            if bool(args.get("create")):
                session = service.registry.get_or_create(cid)
            else:
                session = service.registry.get(cid)
            session.require_alive()
            resp = DaemonResponse(ok=True, result={"container_id": cid, "session": session.info().model_dump()})
        except ConsoleError as e:
            resp = _console_error(e)
    _send_json(conn, resp.model_dump())
    if not resp.ok or session is None:
        return False
    logger.info("stream attached", extra={"op": "eval_attach", "container_id": cid})
    stream_session_to_socket(
        sock=conn,
        session=session,
        replay=bool(args.get("replay")),
        command_timeout_s=float(service.settings.eval.command_timeout_seconds),
    )
    return True


def _serve_conn(conn: socket.socket, service: ConsoleService, stop_event: threading.Event) -> None:
    try:
        raw = _recv_json_line(conn)
        try:
            req = DaemonRequest.model_validate(raw)
        except Exception as e:
            resp = _error("invalid_request", "invalid request", details={"error": str(e)})
            _send_json(conn, resp.model_dump())
            return

        if str(req.op or "").strip() == "eval_attach":
            _handle_attach(conn, req, service)
            return

        resp, should_exit = handle_request(req, service)
        if should_exit:
            stop_event.set()
        try:
            _send_json(conn, resp.model_dump())
        except (BrokenPipeError, ConnectionResetError, OSError):
            # Client disconnected before response was sent - not an error
            pass
    except (BrokenPipeError, ConnectionResetError, OSError):
        pass
    except Exception:
        logger.exception("connection handler crashed")
    finally:
        try:
            conn.close()
        except Exception:
            pass


def serve_forever(
    paths: Optional[DaemonPaths] = None,
    *,
    service: Optional[ConsoleService] = None,
    stop_event: Optional[threading.Event] = None,
) -> int:
    p = paths or default_paths()
    p.daemon_dir.mkdir(parents=True, exist_ok=True)

    _remove_stale_socket(p.sock_path)
    if p.sock_path.exists() and _is_socket_alive(p.sock_path):
        return 0

    try:
        if p.sock_path.exists():
            p.sock_path.unlink()
    except Exception:
        pass

    svc = service or ConsoleService(settings=load_settings(p.home))
    stop = stop_event or threading.Event()

    # Graceful shutdown on SIGTERM/SIGINT
    def _signal_handler(signum: int, frame: Any) -> None:
        stop.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _signal_handler)
        signal.signal(signal.SIGINT, _signal_handler)

    logger.info("daemon listening on %s", p.sock_path)
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        s.bind(str(p.sock_path))
        s.listen(50)
        s.settimeout(1.0)  # Allow periodic check of stop_event
        _write_pid(p.pid_path)

        while not stop.is_set():
            try:
                conn, _ = s.accept()
            except socket.timeout:
                continue
            except KeyboardInterrupt:
                break
            except Exception:
                continue
            conn.settimeout(None)
            threading.Thread(
                target=_serve_conn,
                args=(conn, svc, stop),
                name="qube-daemon-conn",
                daemon=True,
            ).start()

    stop.set()
    logger.info("daemon stopping")
    try:
        svc.close()
    except Exception:
        logger.exception("dispose on exit failed")

    try:
        if p.sock_path.exists():
            p.sock_path.unlink()
    except Exception:
        pass
    try:
        if p.pid_path.exists():
            p.pid_path.unlink()
    except Exception:
        pass
    return 0


def call_daemon(req: Dict[str, Any], *, paths: Optional[DaemonPaths] = None, timeout_s: float = 60.0) -> Dict[str, Any]:
    p = paths or default_paths()
    try:
        request = DaemonRequest.model_validate(req)
    except Exception as e:
        return DaemonResponse(
            ok=False,
            error=DaemonError(code="invalid_request", message="invalid request", details={"error": str(e)}),
        ).model_dump()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(p.sock_path))
            s.sendall((json.dumps(request.model_dump(), ensure_ascii=False) + "\n").encode("utf-8"))
            obj = _recv_json_line(s)
        resp = DaemonResponse.model_validate(obj)
        return resp.model_dump()
    except Exception:
        return DaemonResponse(ok=False, error=DaemonError(code="daemon_unavailable", message="daemon unavailable")).model_dump()


def raise_for_response(resp: Dict[str, Any]) -> Dict[str, Any]:
    """Return `result` of a successful response or raise the typed ConsoleError."""
    if resp.get("ok"):
        result = resp.get("result")
        return result if isinstance(result, dict) else {}
    err = resp.get("error") if isinstance(resp.get("error"), dict) else {}
    raise error_from_code(
        str(err.get("code") or "daemon_error"),
        str(err.get("message") or "daemon error"),
        details=err.get("details") if isinstance(err.get("details"), dict) else None,
    )


def open_attach(
    container_id: str,
    *,
    replay: bool = False,
    create: bool = False,
    paths: Optional[DaemonPaths] = None,
    timeout_s: float = 10.0,
) -> Tuple[socket.socket, Dict[str, Any]]:
    """Open an eval_attach stream. Returns the connected socket and the attach result."""
    p = paths or default_paths()
    req = DaemonRequest(op="eval_attach", args={"container_id": container_id, "replay": replay, "create": create})
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.settimeout(timeout_s)
        s.connect(str(p.sock_path))
        s.sendall((json.dumps(req.model_dump(), ensure_ascii=False) + "\n").encode("utf-8"))
        # Read byte-wise so no stream frame is consumed with the reply.
        buf = b""
        while not buf.endswith(b"\n"):
            b = s.recv(1)
            if not b:
                break
            buf += b
        obj = json.loads(buf.decode("utf-8", errors="replace") or "{}")
        result = raise_for_response(DaemonResponse.model_validate(obj).model_dump())
    except ConsoleError:
        s.close()
        raise
    except Exception as e:
        s.close()
        raise error_from_code("daemon_unavailable", f"daemon unavailable: {e}") from e
    s.settimeout(None)
    return s, result


def read_pid(paths: Optional[DaemonPaths] = None) -> int:
    p = paths or default_paths()
    try:
        txt = p.pid_path.read_text(encoding="utf-8").strip()
        return int(txt) if txt.isdigit() else 0
    except Exception:
        return 0

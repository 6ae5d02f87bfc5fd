"""Activation: single-instance ownership and deep-link routing.

A second launch of the console does not start a second UI; it forwards its
argv (typically one `qube://...` URL) to the primary instance over a unix
socket in the console home and exits. The primary parses the URL into an
ActivationEvent and hands it to the UI once it is ready; until then only the
most recent event is kept.
"""
from __future__ import annotations

import json
import logging
import os
import socket
import threading
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, unquote, urlsplit

from ..contracts.v1 import ActivationEvent
from ..errors import ParseError
from ..paths import ensure_home
from ..util.file_lock import LockUnavailableError, acquire_lockfile, release_lockfile, write_lock_owner
from ..util.fs import unlink_quietly


logger = logging.getLogger("qube_console.activation")

ActivationHandler = Callable[[ActivationEvent], None]


def parse_activation_url(url: str, *, scheme: str = "qube") -> ActivationEvent:
    raw = str(url or "").strip()
    if not raw:
        raise ParseError("empty activation url")
    want = str(scheme or "qube").strip().lower()
    try:
        parts = urlsplit(raw)
    except ValueError as e:
        raise ParseError(f"malformed activation url: {e}", details={"url": raw}) from e
    if parts.scheme.lower() != want:
        raise ParseError(f"expected {want}:// url, got {parts.scheme or 'none'}", details={"url": raw})
    action = unquote(parts.netloc or "").strip()
    if not action:
        raise ParseError("activation url has no action", details={"url": raw})

    segments = [unquote(s) for s in (parts.path or "").split("/") if s]
    query: Dict[str, str] = {}
    # Repeated keys: last value wins.
    for k, v in parse_qsl(parts.query or "", keep_blank_values=True):
        query[k] = v
    return ActivationEvent(action=action, param=segments[0] if segments else "", query=query, url=raw)


def container_from_location(location: str) -> str:
    """Container name from a console navigation location (`console.html?name=<container>`)."""
    raw = str(location or "").strip()
    if not raw:
        return ""
    try:
        query = urlsplit(raw).query
    except ValueError:
        return ""
    name = ""
    for k, v in parse_qsl(query or "", keep_blank_values=True):
        if k == "name":
            name = v
    return name.strip()


def find_activation_url(argv: List[str], *, scheme: str = "qube") -> str:
    prefix = f"{str(scheme or 'qube').strip().lower()}://"
    for arg in argv:
        s = str(arg or "").strip()
        if s.lower().startswith(prefix):
            return s
    return ""


class ActivationRouter:
    """Delivers activation events to the UI, holding at most one until it is ready."""

    def __init__(self, *, scheme: str = "qube") -> None:
        self.scheme = scheme
        self._lock = threading.Lock()
        self._handler: Optional[ActivationHandler] = None
        self._pending: Optional[ActivationEvent] = None

    @property
    def pending(self) -> Optional[ActivationEvent]:
        with self._lock:
            return self._pending

    def submit(self, event: ActivationEvent) -> None:
        with self._lock:
            handler = self._handler
            if handler is None:
                if self._pending is not None:
                    logger.info(
                        "pending activation replaced: %s",
                        self._pending.url,
                        extra={"action": event.action},
                    )
                self._pending = event
                return
        handler(event)

    def submit_url(self, url: str) -> Optional[ActivationEvent]:
        """Parse and route `url`. Malformed URLs are logged and dropped."""
        try:
            event = parse_activation_url(url, scheme=self.scheme)
        except ParseError as e:
            logger.warning("discarding activation url: %s", e.message)
            return None
        self.submit(event)
        return event

    def submit_argv(self, argv: List[str]) -> Optional[ActivationEvent]:
        url = find_activation_url(argv, scheme=self.scheme)
        if not url:
            return None
        return self.submit_url(url)

    def mark_ready(self, handler: ActivationHandler) -> None:
        with self._lock:
            self._handler = handler
            pending = self._pending
            self._pending = None
        if pending is not None:
            handler(pending)

    def mark_not_ready(self) -> None:
        with self._lock:
            self._handler = None


class SingleInstance:
    """Primary-instance lock plus the socket secondary instances forward to."""

    def __init__(self, *, home: Optional[Path] = None, name: str = "console") -> None:
        base = home or ensure_home()
        self.lock_path = base / f"{name}.lock"
        self.sock_path = base / f"{name}.sock"
        self._lock_file: Optional[IO[bytes]] = None
        self._server: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @property
    def is_primary(self) -> bool:
        return self._lock_file is not None

    def acquire(self) -> bool:
        if self._lock_file is not None:
            return True
        try:
            f = acquire_lockfile(self.lock_path, blocking=False)
        except LockUnavailableError:
            return False
        write_lock_owner(f, os.getpid())
        self._lock_file = f
        return True

    def listen(self, on_argv: Callable[[List[str]], None]) -> None:
        """Accept forwarded argv lists from secondary instances (primary only)."""
        if self._lock_file is None:
            raise RuntimeError("listen() requires the instance lock")
        unlink_quietly(self.sock_path)
        srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        srv.bind(str(self.sock_path))
        srv.listen(8)
        srv.settimeout(0.5)
        self._server = srv
        self._thread = threading.Thread(
            target=self._accept_loop,
            args=(srv, on_argv),
            name="qube-activation",
            daemon=True,
        )
        self._thread.start()

    def _accept_loop(self, srv: socket.socket, on_argv: Callable[[List[str]], None]) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = srv.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            with conn:
                argv = _read_argv(conn)
                try:
                    conn.sendall(b'{"ok":true}\n')
                except OSError:
                    pass
            if argv is None:
                continue
            try:
                on_argv(argv)
            except Exception:
                logger.exception("activation handler failed")

    def forward(self, argv: List[str], *, timeout_s: float = 2.0) -> bool:
        """Send `argv` to the primary instance. True if it was accepted."""
        payload = (json.dumps({"argv": [str(a) for a in argv]}, ensure_ascii=False) + "\n").encode("utf-8")
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
                s.settimeout(timeout_s)
                s.connect(str(self.sock_path))
                s.sendall(payload)
                reply = s.recv(1024)
        except OSError as e:
            logger.warning("activation forward failed: %s", e)
            return False
        return reply.startswith(b'{"ok":true}')

    def release(self) -> None:
        self._stop.set()
        if self._server is not None:
            try:
                self._server.close()
            except Exception:
                pass
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._lock_file is not None:
            unlink_quietly(self.sock_path)
            release_lockfile(self._lock_file)
            self._lock_file = None

    def __enter__(self) -> "SingleInstance":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


def _read_argv(conn: socket.socket) -> Optional[List[str]]:
    conn.settimeout(2.0)
    buf = b""
    try:
        while b"\n" not in buf and len(buf) < 65536:
            chunk = conn.recv(4096)
            if not chunk:
                break
            buf += chunk
    except OSError:
        return None
    try:
        obj = json.loads(buf.split(b"\n", 1)[0].decode("utf-8", errors="replace"))
    except ValueError:
        logger.warning("malformed activation payload")
        return None
    argv = obj.get("argv") if isinstance(obj, dict) else None
    if not isinstance(argv, list):
        return None
    return [str(a) for a in argv]

from __future__ import annotations

import json
import logging
import queue
import socket
import threading
from typing import Any, Dict, Optional

from ..errors import ConsoleError
from ..runners.eval import EvalSession, OutputChunk
from ..util.time import utc_now_iso
from .correlator import new_command_id


logger = logging.getLogger("qube_console.streaming")

# Bytes the UI sends outside the line buffer (Ctrl-C, Ctrl-X).
CONTROL_INPUTS = {"\x03", "\x18"}


def is_control_input(text: str) -> bool:
    return text in CONTROL_INPUTS


def normalize_command_input(text: str) -> str:
    """Command text as written to stdin: exactly one trailing newline."""
    return str(text or "").rstrip("\r\n") + "\n"


def output_frame(chunk: OutputChunk) -> Dict[str, Any]:
    return {"t": "o", "d": chunk.text(), "s": chunk.stream, "cmd": chunk.command_id}


def _send_ndjson(sock: socket.socket, obj: Dict[str, Any]) -> None:
    data = (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
    sock.sendall(data)


def _iter_ndjson(sock: socket.socket):
    buf = b""
    while True:
        try:
            chunk = sock.recv(65536)
        except socket.timeout:
            continue
        if not chunk:
            return
        buf += chunk
        while b"\n" in buf:
            line, buf = buf.split(b"\n", 1)
            if not line.strip():
                continue
            try:
                obj = json.loads(line.decode("utf-8", errors="replace"))
            except Exception:
                continue
            if isinstance(obj, dict):
                yield obj


class _Relay:
    def __init__(self, sock: socket.socket, session: EvalSession, *, command_timeout_s: float) -> None:
        self.sock = sock
        self.session = session
        self.command_timeout_s = float(command_timeout_s)
        self.send_lock = threading.Lock()
        self.q: "queue.Queue[Optional[OutputChunk]]" = queue.Queue(maxsize=4096)
        self.closed = threading.Event()

    def send(self, obj: Dict[str, Any]) -> None:
        with self.send_lock:
            _send_ndjson(self.sock, obj)

    def on_chunk(self, chunk: Optional[OutputChunk]) -> None:
        try:
            self.q.put_nowait(chunk)
        except queue.Full:
            # Slow client: drop the relay instead of blocking the reader thread.
            logger.warning("stream client too slow, closing", extra={"container_id": self.session.container_id})
            self.closed.set()
            try:
                self.q.get_nowait()
                self.q.put_nowait(None)
            except Exception:
                pass

    def write_input(self, text: str, command_id: str) -> None:
        if is_control_input(text):
            # Interrupts bypass the command queue so they can reach a hung command.
            self.session.write(text.encode("utf-8"), timeout=self.command_timeout_s)
            return
        cid = command_id or new_command_id()
        with self.session.command_slot(self.command_timeout_s):
            self.session.write(
                normalize_command_input(text).encode("utf-8", errors="replace"),
                command_id=cid,
                timeout=self.command_timeout_s,
            )

    def pump_in(self) -> None:
        try:
            for obj in _iter_ndjson(self.sock):
                if self.closed.is_set():
                    break
                if str(obj.get("t") or "") != "i":
                    continue
                text = str(obj.get("d") or "")
                if not text:
                    continue
                try:
                    self.write_input(text, str(obj.get("id") or ""))
                except ConsoleError as e:
                    self.send({"t": "error", "code": e.code, "message": e.message, "id": obj.get("id")})
        except (BrokenPipeError, ConnectionResetError, OSError):
            pass
        finally:
            self.closed.set()
            try:
                self.q.put_nowait(None)
            except Exception:
                pass


def stream_session_to_socket(
    *,
    sock: socket.socket,
    session: EvalSession,
    replay: bool = False,
    command_timeout_s: float = 10.0,
    heartbeat_seconds: int = 30,
) -> None:
    """Relay a session over `sock` as NDJSON until either side closes.

    Out: {"t":"o","d","s","cmd"} per output chunk, {"t":"exit","code"} when the
    process is gone, {"t":"heartbeat"} when idle. In: {"t":"i","d","id"}.
    """
    relay = _Relay(sock, session, command_timeout_s=command_timeout_s)
    if heartbeat_seconds <= 0 or heartbeat_seconds > 300:
        heartbeat_seconds = 30

    if replay:
        token, backlog = session.add_listener_with_backlog(relay.on_chunk)
    else:
        token, backlog = session.add_listener(relay.on_chunk), b""
    reader = threading.Thread(
        target=relay.pump_in,
        name=f"qube-stream-in:{session.container_id}",
        daemon=True,
    )
    try:
        if backlog:
            relay.send({"t": "o", "d": backlog.decode("utf-8", errors="replace"), "s": "stdout", "cmd": None})
        reader.start()

        while True:
            try:
                item = relay.q.get(timeout=float(heartbeat_seconds))
            except queue.Empty:
                relay.send({"t": "heartbeat", "ts": utc_now_iso()})
                continue
            if item is None:
                break
            relay.send(output_frame(item))

        if not session.is_alive():
            session.wait_exit(timeout=2.0)
            relay.send({"t": "exit", "code": session.exit_code})
    except (BrokenPipeError, ConnectionResetError, OSError):
        return
    finally:
        relay.closed.set()
        session.remove_listener(token)
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except Exception:
            pass
        try:
            sock.close()
        except Exception:
            pass

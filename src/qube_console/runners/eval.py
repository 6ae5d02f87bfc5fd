from __future__ import annotations

import logging
import os
import selectors
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from ..contracts.v1 import OutputStream, SessionInfo
from ..errors import CommandTimedOut, ProcessDead, SessionNotFound, WriteFailed
from ..util.time import utc_now_iso
from .launcher import Launcher, ProcessHandle


logger = logging.getLogger("qube_console.eval")


@dataclass(frozen=True)
class OutputChunk:
    data: bytes
    stream: OutputStream
    # Command that was in flight when the bytes were read (None before the first command).
    command_id: Optional[str]

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


# Listeners receive None once, when the session's output is closed for good.
OutputListener = Callable[[Optional[OutputChunk]], None]


class _FifoSlot:
    """Ticket lock: holders are served strictly in arrival order."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        self._abandoned: Set[int] = set()

    def acquire(self, timeout: Optional[float]) -> None:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
            while self._serving != ticket:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._abandoned.add(ticket)
                    raise CommandTimedOut(f"command queue wait exceeded {timeout:.1f}s")
                self._cond.wait(remaining)

    def release(self) -> None:
        with self._cond:
            self._serving += 1
            while self._serving in self._abandoned:
                self._abandoned.discard(self._serving)
                self._serving += 1
            self._cond.notify_all()

    def queued(self) -> int:
        with self._cond:
            return max(0, self._next_ticket - self._serving - len(self._abandoned))


class EvalSession:
    """A container's long-lived evaluation process plus its output state.

    One reader thread multiplexes stdout/stderr; chunks are kept in a bounded
    backlog and fanned out to listeners. Dead is one-way: once the process has
    exited (or a write failed) the session never accepts input again.
    """

    def __init__(
        self,
        *,
        container_id: str,
        handle: ProcessHandle,
        on_exit: Optional[Callable[["EvalSession"], None]] = None,
        max_backlog_bytes: int = 1_000_000,
    ) -> None:
        self.container_id = container_id
        self._handle = handle
        self._on_exit = on_exit
        self._max_backlog_bytes = int(max_backlog_bytes)
        self.started_at = utc_now_iso()

        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._slot = _FifoSlot()
        self._listeners: Dict[int, OutputListener] = {}
        self._listener_seq = 0
        self._backlog: deque[bytes] = deque()
        self._backlog_bytes = 0
        self._alive = True
        self._stop_requested = False
        self._in_flight: Optional[str] = None
        self._stale_markers: List[str] = []
        self._exited = threading.Event()
        self._exit_code: Optional[int] = None

        self._selector = selectors.DefaultSelector()
        self._cmd_r, self._cmd_w = os.pipe()
        os.set_blocking(self._cmd_r, False)
        os.set_blocking(self._cmd_w, False)
        for fd in (handle.stdout_fd, handle.stderr_fd, handle.stdin_fd):
            os.set_blocking(fd, False)
        self._selector.register(handle.stdout_fd, selectors.EVENT_READ, data="stdout")
        self._selector.register(handle.stderr_fd, selectors.EVENT_READ, data="stderr")
        self._selector.register(self._cmd_r, selectors.EVENT_READ, data="cmd")
        self._open_streams = 2

        self._thread = threading.Thread(target=self._loop, name=f"qube-eval:{container_id}", daemon=True)
        self._thread.start()

    @property
    def pid(self) -> int:
        return self._handle.pid

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def in_flight(self) -> Optional[str]:
        with self._lock:
            return self._in_flight

    def is_alive(self) -> bool:
        with self._lock:
            if self._alive and self._handle.poll() is not None:
                # Exited; the reader still drains whatever is left in the pipes.
                self._alive = False
            return self._alive

    def require_alive(self) -> None:
        if not self.is_alive():
            raise ProcessDead(f"eval process for {self.container_id} has exited", container_id=self.container_id)

    def mark_dead(self, reason: str = "") -> None:
        with self._lock:
            if self._stop_requested:
                return
            self._alive = False
            self._stop_requested = True
        logger.info("session marked dead: %s", reason or "unknown", extra={"container_id": self.container_id})
        self._wake()

    def wait_exit(self, timeout: Optional[float] = None) -> bool:
        return self._exited.wait(timeout)

    # Listeners

    def add_listener(self, listener: OutputListener) -> int:
        with self._lock:
            self._listener_seq += 1
            token = self._listener_seq
            closed = self._exited.is_set()
            if not closed:
                self._listeners[token] = listener
        if closed:
            listener(None)
        return token

    def remove_listener(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)

    def add_listener_with_backlog(self, listener: OutputListener) -> Tuple[int, bytes]:
        """Register `listener` and return the output read so far.

        Every chunk is either in the returned backlog or delivered to the
        listener, never both.
        """
        with self._lock:
            self._listener_seq += 1
            token = self._listener_seq
            backlog = b"".join(self._backlog)
            closed = self._exited.is_set()
            if not closed:
                self._listeners[token] = listener
        if closed:
            listener(None)
        return token, backlog

    # Completion markers of commands that timed out before their marker arrived.

    def push_stale_marker(self, marker: str) -> None:
        with self._lock:
            self._stale_markers.append(marker)

    def take_stale_markers(self) -> List[str]:
        with self._lock:
            out = list(self._stale_markers)
            self._stale_markers.clear()
        return out

    # Input

    @contextmanager
    def command_slot(self, timeout: Optional[float]) -> Iterator[None]:
        """Hold the session's FIFO command slot (one in-flight command at a time)."""
        self._slot.acquire(timeout)
        try:
            yield
        finally:
            self._slot.release()

    def queued_commands(self) -> int:
        return self._slot.queued()

    def write(self, data: bytes, *, command_id: Optional[str] = None, timeout: float = 5.0) -> None:
        """Write `data` to stdin completely or fail.

        Raises ProcessDead if the session is already dead, WriteFailed (and marks
        the session dead) on an OS error, CommandTimedOut if the process does
        not drain its stdin within `timeout`.
        """
        if not data:
            return
        with self._write_lock:
            self.require_alive()
            if command_id is not None:
                with self._lock:
                    self._in_flight = command_id
            remaining = data
            deadline = time.monotonic() + max(0.0, timeout)
            while remaining:
                try:
                    written = os.write(self._handle.stdin_fd, remaining)
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise CommandTimedOut(
                            f"stdin of {self.container_id} not drained within {timeout:.1f}s",
                            container_id=self.container_id,
                        )
                    time.sleep(0.01)
                    continue
                except (OSError, ValueError) as e:
                    self.mark_dead(f"write failed: {e}")
                    raise WriteFailed(f"write to {self.container_id} failed: {e}", container_id=self.container_id) from e
                if written <= 0:
                    self.mark_dead("write returned 0")
                    raise WriteFailed(f"write to {self.container_id} failed", container_id=self.container_id)
                remaining = remaining[written:]

    def info(self) -> SessionInfo:
        with self._lock:
            backlog = self._backlog_bytes
            in_flight = self._in_flight
        return SessionInfo(
            container_id=self.container_id,
            pid=self.pid,
            alive=self.is_alive(),
            exit_code=self._exit_code,
            started_at=self.started_at,
            backlog_bytes=backlog,
            in_flight=in_flight,
        )

    def dispose(self, *, timeout: float = 5.0) -> None:
        """Stop the process, close every descriptor and reap the child."""
        self.mark_dead("disposed")
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=timeout)
        if not self._handle.closed:
            with self._write_lock:
                self._exit_code = self._handle.close()

    # Reader thread

    def _wake(self) -> None:
        try:
            os.write(self._cmd_w, b"x")
        except Exception:
            pass

    def _append_backlog(self, chunk: bytes) -> None:
        self._backlog.append(chunk)
        self._backlog_bytes += len(chunk)
        limit = max(0, self._max_backlog_bytes)
        while limit and self._backlog_bytes > limit and self._backlog:
            drop = self._backlog.popleft()
            self._backlog_bytes -= len(drop)

    def _publish(self, chunk: Optional[OutputChunk], listeners: Optional[List[OutputListener]] = None) -> None:
        if listeners is None:
            with self._lock:
                listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(chunk)
            except Exception:
                logger.exception("output listener failed", extra={"container_id": self.container_id})

    def _on_readable(self, fd: int, stream: OutputStream) -> None:
        while True:
            try:
                data = os.read(fd, 65536)
            except BlockingIOError:
                return
            except OSError:
                data = b""
            if not data:
                try:
                    self._selector.unregister(fd)
                except Exception:
                    pass
                self._open_streams -= 1
                return
            # Same critical section as add_listener_with_backlog.
            with self._lock:
                self._append_backlog(data)
                command_id = self._in_flight
                listeners = list(self._listeners.values())
            self._publish(OutputChunk(data=data, stream=stream, command_id=command_id), listeners)

    def _loop(self) -> None:
        try:
            while self._open_streams > 0:
                with self._lock:
                    if self._stop_requested:
                        break
                events = self._selector.select(timeout=0.2)
                if not events and self._handle.poll() is not None:
                    # Exited, and nothing left to read (descendants may still hold the pipes).
                    break
                for key, mask in events:
                    if not mask & selectors.EVENT_READ:
                        continue
                    if key.data == "cmd":
                        try:
                            os.read(self._cmd_r, 65536)
                        except Exception:
                            pass
                        continue
                    self._on_readable(int(key.fd), key.data)
        except Exception:
            logger.exception("eval reader loop crashed", extra={"container_id": self.container_id})
        finally:
            self._finish()

    def _finish(self) -> None:
        with self._lock:
            self._alive = False
        with self._write_lock:
            self._exit_code = self._handle.close()
        try:
            self._selector.close()
        except Exception:
            pass
        for fd in (self._cmd_r, self._cmd_w):
            try:
                os.close(fd)
            except Exception:
                pass
        logger.info(
            "session ended exit_code=%s",
            self._exit_code,
            extra={"container_id": self.container_id, "pid": self.pid},
        )
        self._publish(None)
        self._exited.set()
        with self._lock:
            self._listeners.clear()
        if self._on_exit is not None:
            try:
                self._on_exit(self)
            except Exception:
                logger.exception("session exit hook failed", extra={"container_id": self.container_id})


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class SessionRegistry:
    """Container id -> EvalSession, at most one live session per container.

    Creation is serialized per container id so concurrent `get_or_create`
    calls never spawn two processes. Exited sessions stay registered as dead
    tombstones (callers see ProcessDead) until disposed or replaced.
    """

    def __init__(self, *, launcher: Launcher, max_backlog_bytes: int = 1_000_000) -> None:
        self._launcher = launcher
        self._max_backlog_bytes = int(max_backlog_bytes)
        self._lock = threading.Lock()
        self._key_locks: Dict[str, _KeyLock] = {}
        self._sessions: Dict[str, EvalSession] = {}
        self._exit_hook: Optional[Callable[[EvalSession], None]] = None

    def set_exit_hook(self, hook: Optional[Callable[[EvalSession], None]]) -> None:
        with self._lock:
            self._exit_hook = hook

    @contextmanager
    def _key_lock(self, container_id: str) -> Iterator[None]:
        """Hold the per-container creation lock; the entry is dropped once unused and sessionless."""
        with self._lock:
            entry = self._key_locks.get(container_id)
            if entry is None:
                entry = _KeyLock()
                self._key_locks[container_id] = entry
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0 and container_id not in self._sessions:
                    self._key_locks.pop(container_id, None)

    def _on_session_exit(self, session: EvalSession) -> None:
        with self._lock:
            hook = self._exit_hook
        if hook is not None:
            try:
                hook(session)
            except Exception:
                logger.exception("registry exit hook failed", extra={"container_id": session.container_id})

    @staticmethod
    def _normalize(container_id: str) -> str:
        cid = str(container_id or "").strip()
        if not cid:
            raise SessionNotFound("missing container id")
        return cid

    def get_or_create(self, container_id: str) -> EvalSession:
        cid = self._normalize(container_id)
        with self._key_lock(cid):
            with self._lock:
                existing = self._sessions.get(cid)
            if existing is not None and existing.is_alive():
                return existing
            if existing is not None:
                existing.dispose()
            handle = self._launcher.launch(cid)
            session = EvalSession(
                container_id=cid,
                handle=handle,
                on_exit=self._on_session_exit,
                max_backlog_bytes=self._max_backlog_bytes,
            )
            with self._lock:
                self._sessions[cid] = session
            return session

    def get(self, container_id: str) -> EvalSession:
        cid = self._normalize(container_id)
        with self._lock:
            session = self._sessions.get(cid)
        if session is None:
            raise SessionNotFound(f"no console session for {cid}", container_id=cid)
        return session

    def find(self, container_id: str) -> Optional[EvalSession]:
        try:
            return self.get(container_id)
        except SessionNotFound:
            return None

    def mark_dead(self, container_id: str) -> None:
        self.get(container_id).mark_dead("marked dead by caller")

    def dispose(self, container_id: str) -> bool:
        cid = str(container_id or "").strip()
        if not cid:
            return False
        with self._key_lock(cid):
            with self._lock:
                session = self._sessions.pop(cid, None)
            if session is None:
                return False
            session.dispose()
        return True

    def dispose_all(self) -> None:
        with self._lock:
            ids = list(self._sessions.keys())
        for cid in ids:
            try:
                self.dispose(cid)
            except Exception:
                logger.exception("dispose failed", extra={"container_id": cid})

    def list(self) -> List[SessionInfo]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.info() for s in sessions]

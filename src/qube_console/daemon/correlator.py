"""Request/response correlation over an unframed process output stream.

The eval process gives no signal that a command has finished. By default the
output produced during a fixed quiescence window after the write is taken as
the command's response (150 ms). This cannot tell a fast command from a slow
one that is still printing, so for cooperative processes a completion-marker
mode is available: a marker-echo command is written after each command and the
capture ends at the line equal to the marker.

Commands on one session are strictly FIFO: a command holds the session's
command slot from listener registration until its capture window closes, so no
two commands ever interleave their writes or their captures.
"""
from __future__ import annotations

import codecs
import logging
import threading
import time
import uuid
from typing import List, Optional, Tuple

from ..contracts.v1 import CapturedOutput, CommandRecord
from ..errors import CommandTimedOut, SessionNotFound
from ..kernel.settings import EvalSettings
from ..runners.eval import EvalSession, OutputChunk


logger = logging.getLogger("qube_console.correlator")


def new_command_id() -> str:
    return uuid.uuid4().hex[:12]


class _Accumulator:
    def __init__(self, *, marker: str = "") -> None:
        self._lock = threading.Lock()
        self._chunks: List[bytes] = []
        self.stdout_bytes = 0
        self.stderr_bytes = 0
        self._marker = marker
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""
        self.marker_seen = threading.Event()
        self.closed = threading.Event()

    def on_chunk(self, chunk: Optional[OutputChunk]) -> None:
        if chunk is None:
            self.closed.set()
            return
        with self._lock:
            self._chunks.append(chunk.data)
            if chunk.stream == "stderr":
                self.stderr_bytes += len(chunk.data)
            else:
                self.stdout_bytes += len(chunk.data)
            if self._marker and not self.marker_seen.is_set():
                # Only the new bytes plus the unfinished last line are scanned.
                lines = (self._partial + self._decoder.decode(chunk.data)).split("\n")
                self._partial = lines.pop()
                if any(line.strip() == self._marker for line in lines) or self._partial.strip() == self._marker:
                    self.marker_seen.set()

    def text(self) -> str:
        with self._lock:
            return b"".join(self._chunks).decode("utf-8", errors="replace")


def _drop_stale(text: str, stale: List[str]) -> Tuple[str, List[str]]:
    """Drop output up to the last marker of an earlier timed-out command.

    Returns the remaining text and the stale markers that did not show up.
    """
    lines = text.splitlines()
    cut = -1
    unseen: List[str] = []
    for marker in stale:
        hits = [i for i, line in enumerate(lines) if line.strip() == marker]
        if hits:
            cut = max(cut, hits[-1])
        else:
            unseen.append(marker)
    if cut < 0:
        return text, unseen
    return "\n".join(lines[cut + 1 :]), unseen


def _strip_marker(text: str, marker: str) -> str:
    out: List[str] = []
    for line in text.splitlines():
        if line.strip() == marker:
            break
        if marker in line:
            # Echo of the marker command itself.
            continue
        out.append(line)
    return "\n".join(out)


class CommandCorrelator:
    def __init__(
        self,
        *,
        quiescence_ms: int = 150,
        command_timeout_seconds: float = 10.0,
        completion_marker: str = "",
        marker_command: str = "echo {marker}",
    ) -> None:
        self.quiescence_s = max(1, int(quiescence_ms)) / 1000.0
        self.command_timeout_s = max(0.01, float(command_timeout_seconds))
        self.completion_marker = str(completion_marker or "").strip()
        self.marker_command = str(marker_command or "echo {marker}")

    @classmethod
    def from_settings(cls, settings: EvalSettings) -> "CommandCorrelator":
        return cls(
            quiescence_ms=settings.quiescence_ms,
            command_timeout_seconds=settings.command_timeout_seconds,
            completion_marker=settings.completion_marker,
            marker_command=settings.marker_command,
        )

    def send(
        self,
        session: Optional[EvalSession],
        command_text: str,
        *,
        command_id: Optional[str] = None,
    ) -> CapturedOutput:
        if session is None:
            raise SessionNotFound("no console session")
        session.require_alive()

        record = CommandRecord(id=command_id or new_command_id(), text=str(command_text or "").rstrip("\r\n"))
        deadline = time.monotonic() + self.command_timeout_s

        with session.command_slot(self.command_timeout_s):
            # The process may have died while this command was queued.
            session.require_alive()
            marker = f"{self.completion_marker}:{record.id}" if self.completion_marker else ""
            acc = _Accumulator(marker=marker)
            # Output of earlier timed-out commands arrives ahead of this one.
            stale = session.take_stale_markers() if marker else []
            marker_written = False
            completed = False
            token = session.add_listener(acc.on_chunk)
            started = time.monotonic()
            try:
                session.write(
                    (record.text + "\n").encode("utf-8", errors="replace"),
                    command_id=record.id,
                    timeout=max(0.0, deadline - time.monotonic()),
                )
                if marker:
                    line = self.marker_command.replace("{marker}", marker).rstrip("\n") + "\n"
                    session.write(line.encode("utf-8", errors="replace"), timeout=max(0.0, deadline - time.monotonic()))
                    marker_written = True
                    if not acc.marker_seen.wait(max(0.0, deadline - time.monotonic())):
                        raise CommandTimedOut(
                            f"no completion marker from {session.container_id} within {self.command_timeout_s:.1f}s",
                            container_id=session.container_id,
                            details={"command_id": record.id},
                        )
                else:
                    # Fixed window from write completion; a closed stream ends it early.
                    acc.closed.wait(self.quiescence_s)
                completed = True
            finally:
                session.remove_listener(token)
                if not completed:
                    for m in stale:
                        session.push_stale_marker(m)
                    if marker_written:
                        session.push_stale_marker(marker)

            raw = acc.text()
            if stale:
                raw, unseen = _drop_stale(raw, stale)
                for m in unseen:
                    session.push_stale_marker(m)
        text = _strip_marker(raw, marker) if marker else raw
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            "command captured bytes=%d elapsed_ms=%d",
            acc.stdout_bytes + acc.stderr_bytes,
            elapsed_ms,
            extra={"container_id": session.container_id, "command_id": record.id},
        )
        return CapturedOutput(
            command_id=record.id,
            container_id=session.container_id,
            text=text.strip(),
            stdout_bytes=acc.stdout_bytes,
            stderr_bytes=acc.stderr_bytes,
            elapsed_ms=elapsed_ms,
            completed_by="marker" if marker else "quiescence",
        )

"""Console error taxonomy.

Every error carries a stable `code` that travels unchanged through the daemon
protocol (`DaemonError.code`), the web port and the terminal UI.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ConsoleError(RuntimeError):
    code = "console_error"

    def __init__(self, message: str, *, container_id: str = "", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = str(message)
        self.container_id = str(container_id or "")
        self.details: Dict[str, Any] = dict(details or {})

    def to_details(self) -> Dict[str, Any]:
        out = dict(self.details)
        if self.container_id:
            out.setdefault("container_id", self.container_id)
        return out


class SpawnError(ConsoleError):
    """The evaluation process could not be started. Not retried."""

    code = "spawn_failed"


class SessionNotFound(ConsoleError):
    code = "session_not_found"


class ProcessDead(ConsoleError):
    """The session's process has exited; a new session is required."""

    code = "process_dead"


class WriteFailed(ConsoleError):
    """Writing to the process's stdin failed; the session is now dead."""

    code = "write_failed"


class CommandTimedOut(ConsoleError):
    code = "command_timed_out"


class ParseError(ConsoleError):
    """Malformed activation URL. Logged and discarded by callers."""

    code = "parse_error"


_BY_CODE = {
    cls.code: cls
    for cls in (SpawnError, SessionNotFound, ProcessDead, WriteFailed, CommandTimedOut, ParseError)
}


def error_from_code(code: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> ConsoleError:
    """Rebuild a typed error from a daemon error payload."""
    cls = _BY_CODE.get(str(code or "").strip(), ConsoleError)
    d = dict(details or {})
    err = cls(message, container_id=str(d.get("container_id") or ""), details=d)
    if cls is ConsoleError:
        err.code = str(code or ConsoleError.code)
    return err

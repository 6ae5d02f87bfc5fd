from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


OutputStream = Literal["stdout", "stderr"]
CompletedBy = Literal["quiescence", "marker"]


class CommandRecord(BaseModel):
    """A command as dispatched to a session. Never persisted."""

    id: str
    text: str
    dispatched_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="forbid")


class CapturedOutput(BaseModel):
    """Output attributed to exactly one command."""

    v: int = 1
    command_id: str
    container_id: str
    text: str = ""
    stdout_bytes: int = 0
    stderr_bytes: int = 0
    elapsed_ms: int = 0
    completed_by: CompletedBy = "quiescence"

    model_config = ConfigDict(extra="forbid")


class SessionInfo(BaseModel):
    v: int = 1
    container_id: str
    pid: int = 0
    alive: bool = True
    exit_code: Optional[int] = None
    started_at: str = Field(default_factory=utc_now_iso)
    backlog_bytes: int = 0
    in_flight: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

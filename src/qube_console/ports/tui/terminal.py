"""Console terminal state machine.

`reduce(state, event)` is pure: it returns the next state and the effects the
front-end must perform (sending a command or a control byte). `render(state)`
derives the visible lines from connection state, scrollback and line buffer
only, so the front-end never mutates what is displayed directly.

    disconnected -> connecting -> ready <-> sending -> ... -> disconnected
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import List, Literal, Optional, Tuple, Union


ConnectionState = Literal["disconnected", "connecting", "ready", "sending"]
LineKind = Literal["output", "input-echo", "prompt", "info", "error"]

PROMPT = "$ "
CTRL_C = "\x03"
CTRL_X = "\x18"
_CONTROL_ECHO = {CTRL_C: "^C", CTRL_X: "^X"}
DEFAULT_MAX_SCROLLBACK = 5000


@dataclass(frozen=True)
class TerminalLine:
    content: str
    kind: LineKind = "output"


@dataclass(frozen=True)
class EchoFilter:
    """Drops the process's echo of the last command from the next output.

    Armed on submit; the next output batch removes the first line containing
    the command text, after which the filter is spent. With tagged frames only
    a batch tagged with the armed command id can spend it.
    """

    pending: str = ""
    command_id: Optional[str] = None

    @property
    def armed(self) -> bool:
        return bool(self.pending)

    def arm(self, command: str, command_id: Optional[str]) -> "EchoFilter":
        return EchoFilter(pending=command, command_id=command_id)

    def apply(self, text: str, *, command_id: Optional[str] = None, tagged: bool = False) -> Tuple[str, "EchoFilter"]:
        if not self.pending:
            return text, self
        if tagged and command_id != self.command_id:
            return text, self
        lines = text.split("\n")
        for i, line in enumerate(lines):
            if self.pending in line:
                del lines[i]
                break
        return "\n".join(lines), EchoFilter()


@dataclass(frozen=True)
class TerminalState:
    connection: ConnectionState = "disconnected"
    container: str = ""
    buffer: str = ""
    scrollback: Tuple[TerminalLine, ...] = ()
    # Streaming transports echo input back; the bridge does not.
    streaming: bool = False
    tagged: bool = False
    echo: EchoFilter = field(default_factory=EchoFilter)
    outstanding: Tuple[str, ...] = ()
    seq: int = 0
    max_scrollback: int = DEFAULT_MAX_SCROLLBACK


# Events


@dataclass(frozen=True)
class Connect:
    container: str
    streaming: bool = False
    tagged: bool = False


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class KeyInput:
    text: str


@dataclass(frozen=True)
class Backspace:
    pass


@dataclass(frozen=True)
class Submit:
    pass


@dataclass(frozen=True)
class ControlKey:
    byte: str


@dataclass(frozen=True)
class OutputReceived:
    text: str
    command_id: Optional[str] = None


@dataclass(frozen=True)
class CommandResult:
    command_id: str
    # None: the command was dispatched and its output arrives as OutputReceived.
    output: Optional[str] = None


@dataclass(frozen=True)
class CommandFailed:
    command_id: str
    message: str


@dataclass(frozen=True)
class Closed:
    reason: str = ""


Event = Union[
    Connect,
    Connected,
    KeyInput,
    Backspace,
    Submit,
    ControlKey,
    OutputReceived,
    CommandResult,
    CommandFailed,
    Closed,
]


# Effects


@dataclass(frozen=True)
class SendCommand:
    text: str
    command_id: str


@dataclass(frozen=True)
class SendControl:
    byte: str


Effect = Union[SendCommand, SendControl]


def _connected(state: TerminalState) -> bool:
    return state.connection in ("ready", "sending")


def _append(state: TerminalState, lines: List[TerminalLine]) -> TerminalState:
    if not lines:
        return state
    merged = state.scrollback + tuple(lines)
    limit = max(1, int(state.max_scrollback))
    if len(merged) > limit:
        merged = merged[-limit:]
    return replace(state, scrollback=merged)


def _output_lines(text: str, *, keep_blank: bool) -> List[TerminalLine]:
    body = text[:-1] if text.endswith("\n") else text
    if not body:
        return []
    out: List[TerminalLine] = []
    for line in body.split("\n"):
        line = line.rstrip("\r")
        if not line and not keep_blank:
            continue
        out.append(TerminalLine(line, "output"))
    return out


def _settle(state: TerminalState, command_id: str) -> TerminalState:
    outstanding = tuple(c for c in state.outstanding if c != command_id)
    connection = state.connection
    if connection == "sending" and not outstanding:
        connection = "ready"
    return replace(state, outstanding=outstanding, connection=connection)


def reduce(state: TerminalState, event: Event) -> Tuple[TerminalState, Tuple[Effect, ...]]:
    if isinstance(event, Connect):
        s = replace(
            state,
            connection="connecting",
            container=event.container,
            streaming=event.streaming or event.tagged,
            tagged=event.tagged,
            echo=EchoFilter(),
            outstanding=(),
        )
        return _append(s, [TerminalLine(f"Starting eval session for {event.container}...", "info")]), ()

    if isinstance(event, Connected):
        if state.connection != "connecting":
            return state, ()
        s = replace(state, connection="ready")
        return _append(s, [TerminalLine("Connected to container. Type commands below:", "info")]), ()

    if isinstance(event, KeyInput):
        text = event.text.replace("\r", "").replace("\n", "")
        if not text:
            return state, ()
        return replace(state, buffer=state.buffer + text), ()

    if isinstance(event, Backspace):
        if not state.buffer:
            return state, ()
        return replace(state, buffer=state.buffer[:-1]), ()

    if isinstance(event, Submit):
        command = state.buffer.strip()
        s = replace(state, buffer="")
        if command.lower() == "clear":
            return replace(s, scrollback=()), ()
        if not command:
            return s, ()
        s = _append(s, [TerminalLine(PROMPT + command, "input-echo")])
        if not _connected(s):
            return _append(s, [TerminalLine("Error: not connected", "error")]), ()
        command_id = f"c{s.seq + 1}"
        s = replace(
            s,
            seq=s.seq + 1,
            connection="sending",
            outstanding=s.outstanding + (command_id,),
            echo=s.echo.arm(command, command_id) if s.streaming else s.echo,
        )
        return s, (SendCommand(text=command, command_id=command_id),)

    if isinstance(event, ControlKey):
        echo = _CONTROL_ECHO.get(event.byte)
        if echo is None:
            return state, ()
        s = _append(replace(state, buffer=""), [TerminalLine(echo, "input-echo")])
        if not _connected(s):
            return s, ()
        return s, (SendControl(byte=event.byte),)

    if isinstance(event, OutputReceived):
        text, echo = state.echo.apply(event.text, command_id=event.command_id, tagged=state.tagged)
        s = replace(state, echo=echo)
        return _append(s, _output_lines(text, keep_blank=True)), ()

    if isinstance(event, CommandResult):
        s = _settle(state, event.command_id)
        if event.output:
            s = _append(s, _output_lines(event.output, keep_blank=False))
        return s, ()

    if isinstance(event, CommandFailed):
        s = _settle(state, event.command_id)
        return _append(s, [TerminalLine(f"Error: {event.message}", "error")]), ()

    if isinstance(event, Closed):
        if state.connection == "disconnected":
            return state, ()
        msg = "Connection closed." if not event.reason else f"Connection closed: {event.reason}"
        s = replace(state, connection="disconnected", outstanding=(), echo=EchoFilter())
        return _append(s, [TerminalLine(msg, "info")]), ()

    return state, ()


def render(state: TerminalState) -> List[TerminalLine]:
    lines = list(state.scrollback)
    if _connected(state):
        lines.append(TerminalLine(PROMPT + state.buffer, "prompt"))
    return lines

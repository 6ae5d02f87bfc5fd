"""Transports between the console UI and the eval session.

LocalBridge is request/response through the daemon: one reply per command,
correlated by the daemon's quiescence window. StreamTransport is full duplex
over the web port's websocket; output arrives whenever the process writes it.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote, urlencode

from websockets.asyncio.client import ClientConnection, connect as websocket_connect
from websockets.exceptions import ConnectionClosed

from ...daemon.server import DaemonPaths, call_daemon, raise_for_response
from ...errors import ConsoleError
from ...kernel.activation import container_from_location


logger = logging.getLogger("qube_console.tui.transport")

OutputCallback = Callable[[str, Optional[str]], None]
ClosedCallback = Callable[[str], None]


def console_location(container: str) -> str:
    return f"console.html?{urlencode({'name': container})}"


class Transport:
    streaming = False
    tagged = False

    async def open(self, container: str) -> None:
        raise NotImplementedError

    async def send_command(self, text: str, command_id: str) -> Optional[str]:
        """Send one command. Returns its output, or None if output is streamed."""
        raise NotImplementedError

    async def send_control(self, byte: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LocalBridge(Transport):
    """Request/response through the daemon socket.

    Like a page showing `console.html?name=<container>`, the bridge keeps a
    navigation location and derives the target container from it on every send.
    """

    def __init__(self, *, paths: Optional[DaemonPaths] = None, timeout_s: float = 60.0) -> None:
        self.paths = paths
        self.timeout_s = float(timeout_s)
        self.location = ""

    def navigate(self, container: str) -> None:
        self.location = console_location(container)

    @property
    def container(self) -> str:
        return container_from_location(self.location)

    def _call(self, op: str, args: Dict[str, Any]) -> Dict[str, Any]:
        return raise_for_response(call_daemon({"op": op, "args": args}, paths=self.paths, timeout_s=self.timeout_s))

    async def open(self, container: str) -> None:
        self.navigate(container)
        await asyncio.to_thread(self._call, "session_start", {"container_id": container})

    async def send_command(self, text: str, command_id: str) -> Optional[str]:
        if not self.container:
            raise ConsoleError("no container selected")
        result = await asyncio.to_thread(
            self._call,
            "session_send",
            {"location": self.location, "text": text, "command_id": command_id},
        )
        return str(result.get("output") or "")

    async def send_control(self, byte: str) -> None:
        # Request/response has no out-of-band channel; the interrupt is only echoed.
        logger.debug("control byte %r not forwarded over the bridge", byte)


class StreamTransport(Transport):
    """Websocket client for `/eval/<container>/command` on the web port."""

    streaming = True

    def __init__(
        self,
        *,
        base_url: str,
        on_output: OutputCallback,
        on_closed: ClosedCallback,
        tagged: bool = True,
        token: str = "",
    ) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.on_output = on_output
        self.on_closed = on_closed
        self.tagged = bool(tagged)
        self.token = str(token or "")
        self._ws: Optional[ClientConnection] = None
        self._reader: Optional[asyncio.Task] = None

    def url_for(self, container: str) -> str:
        query: Dict[str, str] = {}
        if self.tagged:
            query["framing"] = "tagged"
        if self.token:
            query["token"] = self.token
        url = f"{self.base_url}/eval/{quote(container, safe='')}/command"
        return f"{url}?{urlencode(query)}" if query else url

    async def open(self, container: str) -> None:
        try:
            self._ws = await websocket_connect(self.url_for(container))
        except (OSError, ConnectionClosed) as e:
            raise ConsoleError(f"websocket connect failed: {e}") from e
        self._reader = asyncio.create_task(self._read_loop())

    def _dispatch(self, raw: Any) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if not self.tagged:
            self.on_output(str(raw), None)
            return
        try:
            frame = json.loads(raw)
        except ValueError:
            return
        if not isinstance(frame, dict):
            return
        t = str(frame.get("t") or "")
        if t == "o":
            self.on_output(str(frame.get("d") or ""), frame.get("cmd") or None)
        elif t == "error" or frame.get("ok") is False:
            err = frame.get("error") if isinstance(frame.get("error"), dict) else frame
            self.on_output(f"Error: {err.get('message') or err.get('code') or 'unknown error'}\n", None)
        elif t == "exit":
            self.on_output(f"[process exited: {frame.get('code')}]\n", None)

    async def _read_loop(self) -> None:
        reason = ""
        ws = self._ws
        assert ws is not None
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            reason = str(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("websocket reader failed")
            reason = str(e)
        self.on_closed(reason)

    async def _send(self, payload: str) -> None:
        if self._ws is None:
            raise ConsoleError("not connected")
        try:
            await self._ws.send(payload)
        except ConnectionClosed as e:
            raise ConsoleError(f"connection closed: {e}") from e

    async def send_command(self, text: str, command_id: str) -> Optional[str]:
        if self.tagged:
            await self._send(json.dumps({"t": "i", "d": text, "id": command_id}, ensure_ascii=False))
        else:
            await self._send(text if text.endswith("\n") else text + "\n")
        return None

    async def send_control(self, byte: str) -> None:
        if self.tagged:
            await self._send(json.dumps({"t": "i", "d": byte, "id": ""}))
        else:
            await self._send(byte)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except (asyncio.CancelledError, Exception):
                pass
            self._reader = None
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception:
                pass
            self._ws = None

"""prompt_toolkit front-end for the console.

All state lives in `TerminalState`; this module only feeds events into
`reduce`, performs the returned effects and re-renders. Transport callbacks
and activation events are marshalled onto the UI loop before they touch state.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, List, Optional

from prompt_toolkit import Application
from prompt_toolkit.formatted_text import StyleAndTextTuples
from prompt_toolkit.key_binding import KeyBindings, KeyPressEvent
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import FormattedTextControl, HSplit, Layout, Window
from prompt_toolkit.styles import Style

from ...contracts.v1 import ActivationEvent, ContainerInfo
from ...errors import ConsoleError
from ...kernel.activation import ActivationRouter, SingleInstance
from ...kernel.engine import EngineClient, EngineError
from ...kernel.settings import Settings, load_settings
from ...paths import ensure_home
from ...util.obslog import setup_root_json_logging
from .terminal import (
    CTRL_C,
    CTRL_X,
    Backspace,
    Closed,
    CommandFailed,
    CommandResult,
    Connect,
    Connected,
    ControlKey,
    Effect,
    Event,
    KeyInput,
    OutputReceived,
    SendCommand,
    SendControl,
    Submit,
    TerminalState,
    reduce,
    render,
)
from .transport import LocalBridge, StreamTransport, Transport


logger = logging.getLogger("qube_console.tui")

# Activation actions that open a container console (`qube://console/<name>`).
_OPEN_ACTIONS = {"console", "open", "eval"}

TransportFactory = Callable[["ConsoleApp"], Transport]


def _fmt_mem(val: Optional[float]) -> str:
    if val is None:
        return "-"
    if val >= 1024:
        return f"{val / 1024:.1f}G"
    return f"{val:.1f}M"


class ConsoleApp:
    def __init__(
        self,
        *,
        container: str,
        make_transport: TransportFactory,
        router: Optional[ActivationRouter] = None,
        engine: Optional[EngineClient] = None,
    ) -> None:
        self.container = container
        self.make_transport = make_transport
        self.router = router
        self.engine = engine
        self.state = TerminalState()
        self.transport: Optional[Transport] = None
        self.info: Optional[ContainerInfo] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None

        self.style = Style.from_dict(
            {
                "header": "#58a6ff bold",
                "header.status.running": "#3fb950",
                "header.status.stopped": "#f85149",
                "line.output": "",
                "line.input-echo": "#8b949e",
                "line.prompt": "#00aa00",
                "line.info": "#58a6ff",
                "line.error": "#f85149",
                "footer": "#6e7681",
            }
        )
        self.body = FormattedTextControl(self._body_text, focusable=True, show_cursor=False)
        body_window = Window(content=self.body, wrap_lines=True)
        self.body_window = body_window
        self.app: Application = Application(
            layout=Layout(
                HSplit(
                    [
                        Window(content=FormattedTextControl(self._header_text), height=1, dont_extend_height=True),
                        Window(height=1, char="─", style="class:footer"),
                        body_window,
                        Window(content=FormattedTextControl(self._footer_text), height=1, dont_extend_height=True),
                    ]
                ),
                focused_element=body_window,
            ),
            key_bindings=self._key_bindings(),
            style=self.style,
            full_screen=True,
            mouse_support=False,
        )

    # Rendering

    def _header_text(self) -> StyleAndTextTuples:
        if not self.container:
            return [("class:header", " No container selected")]
        out: StyleAndTextTuples = [("class:header", f" {self.container} ")]
        info = self.info
        if info is not None:
            status = "running" if info.running else "stopped"
            out.append((f"class:header.status.{status}", f"[{status}] "))
            out.append(("", f"image: {info.image or '-'}  pid: {info.pid if info.pid > 0 else '-'}  mem: {_fmt_mem(info.memory_mb)}"))
        out.append(("class:footer", f"  ({self.state.connection})"))
        return out

    def _footer_text(self) -> StyleAndTextTuples:
        return [("class:footer", " Enter: send  Ctrl-C/Ctrl-X: interrupt  'clear': reset  Ctrl-Q: quit")]

    def _body_text(self) -> StyleAndTextTuples:
        lines = render(self.state)
        try:
            rows = max(1, self.app.output.get_size().rows - 3)
        except Exception:
            rows = 40
        out: StyleAndTextTuples = []
        for line in lines[-rows:]:
            out.append((f"class:line.{line.kind}", line.content))
            out.append(("", "\n"))
        return out

    # Event plumbing

    def dispatch(self, event: Event) -> None:
        """Apply `event` on the UI loop and run the resulting effects."""
        self.state, effects = reduce(self.state, event)
        for effect in effects:
            self.app.create_background_task(self._perform(effect))
        self.app.invalidate()

    def post(self, event: Event) -> None:
        """Thread-safe `dispatch`."""
        loop = self.loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self.dispatch, event)

    async def _perform(self, effect: Effect) -> None:
        transport = self.transport
        if isinstance(effect, SendCommand):
            if transport is None:
                self.dispatch(CommandFailed(effect.command_id, "not connected"))
                return
            try:
                output = await transport.send_command(effect.text, effect.command_id)
            except ConsoleError as e:
                self.dispatch(CommandFailed(effect.command_id, e.message))
                return
            self.dispatch(CommandResult(effect.command_id, output))
            return
        if isinstance(effect, SendControl) and transport is not None:
            try:
                await transport.send_control(effect.byte)
            except ConsoleError as e:
                self.dispatch(CommandFailed("", e.message))

    async def connect(self, container: str) -> None:
        if self.transport is not None:
            old = self.transport
            self.transport = None
            await old.close()
            self.dispatch(Closed())
        self.container = container
        self.info = None
        transport = self.make_transport(self)
        self.dispatch(Connect(container, streaming=transport.streaming, tagged=transport.tagged))
        try:
            await transport.open(container)
        except ConsoleError as e:
            self.dispatch(CommandFailed("", e.message))
            self.dispatch(Closed())
            return
        self.transport = transport
        self.dispatch(Connected())
        self.app.create_background_task(self._load_info(container))

    async def _load_info(self, container: str) -> None:
        if self.engine is None:
            return
        try:
            items = await asyncio.to_thread(self.engine.list_containers)
        except EngineError as e:
            logger.debug("engine listing unavailable: %s", e.message)
            return
        for item in items:
            if item.name == container and container == self.container:
                self.info = item
                self.app.invalidate()
                return

    def on_output(self, text: str, command_id: Optional[str]) -> None:
        self.post(OutputReceived(text, command_id))

    def on_closed(self, reason: str) -> None:
        self.post(Closed(reason))

    def on_activation(self, event: ActivationEvent) -> None:
        loop = self.loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._activate, event)

    def _activate(self, event: ActivationEvent) -> None:
        target = event.param or event.query.get("name", "")
        if event.action in _OPEN_ACTIONS and target:
            logger.info("activation opens console", extra={"action": event.action, "container_id": target})
            self.app.create_background_task(self.connect(target))
            return
        logger.info("activation ignored: %s", event.url, extra={"action": event.action})

    # Keys

    def _key_bindings(self) -> KeyBindings:
        kb = KeyBindings()

        @kb.add("c-q")
        def _quit(event: KeyPressEvent) -> None:
            event.app.exit()

        @kb.add("c-c")
        def _interrupt(event: KeyPressEvent) -> None:
            self.dispatch(ControlKey(CTRL_C))

        @kb.add("c-x")
        def _cancel(event: KeyPressEvent) -> None:
            self.dispatch(ControlKey(CTRL_X))

        @kb.add("enter")
        def _submit(event: KeyPressEvent) -> None:
            self.dispatch(Submit())

        @kb.add("backspace")
        def _backspace(event: KeyPressEvent) -> None:
            self.dispatch(Backspace())

        @kb.add(Keys.BracketedPaste)
        def _paste(event: KeyPressEvent) -> None:
            self.dispatch(KeyInput(event.data))

        @kb.add(Keys.Any)
        def _type(event: KeyPressEvent) -> None:
            if event.data and event.data.isprintable():
                self.dispatch(KeyInput(event.data))

        return kb

    async def run_async(self) -> None:
        self.loop = asyncio.get_running_loop()

        def _on_signal() -> None:
            # Let prompt_toolkit restore the terminal.
            self.app.exit()

        for sig in (signal.SIGTERM, signal.SIGHUP):
            try:
                self.loop.add_signal_handler(sig, _on_signal)
            except (NotImplementedError, RuntimeError, AttributeError):
                pass

        async def _start() -> None:
            if self.container:
                await self.connect(self.container)
            if self.router is not None:
                self.router.mark_ready(self.on_activation)

        self.app.create_background_task(_start())
        try:
            await self.app.run_async()
        finally:
            if self.router is not None:
                self.router.mark_not_ready()
            if self.transport is not None:
                await self.transport.close()
                self.transport = None


def run_console(
    container: str,
    *,
    argv: Optional[List[str]] = None,
    stream: bool = False,
    base_url: str = "",
    tagged: bool = True,
    settings: Optional[Settings] = None,
) -> int:
    """Run the console as the primary instance, or forward to it and return 0."""
    cfg = settings or load_settings()
    home = ensure_home()
    setup_root_json_logging(component="tui", log_path=home / "console.log")

    forwarded = list(argv or [])
    if container and not any(a.lower().startswith(f"{cfg.activation.scheme}://") for a in forwarded):
        forwarded.append(f"{cfg.activation.scheme}://console/{container}")

    instance = SingleInstance(home=home)
    if not instance.acquire():
        ok = instance.forward(forwarded)
        logger.info("forwarded activation to primary instance ok=%s", ok)
        print("qube-console: already running; activation forwarded" if ok else "qube-console: already running")
        return 0

    router = ActivationRouter(scheme=cfg.activation.scheme)
    url = base_url or f"ws://{cfg.web.host}:{cfg.web.port}"

    def _make(app: ConsoleApp) -> Transport:
        if stream:
            return StreamTransport(base_url=url, on_output=app.on_output, on_closed=app.on_closed, tagged=tagged)
        return LocalBridge()

    try:
        instance.listen(router.submit_argv)
        router.submit_argv(list(argv or []))
        app = ConsoleApp(
            container=container,
            make_transport=_make,
            router=router,
            engine=EngineClient.from_settings(cfg.engine),
        )
        asyncio.run(app.run_async())
    finally:
        instance.release()
    return 0

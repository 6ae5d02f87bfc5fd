from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from ... import __version__
from ...daemon.server import call_daemon, default_paths
from ...kernel.engine import EngineClient, EngineError
from ...kernel.settings import load_settings
from ...paths import ensure_home


logger = logging.getLogger("qube_console.web")

# Daemon error code -> HTTP status.
_STATUS_BY_CODE = {
    "missing_container_id": 400,
    "invalid_request": 400,
    "session_not_found": 404,
    "write_failed": 409,
    "process_dead": 410,
    "spawn_failed": 502,
    "engine_unavailable": 502,
    "daemon_unavailable": 503,
    "command_timed_out": 504,
}


class SessionSendRequest(BaseModel):
    text: str
    command_id: str = Field(default="")


def http_status_for(code: str) -> int:
    return int(_STATUS_BY_CODE.get(str(code or ""), 400))


def raw_input_frame(text: str) -> Dict[str, Any]:
    """Raw websocket text -> daemon input frame."""
    return {"t": "i", "d": text, "id": ""}


def tagged_input_frame(raw: str) -> Optional[Dict[str, Any]]:
    try:
        obj = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(obj, dict) or str(obj.get("t") or "") != "i":
        return None
    data = str(obj.get("d") or "")
    if not data:
        return None
    return {"t": "i", "d": data, "id": str(obj.get("id") or "")}


def raw_output_text(frame: Dict[str, Any]) -> Optional[str]:
    """Daemon frame -> raw websocket text (None for frames the raw contract has no form for)."""
    t = str(frame.get("t") or "")
    if t == "o":
        return str(frame.get("d") or "")
    if t == "error":
        return f"Error: {frame.get('message') or frame.get('code') or 'unknown error'}\n"
    return None


def _require_token_if_configured(request: Request) -> Optional[JSONResponse]:
    token = str(os.environ.get("QUBE_CONSOLE_WEB_TOKEN") or "").strip()
    if not token:
        return None
    auth = str(request.headers.get("authorization") or "").strip()
    if auth != f"Bearer {token}":
        return JSONResponse(
            status_code=401,
            content={"ok": False, "error": {"code": "unauthorized", "message": "missing/invalid token", "details": {}}},
        )
    return None


def _daemon(req: Dict[str, Any]) -> Dict[str, Any]:
    resp = call_daemon(req)
    if resp.get("ok"):
        return resp
    err = resp.get("error") if isinstance(resp.get("error"), dict) else {}
    code = str(err.get("code") or "daemon_error")
    raise HTTPException(
        status_code=http_status_for(code),
        detail={"code": code, "message": str(err.get("message") or code)},
    )


def create_app() -> FastAPI:
    app = FastAPI(title="qube console web", version=__version__)

    cors = str(os.environ.get("QUBE_CONSOLE_WEB_CORS_ORIGINS") or "").strip()
    if cors:
        allow_origins = [o.strip() for o in cors.split(",") if o.strip()]
        if allow_origins:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=allow_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )

    @app.middleware("http")
    async def _auth(request: Request, call_next):  # type: ignore[no-untyped-def]
        blocked = _require_token_if_configured(request)
        if blocked is not None:
            return blocked
        return await call_next(request)

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        return (
            "<h3>qube console</h3>"
            "<p>Try <code>/api/v1/ping</code>, <code>/api/v1/sessions</code> and the websocket "
            "<code>/eval/&lt;container&gt;/command</code>.</p>"
        )

    @app.get("/api/v1/ping")
    async def ping() -> Dict[str, Any]:
        home = ensure_home()
        resp = await asyncio.to_thread(_daemon, {"op": "ping"})
        return {"ok": True, "result": {"home": str(home), "daemon": resp.get("result", {}), "version": __version__}}

    @app.get("/api/v1/sessions")
    async def sessions() -> Dict[str, Any]:
        return await asyncio.to_thread(_daemon, {"op": "session_list"})

    @app.post("/api/v1/sessions/{container}")
    async def session_start(container: str) -> Dict[str, Any]:
        return await asyncio.to_thread(_daemon, {"op": "session_start", "args": {"container_id": container}})

    @app.post("/api/v1/sessions/{container}/send")
    async def session_send(container: str, req: SessionSendRequest) -> Dict[str, Any]:
        args = {"container_id": container, "text": req.text, "command_id": req.command_id}
        return await asyncio.to_thread(_daemon, {"op": "session_send", "args": args})

    @app.delete("/api/v1/sessions/{container}")
    async def session_stop(container: str) -> Dict[str, Any]:
        return await asyncio.to_thread(_daemon, {"op": "session_stop", "args": {"container_id": container}})

    @app.get("/api/v1/containers")
    async def containers() -> Dict[str, Any]:
        client = EngineClient.from_settings(load_settings().engine)
        try:
            items = await asyncio.to_thread(client.list_containers)
        except EngineError as e:
            raise HTTPException(status_code=http_status_for(e.code), detail={"code": e.code, "message": e.message})
        return {"ok": True, "result": {"containers": [c.model_dump() for c in items]}}

    @app.websocket("/eval/{container}/command")
    async def eval_command(websocket: WebSocket, container: str) -> None:
        token = str(os.environ.get("QUBE_CONSOLE_WEB_TOKEN") or "").strip()
        if token:
            provided = str(websocket.query_params.get("token") or "").strip()
            if provided != token:
                await websocket.close(code=4401)
                return

        tagged = str(websocket.query_params.get("framing") or "").strip().lower() == "tagged"
        replay = str(websocket.query_params.get("replay") or "").strip().lower() in ("1", "true", "yes")
        await websocket.accept()

        sock_path = default_paths().sock_path
        try:
            reader, writer = await asyncio.open_unix_connection(str(sock_path), limit=4_000_000)
        except Exception:
            await websocket.send_json({"ok": False, "error": {"code": "daemon_unavailable", "message": "qube-consoled unavailable"}})
            await websocket.close(code=1011)
            return

        try:
            req = {"op": "eval_attach", "args": {"container_id": container, "create": True, "replay": replay}}
            writer.write((json.dumps(req, ensure_ascii=False) + "\n").encode("utf-8"))
            await writer.drain()
            line = await reader.readline()
            try:
                resp = json.loads(line.decode("utf-8", errors="replace"))
            except Exception:
                resp = {}
            if not isinstance(resp, dict) or not resp.get("ok"):
                err = resp.get("error") if isinstance(resp, dict) and isinstance(resp.get("error"), dict) else {"code": "eval_attach_failed", "message": "eval attach failed"}
                await websocket.send_json({"ok": False, "error": err})
                await websocket.close(code=1008)
                return
            logger.info("websocket attached framing=%s", "tagged" if tagged else "raw", extra={"container_id": container})

            async def _pump_out() -> None:
                while True:
                    raw_line = await reader.readline()
                    if not raw_line:
                        break
                    try:
                        frame = json.loads(raw_line.decode("utf-8", errors="replace"))
                    except ValueError:
                        continue
                    if not isinstance(frame, dict):
                        continue
                    t = str(frame.get("t") or "")
                    if t == "heartbeat":
                        continue
                    if tagged:
                        await websocket.send_json(frame)
                    else:
                        text = raw_output_text(frame)
                        if text:
                            await websocket.send_text(text)
                    if t == "exit":
                        break

            async def _pump_in() -> None:
                while True:
                    raw = await websocket.receive_text()
                    if not raw:
                        continue
                    frame = tagged_input_frame(raw) if tagged else raw_input_frame(raw)
                    if frame is None:
                        continue
                    writer.write((json.dumps(frame, ensure_ascii=False) + "\n").encode("utf-8"))
                    await writer.drain()

            out_task = asyncio.create_task(_pump_out())
            in_task = asyncio.create_task(_pump_in())
            try:
                done, pending = await asyncio.wait({out_task, in_task}, return_when=asyncio.FIRST_COMPLETED)
                for t in done:
                    try:
                        _ = t.result()
                    except Exception:
                        pass
                for t in pending:
                    t.cancel()
                try:
                    await asyncio.gather(*pending, return_exceptions=True)
                except Exception:
                    pass
            except WebSocketDisconnect:
                pass
            if out_task.done():
                try:
                    await websocket.close(code=1000)
                except Exception:
                    pass
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    return app

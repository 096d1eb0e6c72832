"""
api/server.py — FastAPI REST API + WebSocket event bridge.

The HTTP surface mirrors what the desktop UI needs from OBS: connection
control and status, scene listing/switching, and audio/mic mute toggles.
Every OBS notification (connection up/down, scene and input changes, mute
changes) is pushed to connected /ws clients.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from obs_switcher import __version__
from obs_switcher.config import APISettings
from obs_switcher.core import (
    ConnectionClosed,
    ConnectionManager,
    NoMatchingInputFound,
    NotConnected,
    OBSClient,
    OBSError,
    RequestFailed,
    RequestTimeout,
)

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# WebSocket connection pool
# ──────────────────────────────────────────────────────────────────────────────

class WSConnectionPool:
    def __init__(self):
        self._connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._connections.append(ws)
        log.info(f"WS client connected. Total: {len(self._connections)}")

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self._connections:
            self._connections.remove(ws)
        log.info(f"WS client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, message: dict) -> None:
        if not self._connections:
            return
        data = json.dumps(message)
        dead = []
        for ws in self._connections:
            try:
                await ws.send_text(data)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    def count(self) -> int:
        return len(self._connections)


def register_event_bridge(client: OBSClient, pool: WSConnectionPool) -> list:
    """Forward OBS notifications to WS clients. Returns the subscriptions."""

    async def on_connection_changed(connected: bool):
        await pool.broadcast({"event": "connection_changed", "data": {"connected": connected}})

    async def on_scene_changed(scene_name: str):
        await pool.broadcast({"event": "scene_changed", "data": {"scene": scene_name}})

    async def on_scenes_list_changed(_scenes: list):
        # The raw event has no current-scene flag; re-fetch for a complete list.
        try:
            scenes = await client.get_scene_list()
        except OBSError as e:
            log.warning(f"Could not refresh scene list: {e}")
            return
        await pool.broadcast({"event": "scenes_list_changed", "data": {"scenes": [s.to_dict() for s in scenes]}})

    def forward(event: str, *keys: str):
        async def _send(*args):
            await pool.broadcast({"event": event, "data": dict(zip(keys, args))})
        return _send

    return [
        client.on_connection_changed(on_connection_changed),
        client.on_scene_changed(on_scene_changed),
        client.on_scenes_list_changed(on_scenes_list_changed),
        client.on_scene_added(forward("scene_added", "scene")),
        client.on_scene_removed(forward("scene_removed", "scene")),
        client.on_scene_renamed(forward("scene_renamed", "old_name", "new_name")),
        client.on_input_added(forward("input_added", "input", "kind")),
        client.on_input_removed(forward("input_removed", "input")),
        client.on_input_renamed(forward("input_renamed", "old_name", "new_name")),
        client.on_mute_changed(forward("mute_changed", "input", "muted")),
        client.on_reconnecting(forward("reconnecting", "attempt", "max_attempts")),
    ]


# ──────────────────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────────────────

class ConnectBody(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = None
    password: Optional[str] = None
    timeout: Optional[float] = None


def create_app(manager: ConnectionManager, api_settings: Optional[APISettings] = None) -> FastAPI:
    api_settings = api_settings or APISettings()
    ws_pool = WSConnectionPool()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info(f"obs-switcher API starting on {api_settings.host}:{api_settings.port}")
        subscriptions = register_event_bridge(manager.client, ws_pool)
        log.info("OBS event bridge registered")
        yield
        for sub in subscriptions:
            sub.unsubscribe()
        log.info("obs-switcher API shutting down.")

    app = FastAPI(
        title="obs-switcher",
        description="OBS scene switcher and mute control",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.ws_pool = ws_pool

    app.add_middleware(
        CORSMiddleware,
        allow_origins=api_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ─────────────────────────────────────────────────

    def _error(status: int, exc: Exception, **extra) -> JSONResponse:
        return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__, **extra})

    @app.exception_handler(NotConnected)
    @app.exception_handler(ConnectionClosed)
    async def not_connected_handler(_request: Request, exc: OBSError):
        return _error(503, exc)

    @app.exception_handler(RequestFailed)
    async def request_failed_handler(_request: Request, exc: RequestFailed):
        return _error(400, exc, code=exc.code, comment=exc.comment)

    @app.exception_handler(RequestTimeout)
    async def request_timeout_handler(_request: Request, exc: RequestTimeout):
        return _error(504, exc)

    @app.exception_handler(NoMatchingInputFound)
    async def no_input_handler(_request: Request, exc: NoMatchingInputFound):
        return _error(404, exc)

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Request, exc: ValueError):
        return _error(422, exc)

    # ── REST auth dependency ──────────────────────────────────────────

    async def verify_api_key(authorization: Optional[str] = Header(None)):
        if api_settings.api_key:
            if not authorization or not authorization.startswith("Bearer "):
                raise HTTPException(status_code=401, detail="Missing Bearer token")
            token = authorization.removeprefix("Bearer ").strip()
            if token != api_settings.api_key:
                raise HTTPException(status_code=403, detail="Invalid API key")

    auth = Depends(verify_api_key)

    def obs() -> OBSClient:
        return manager.client

    # ─────────────────────────────────────────────────────────────────
    # Health
    # ─────────────────────────────────────────────────────────────────

    @app.get("/health", tags=["System"])
    async def health():
        return {
            "status": "ok",
            "obs_connected": obs().is_connected(),
            "ws_clients": ws_pool.count(),
            "version": __version__,
        }

    @app.get("/healthz", tags=["System"])
    async def healthz():
        """Machine-readable health check. Returns 503 when OBS is disconnected."""
        if not obs().is_connected():
            raise HTTPException(
                status_code=503,
                detail={"status": "degraded", "reason": "OBS not connected"}
            )
        return {"status": "ok"}

    # ─────────────────────────────────────────────────────────────────
    # OBS: connection
    # ─────────────────────────────────────────────────────────────────

    @app.get("/obs/status", tags=["OBS"], dependencies=[auth])
    async def obs_status():
        return obs().get_status()

    @app.post("/obs/connect", tags=["OBS"], dependencies=[auth])
    async def obs_connect(body: Optional[ConnectBody] = None):
        body = body or ConnectBody()
        result = await obs().connect(body.host, body.port, body.password, body.timeout)
        return result.to_dict()

    @app.post("/obs/disconnect", tags=["OBS"], dependencies=[auth])
    async def obs_disconnect():
        await obs().disconnect()
        return {"status": "disconnected"}

    @app.get("/obs/version", tags=["OBS"], dependencies=[auth])
    async def obs_version():
        return await obs().get_version()

    # ─────────────────────────────────────────────────────────────────
    # OBS: scenes
    # ─────────────────────────────────────────────────────────────────

    @app.get("/obs/scenes", tags=["OBS"], dependencies=[auth])
    async def list_scenes():
        return [s.to_dict() for s in await obs().get_scene_list()]

    @app.get("/obs/scene/current", tags=["OBS"], dependencies=[auth])
    async def current_scene():
        return {"scene": await obs().get_current_scene()}

    @app.post("/obs/scene/{scene_name}", tags=["OBS"], dependencies=[auth])
    async def switch_scene(scene_name: str):
        await obs().set_current_scene(scene_name)
        return {"scene": scene_name, "status": "ok"}

    # ─────────────────────────────────────────────────────────────────
    # OBS: inputs & audio
    # ─────────────────────────────────────────────────────────────────

    @app.get("/obs/inputs", tags=["Audio"], dependencies=[auth])
    async def list_inputs(kind: Optional[str] = None):
        return [i.to_dict() for i in await obs().get_input_list(kind)]

    @app.get("/obs/input/{input_name}/mute", tags=["Audio"], dependencies=[auth])
    async def input_mute(input_name: str):
        return {"input": input_name, "muted": await obs().get_input_mute(input_name)}

    @app.post("/obs/input/{input_name}/mute/toggle", tags=["Audio"], dependencies=[auth])
    async def toggle_input_mute(input_name: str):
        return {"input": input_name, "muted": await obs().toggle_input_mute(input_name)}

    @app.get("/obs/audio/mute", tags=["Audio"], dependencies=[auth])
    async def audio_mute():
        return await obs().get_audio_mute_status()

    @app.post("/obs/audio/mute/toggle", tags=["Audio"], dependencies=[auth])
    async def toggle_audio_mute():
        return await obs().toggle_audio_mute()

    @app.get("/obs/mic/mute", tags=["Audio"], dependencies=[auth])
    async def mic_mute():
        return await obs().get_mic_mute_status()

    @app.post("/obs/mic/mute/toggle", tags=["Audio"], dependencies=[auth])
    async def toggle_mic_mute():
        return await obs().toggle_mic_mute()

    # ─────────────────────────────────────────────────────────────────
    # WebSocket event bridge (token auth)
    # ─────────────────────────────────────────────────────────────────

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        token: Optional[str] = Query(None),
    ):
        # Auth check: if API key is set, require it as ?token= query param
        if api_settings.api_key:
            if not token or token != api_settings.api_key:
                await websocket.close(code=4001, reason="Unauthorized")
                return

        await ws_pool.connect(websocket)
        try:
            await websocket.send_text(json.dumps({
                "event": "hello",
                "data": {"status": obs().get_status(), "version": __version__},
            }))
            while True:
                raw = await websocket.receive_text()
                try:
                    msg = json.loads(raw)
                    response = await _handle_ws_command(msg)
                except json.JSONDecodeError:
                    response = {"error": "Invalid JSON"}
                except (OBSError, ValueError, KeyError) as e:
                    response = {"error": str(e), "type": type(e).__name__}
                await websocket.send_text(json.dumps(response))
        except WebSocketDisconnect:
            pass
        finally:
            ws_pool.disconnect(websocket)

    async def _handle_ws_command(msg: Any) -> dict:
        if not isinstance(msg, dict):
            return {"error": "Command must be a JSON object"}
        cmd = msg.get("cmd", "")
        params = msg.get("params") or {}
        if not isinstance(params, dict):
            return {"error": "params must be a JSON object"}
        client = obs()

        match cmd:
            case "get_status":
                return client.get_status()
            case "get_scenes":
                return {"scenes": [s.to_dict() for s in await client.get_scene_list()]}
            case "switch_scene":
                await client.set_current_scene(params["scene_name"])
                return {"scene": params["scene_name"], "status": "ok"}
            case "toggle_audio_mute":
                return await client.toggle_audio_mute()
            case "toggle_mic_mute":
                return await client.toggle_mic_mute()
            case "toggle_input_mute":
                name = params["input_name"]
                return {"input": name, "muted": await client.toggle_input_mute(name)}
            case _:
                return {"error": f"Unknown command: {cmd}"}

    return app

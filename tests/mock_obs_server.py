"""
tests/mock_obs_server.py — In-process OBS WebSocket v5 server for tests.

Speaks enough of the protocol to exercise the client end to end: Hello with
an optional auth challenge (verified with the real v5 digest), Identify,
scene/input/mute requests, and the events OBS pushes when those change.
"""

from __future__ import annotations

import asyncio
import base64
import json
import os
from typing import Any, Callable, Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from obs_switcher.core import OBSClient
from obs_switcher.core.protocol import CloseCode, OpCode, RequestStatus, compute_authentication


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def _token() -> str:
    return base64.b64encode(os.urandom(32)).decode()


DEFAULT_INPUTS = [
    {"inputName": "Desktop Audio", "inputKind": "pulse_output_capture", "muted": False},
    {"inputName": "Mic/Aux", "inputKind": "pulse_input_capture", "muted": False},
    {"inputName": "Webcam", "inputKind": "v4l2_input", "muted": False},
]


class MockOBSServer:
    def __init__(
        self,
        scenes: Optional[list[dict]] = None,
        inputs: Optional[list[dict]] = None,
        password: str = "",
    ):
        self.scenes = scenes if scenes is not None else [
            {"name": "Scene 1", "active": True},
            {"name": "Scene 2", "active": False},
        ]
        self.inputs = [dict(i) for i in (inputs if inputs is not None else DEFAULT_INPUTS)]
        self.password = password
        # Real OBS closes with 4009 on a bad password; older servers answer with an
        # Identified carrying an error instead.
        self.reject_auth_by_close = False
        self.silent_requests: set[str] = set()
        self.requests: list[tuple[str, dict]] = []
        self.identify_payloads: list[dict] = []
        self.reidentify_payloads: list[dict] = []
        self.connection_count = 0
        self.port: Optional[int] = None

        self._server: Any = None
        self._clients: set[ServerConnection] = set()
        self._tasks: set[asyncio.Task] = set()

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self, port: Optional[int] = None) -> "MockOBSServer":
        """Listen on the given port, the previous port (restart), or an ephemeral one."""
        port = port if port is not None else (self.port or 0)
        self._server = await serve(self._handler, "127.0.0.1", port)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        for task in list(self._tasks):
            task.cancel()
        self._clients.clear()

    async def drop_clients(self, code: int = 1001, reason: str = "going away") -> None:
        """Close every client connection but keep listening."""
        for ws in list(self._clients):
            await ws.close(code, reason)

    # ── Protocol ──────────────────────────────────────────────────────

    async def _handler(self, ws: ServerConnection) -> None:
        self.connection_count += 1
        salt, challenge = _token(), _token()
        hello: dict[str, Any] = {"obsWebSocketVersion": "5.0.0", "rpcVersion": 1}
        if self.password:
            hello["authentication"] = {"challenge": challenge, "salt": salt}
        await self._send(ws, OpCode.HELLO, hello)

        identified = False
        try:
            async for raw in ws:
                msg = json.loads(raw)
                op, d = msg.get("op"), msg.get("d", {})
                if op == OpCode.IDENTIFY:
                    self.identify_payloads.append(d)
                    if self.password and d.get("authentication") != compute_authentication(self.password, salt, challenge):
                        if self.reject_auth_by_close:
                            await ws.close(int(CloseCode.AUTHENTICATION_FAILED), "Authentication failed.")
                            return
                        await self._send(ws, OpCode.IDENTIFIED, {"negotiatedRpcVersion": 1, "error": "Authentication failed"})
                        continue
                    identified = True
                    self._clients.add(ws)
                    await self._send(ws, OpCode.IDENTIFIED, {"negotiatedRpcVersion": 1})
                elif op == OpCode.REIDENTIFY and identified:
                    self.reidentify_payloads.append(d)
                    await self._send(ws, OpCode.IDENTIFIED, {"negotiatedRpcVersion": 1})
                elif op == OpCode.REQUEST and identified:
                    self.requests.append((d.get("requestType", ""), d.get("requestData") or {}))
                    if d.get("requestType") == "Sleep":
                        task = asyncio.get_running_loop().create_task(self._sleep(ws, d))
                        self._tasks.add(task)
                        task.add_done_callback(self._tasks.discard)
                    else:
                        await self._handle_request(ws, d)
        except ConnectionClosed:
            pass
        finally:
            self._clients.discard(ws)

    async def _send(self, ws: ServerConnection, op: OpCode, d: dict) -> None:
        try:
            await ws.send(json.dumps({"op": int(op), "d": d}))
        except ConnectionClosed:
            pass

    async def send_raw(self, frame: str) -> None:
        for ws in list(self._clients):
            try:
                await ws.send(frame)
            except ConnectionClosed:
                pass

    async def broadcast_event(self, event_type: str, event_data: Optional[dict] = None) -> None:
        for ws in list(self._clients):
            await self._send(ws, OpCode.EVENT, {"eventType": event_type, "eventIntent": 1, "eventData": event_data or {}})

    async def _respond(self, ws, d: dict, ok: bool = True, data: Optional[dict] = None,
                       code: int = RequestStatus.SUCCESS, comment: Optional[str] = None) -> None:
        status: dict[str, Any] = {"result": ok, "code": int(code)}
        if comment:
            status["comment"] = comment
        payload: dict[str, Any] = {
            "requestType": d.get("requestType"),
            "requestId": d.get("requestId"),
            "requestStatus": status,
        }
        if data is not None:
            payload["responseData"] = data
        await self._send(ws, OpCode.REQUEST_RESPONSE, payload)

    async def _fail(self, ws, d: dict, code: int, comment: str) -> None:
        await self._respond(ws, d, ok=False, code=code, comment=comment)

    async def _sleep(self, ws, d: dict) -> None:
        millis = (d.get("requestData") or {}).get("sleepMillis", 0)
        await asyncio.sleep(millis / 1000)
        await self._respond(ws, d, data={"sleptMillis": millis})

    def _input(self, name: Optional[str]) -> Optional[dict]:
        return next((i for i in self.inputs if i["inputName"] == name), None)

    def _current_scene(self) -> Optional[str]:
        return next((s["name"] for s in self.scenes if s["active"]), None)

    async def _handle_request(self, ws, d: dict) -> None:
        request_type = d.get("requestType")
        data = d.get("requestData") or {}
        if request_type in self.silent_requests:
            return

        if request_type == "GetVersion":
            await self._respond(ws, d, data={
                "obsVersion": "30.0.0",
                "obsWebSocketVersion": "5.3.0",
                "rpcVersion": 1,
                "platform": "mock",
            })
        elif request_type == "GetSceneList":
            await self._respond(ws, d, data={
                "currentProgramSceneName": self._current_scene(),
                "currentPreviewSceneName": None,
                "scenes": [{"sceneName": s["name"], "sceneIndex": i} for i, s in enumerate(self.scenes)],
            })
        elif request_type == "GetCurrentProgramScene":
            await self._respond(ws, d, data={"currentProgramSceneName": self._current_scene()})
        elif request_type == "SetCurrentProgramScene":
            name = data.get("sceneName")
            if not name:
                await self._fail(ws, d, RequestStatus.MISSING_REQUEST_FIELD, "Missing field sceneName")
            elif not any(s["name"] == name for s in self.scenes):
                await self._fail(ws, d, RequestStatus.RESOURCE_NOT_FOUND, "Scene not found")
            else:
                for s in self.scenes:
                    s["active"] = s["name"] == name
                await self._respond(ws, d)
                await self.broadcast_event("CurrentProgramSceneChanged", {"sceneName": name})
        elif request_type == "GetInputList":
            kind = data.get("inputKind")
            inputs = [i for i in self.inputs if kind is None or i["inputKind"] == kind]
            await self._respond(ws, d, data={"inputs": [
                {"inputName": i["inputName"], "inputKind": i["inputKind"], "unversionedInputKind": i["inputKind"]}
                for i in inputs
            ]})
        elif request_type in ("GetInputMute", "ToggleInputMute", "SetInputMute"):
            inp = self._input(data.get("inputName"))
            if inp is None:
                await self._fail(ws, d, RequestStatus.RESOURCE_NOT_FOUND, "Input not found")
                return
            if request_type == "GetInputMute":
                await self._respond(ws, d, data={"inputMuted": inp["muted"]})
                return
            if request_type == "ToggleInputMute":
                inp["muted"] = not inp["muted"]
                await self._respond(ws, d, data={"inputMuted": inp["muted"]})
            else:
                inp["muted"] = bool(data.get("inputMuted"))
                await self._respond(ws, d)
            await self.broadcast_event("InputMuteStateChanged", {"inputName": inp["inputName"], "inputMuted": inp["muted"]})
        else:
            await self._fail(ws, d, RequestStatus.UNKNOWN_REQUEST_TYPE, "Unknown request type")

    # ── Scene/input mutation helpers ──────────────────────────────────

    async def set_scenes(self, scenes: list[dict]) -> None:
        self.scenes = scenes
        await self.broadcast_event("SceneListChanged", {"scenes": [{"sceneName": s["name"]} for s in scenes]})

    async def add_scene(self, name: str) -> None:
        self.scenes.append({"name": name, "active": False})
        await self.broadcast_event("SceneCreated", {"sceneName": name, "isGroup": False})

    async def remove_scene(self, name: str) -> None:
        self.scenes = [s for s in self.scenes if s["name"] != name]
        await self.broadcast_event("SceneRemoved", {"sceneName": name, "isGroup": False})

    async def rename_scene(self, old: str, new: str) -> None:
        for s in self.scenes:
            if s["name"] == old:
                s["name"] = new
        await self.broadcast_event("SceneNameChanged", {"oldSceneName": old, "sceneName": new})

    async def add_input(self, name: str, kind: str) -> None:
        self.inputs.append({"inputName": name, "inputKind": kind, "muted": False})
        await self.broadcast_event("InputCreated", {"inputName": name, "inputKind": kind})

    async def remove_input(self, name: str) -> None:
        self.inputs = [i for i in self.inputs if i["inputName"] != name]
        await self.broadcast_event("InputRemoved", {"inputName": name})

    async def rename_input(self, old: str, new: str) -> None:
        inp = self._input(old)
        if inp is not None:
            inp["inputName"] = new
        await self.broadcast_event("InputNameChanged", {"oldInputName": old, "inputName": new})


def make_client(server: MockOBSServer, **overrides) -> OBSClient:
    """OBSClient aimed at the mock with short timers."""
    options: dict[str, Any] = dict(
        host="127.0.0.1",
        port=server.port,
        timeout=2.0,
        reconnect_delay=0.05,
        max_reconnect_attempts=5,
        request_timeout=2.0,
    )
    options.update(overrides)
    return OBSClient(**options)

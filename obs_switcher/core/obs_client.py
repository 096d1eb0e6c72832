"""
core/obs_client.py — Async OBS WebSocket 5.x client with reconnect & event bus.

OBSClient owns:
  - the active Connection (one at a time; connecting again tears the old one down)
  - the EventDispatcher (outlives every Connection, so subscriptions survive reconnects)
  - the reconnect policy: fixed delay, bounded attempts, reset on every successful identify

Domain helpers (scenes, inputs, mute) are thin wrappers over call().
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .connection import Connection, ConnectionParams
from .errors import NoMatchingInputFound, NotConnected, OBSError
from .events import (
    CONNECTION_CHANGED,
    INPUT_CREATED,
    INPUT_MUTE_CHANGED,
    INPUT_REMOVED,
    INPUT_RENAMED,
    RECONNECTING,
    SCENE_CHANGED,
    SCENE_CREATED,
    SCENE_LIST_CHANGED,
    SCENE_REMOVED,
    SCENE_RENAMED,
    EventDispatcher,
    Subscription,
)
from .protocol import EventSubscription

log = logging.getLogger(__name__)

# Audio source heuristics. First match in server order wins.
AUDIO_OUTPUT_NAME_HINTS = ("desktop audio", "audio output capture", "speakers")
AUDIO_INPUT_NAME_HINTS = ("mic", "microphone", "audio input capture")
AUDIO_OUTPUT_KINDS = frozenset({
    "wasapi_output_capture",
    "pulse_output_capture",
    "coreaudio_output_capture",
})
AUDIO_INPUT_KINDS = frozenset({
    "wasapi_input_capture",
    "pulse_input_capture",
    "coreaudio_input_capture",
    "alsa_input_capture",
})


class ConnectionState(str, Enum):
    IDLE = "idle"                  # never connected
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"  # lost the connection, retrying
    EXHAUSTED = "exhausted"        # retries used up
    FAILED = "failed"              # last explicit connect() failed
    DISCONNECTED = "disconnected"  # user disconnected


@dataclass
class ConnectResult:
    success: bool
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Scene:
    name: str
    is_current: bool = False

    def to_dict(self) -> dict:
        return {"name": self.name, "is_current": self.is_current}


@dataclass
class Input:
    name: str
    kind: str = ""
    muted: Optional[bool] = None

    def to_dict(self) -> dict:
        return asdict(self)


def match_input(inputs: Iterable[Input], name_hints: Iterable[str], kinds: Iterable[str]) -> Optional[Input]:
    """First input whose name contains a hint (case-insensitive) or whose kind is listed."""
    hints = tuple(h.lower() for h in name_hints)
    kinds = frozenset(kinds)
    for inp in inputs:
        lowered = inp.name.lower()
        if any(h in lowered for h in hints) or inp.kind in kinds:
            return inp
    return None


def _validate_params(params: ConnectionParams) -> None:
    host = params.host
    if not isinstance(host, str) or not host.strip() or any(c.isspace() for c in host) or "/" in host:
        raise ValueError(f"Malformed OBS host: {host!r}")
    port = params.port
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ValueError(f"OBS port must be an integer in 1-65535, got {port!r}")
    if params.timeout <= 0:
        raise ValueError(f"Connect timeout must be positive, got {params.timeout!r}")


class OBSClient:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 4455,
        password: str = "",
        timeout: float = 5.0,
        reconnect_delay: float = 3.0,
        max_reconnect_attempts: int = 5,
        request_timeout: Optional[float] = 10.0,
        event_subscriptions: int = EventSubscription.ALL,
    ):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.request_timeout = request_timeout
        self.event_subscriptions = event_subscriptions

        self.events = EventDispatcher()
        self._connection: Optional[Connection] = None
        self._live: Optional[Connection] = None  # the connection we announced as connected
        self._params: Optional[ConnectionParams] = None
        self._lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None  # handshake of the explicit connect() in flight
        self._reconnect_attempts = 0
        self._state = ConnectionState.IDLE

    async def __aenter__(self) -> "OBSClient":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.disconnect()

    # ── Connection ────────────────────────────────────────────────────

    async def connect(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ConnectResult:
        """
        Open a session and run the handshake. Ordinary failures (refused, timeout,
        bad password) come back as ConnectResult(success=False); only malformed
        arguments raise.
        """
        params = ConnectionParams(
            host=self.host if host is None else host,
            port=self.port if port is None else port,
            password=self.password if password is None else password,
            timeout=self.timeout if timeout is None else timeout,
        )
        _validate_params(params)

        # Last writer wins: abandon any handshake or retry that is still running.
        self._cancel_pending()
        async with self._lock:
            # A retry may have been scheduled while we waited for the lock.
            self._cancel_pending()
            await self._teardown()
            self.host, self.port, self.password, self.timeout = (
                params.host, params.port, params.password, params.timeout,
            )
            self._params = params
            self._reconnect_attempts = 0
            self._state = ConnectionState.CONNECTING

            task = asyncio.get_running_loop().create_task(self._attempt(params))
            self._connect_task = task
            try:
                await asyncio.wait([task])
            except asyncio.CancelledError:
                task.cancel()
                await asyncio.wait([task])
                raise
            finally:
                if self._connect_task is task:
                    self._connect_task = None

            if task.cancelled():
                # A newer connect() or disconnect() took over; it owns the state now.
                log.info(f"Connect to {params.host}:{params.port} superseded")
                return ConnectResult(False, "Superseded by a newer connect or disconnect", "ConnectionClosed")
            result = task.result()
            if not result.success:
                # A failed explicit connect never auto-retries.
                self._params = None
                self._state = ConnectionState.FAILED
            return result

    async def disconnect(self) -> None:
        self._cancel_pending()
        async with self._lock:
            self._cancel_pending()
            had_session = self._params is not None or self._connection is not None
            self._params = None
            self._reconnect_attempts = 0
            await self._teardown()
            if had_session or self._state is not ConnectionState.IDLE:
                self._state = ConnectionState.DISCONNECTED
        log.info("Disconnected from OBS")

    async def aclose(self) -> None:
        await self.disconnect()

    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_ready

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    def get_status(self) -> dict:
        conn = self._connection
        return {
            "state": self._state.value,
            "connected": self.is_connected(),
            "connecting": self._state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING),
            "phase": conn.phase.value if conn else None,
            "host": self.host,
            "port": self.port,
            "rpc_version": conn.rpc_version if conn and conn.is_ready else None,
            "reconnect_attempts": self._reconnect_attempts,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "pending_requests": conn.pending_count if conn else 0,
        }

    async def _attempt(self, params: ConnectionParams) -> ConnectResult:
        conn = Connection(
            params,
            dispatcher=self.events,
            on_closed=self._on_connection_closed,
            request_timeout=self.request_timeout,
            event_subscriptions=self.event_subscriptions,
        )
        self._connection = conn
        try:
            await conn.open()
        except OBSError as e:
            log.warning(f"OBS connection to {params.host}:{params.port} failed: {e}")
            return ConnectResult(False, str(e), type(e).__name__)
        if not conn.is_ready:
            return ConnectResult(False, "Connection closed right after identification", "ConnectionClosed")

        self._reconnect_attempts = 0
        self._state = ConnectionState.CONNECTED
        self._live = conn
        log.info(f"Connected to OBS at {params.host}:{params.port} (rpc v{conn.rpc_version})")
        self.events.emit(CONNECTION_CHANGED, True)
        return ConnectResult(True)

    async def _teardown(self) -> None:
        conn = self._connection
        if conn is not None:
            await conn.close()
        self._connection = None

    def _on_connection_closed(self, conn: Connection) -> None:
        if self._live is conn:
            self._live = None
            self.events.emit(CONNECTION_CHANGED, False)
        if conn is not self._connection or not conn.was_ready or conn.closed_by_client:
            return
        if self._params is None:
            return
        log.warning(f"OBS connection lost (code={conn.close_code}). Scheduling reconnect...")
        self._schedule_reconnect()

    # ── Reconnect ─────────────────────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        if self._params is None:
            return
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            self._state = ConnectionState.EXHAUSTED
            log.error(f"Max OBS reconnect attempts reached ({self.max_reconnect_attempts}).")
            return
        self._reconnect_attempts += 1
        self._state = ConnectionState.RECONNECTING
        log.info(
            f"Scheduling reconnect attempt {self._reconnect_attempts}/{self.max_reconnect_attempts} "
            f"in {self.reconnect_delay:g}s"
        )
        self.events.emit(RECONNECTING, self._reconnect_attempts, self.max_reconnect_attempts)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        async with self._lock:
            params = self._params
            if params is None:
                return
            log.info(f"Reconnect attempt {self._reconnect_attempts}/{self.max_reconnect_attempts}...")
            await self._teardown()
            result = await self._attempt(params)
        if not result.success:
            self._schedule_reconnect()

    def _cancel_pending(self) -> None:
        self._cancel_reconnect()
        task, self._connect_task = self._connect_task, None
        if task is not None and not task.done():
            task.cancel()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── Event subscriptions ───────────────────────────────────────────

    def on(self, name: str, callback: Callable) -> Subscription:
        """Subscribe to a notification name or a raw OBS eventType (e.g. 'StreamStateChanged')."""
        return self.events.subscribe(name, callback)

    def on_connection_changed(self, callback: Callable) -> Subscription:
        """callback(connected: bool). Fires once per session going up or down."""
        return self.events.subscribe(CONNECTION_CHANGED, callback)

    def on_reconnecting(self, callback: Callable) -> Subscription:
        """callback(attempt: int, max_attempts: int)."""
        return self.events.subscribe(RECONNECTING, callback)

    def on_scene_changed(self, callback: Callable) -> Subscription:
        """
        Subscribe to program scene changes from any source (OBS UI, hotkeys, other clients).
        Callback receives scene_name: str.
        """
        return self.events.subscribe(SCENE_CHANGED, callback)

    def on_scenes_list_changed(self, callback: Callable) -> Subscription:
        """callback(scenes: list[dict]) with the raw scene array; re-fetch for current flags."""
        return self.events.subscribe(SCENE_LIST_CHANGED, callback)

    def on_scene_added(self, callback: Callable) -> Subscription:
        return self.events.subscribe(SCENE_CREATED, callback)

    def on_scene_removed(self, callback: Callable) -> Subscription:
        return self.events.subscribe(SCENE_REMOVED, callback)

    def on_scene_renamed(self, callback: Callable) -> Subscription:
        return self.events.subscribe(SCENE_RENAMED, callback)

    def on_input_added(self, callback: Callable) -> Subscription:
        return self.events.subscribe(INPUT_CREATED, callback)

    def on_input_removed(self, callback: Callable) -> Subscription:
        return self.events.subscribe(INPUT_REMOVED, callback)

    def on_input_renamed(self, callback: Callable) -> Subscription:
        return self.events.subscribe(INPUT_RENAMED, callback)

    def on_mute_changed(self, callback: Callable) -> Subscription:
        """callback(input_name: str, muted: bool)."""
        return self.events.subscribe(INPUT_MUTE_CHANGED, callback)

    # ── Core request helper ───────────────────────────────────────────

    async def call(self, request_type: str, request_data: Optional[dict] = None, timeout: Optional[float] = None) -> dict:
        conn = self._connection
        if conn is None or not conn.is_ready:
            raise NotConnected("Not connected to OBS")
        return await conn.call(request_type, request_data, timeout)

    # ── Scenes ───────────────────────────────────────────────────────

    async def get_scene_list(self) -> list[Scene]:
        data = await self.call("GetSceneList")
        current = data.get("currentProgramSceneName", data.get("currentScene"))
        return [
            Scene(name=s.get("sceneName", ""), is_current=s.get("sceneName") == current)
            for s in data.get("scenes", [])
        ]

    async def get_current_scene(self) -> str:
        data = await self.call("GetCurrentProgramScene")
        return data.get("currentProgramSceneName", "")

    async def set_current_scene(self, scene_name: str) -> None:
        if not scene_name or not scene_name.strip():
            raise ValueError("Scene name must not be empty")
        await self.call("SetCurrentProgramScene", {"sceneName": scene_name})
        log.info(f"Switched to scene: {scene_name}")

    # ── Inputs / audio ────────────────────────────────────────────────

    async def get_input_list(self, kind: Optional[str] = None) -> list[Input]:
        data = await self.call("GetInputList", {"inputKind": kind} if kind else None)
        return [
            Input(
                name=i.get("inputName", ""),
                kind=i.get("unversionedInputKind") or i.get("inputKind", ""),
            )
            for i in data.get("inputs", [])
        ]

    async def get_input_mute(self, input_name: str) -> bool:
        data = await self.call("GetInputMute", {"inputName": input_name})
        return bool(data.get("inputMuted"))

    async def toggle_input_mute(self, input_name: str) -> bool:
        """Flip the mute state of an input. Returns the new state."""
        data = await self.call("ToggleInputMute", {"inputName": input_name})
        muted = bool(data.get("inputMuted"))
        log.info(f"Input '{input_name}' {'muted' if muted else 'unmuted'}")
        return muted

    async def set_input_mute(self, input_name: str, muted: bool) -> bool:
        await self.call("SetInputMute", {"inputName": input_name, "inputMuted": muted})
        return muted

    async def find_audio_input(self) -> Input:
        """Desktop audio by name/kind heuristic. Ambiguous setups get the first match."""
        found = match_input(await self.get_input_list(), AUDIO_OUTPUT_NAME_HINTS, AUDIO_OUTPUT_KINDS)
        if found is None:
            raise NoMatchingInputFound("No desktop audio input found in OBS")
        return found

    async def find_mic_input(self) -> Input:
        found = match_input(await self.get_input_list(), AUDIO_INPUT_NAME_HINTS, AUDIO_INPUT_KINDS)
        if found is None:
            raise NoMatchingInputFound("No microphone input found in OBS")
        return found

    async def get_audio_mute_status(self) -> dict:
        inp = await self.find_audio_input()
        return {"input": inp.name, "muted": await self.get_input_mute(inp.name)}

    async def toggle_audio_mute(self) -> dict:
        inp = await self.find_audio_input()
        return {"input": inp.name, "muted": await self.toggle_input_mute(inp.name)}

    async def get_mic_mute_status(self) -> dict:
        inp = await self.find_mic_input()
        return {"input": inp.name, "muted": await self.get_input_mute(inp.name)}

    async def toggle_mic_mute(self) -> dict:
        inp = await self.find_mic_input()
        return {"input": inp.name, "muted": await self.toggle_input_mute(inp.name)}

    # ── System ────────────────────────────────────────────────────────

    async def get_version(self) -> dict:
        d = await self.call("GetVersion")
        return {
            "obs_version": d.get("obsVersion", ""),
            "obs_web_socket_version": d.get("obsWebSocketVersion", ""),
            "rpc_version": d.get("rpcVersion"),
            "platform": d.get("platform", ""),
        }

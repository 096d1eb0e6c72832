"""
core/transport.py — One WebSocket connection, nothing protocol-specific.

A TransportSession is single-use: open() once, close() as often as you like.
Inbound frames are handed to on_message one at a time, in arrival order, from
a single reader task. on_closed(code, reason) fires exactly once, after the
reader has stopped, for any session that got as far as OPEN.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .errors import ConnectionRefused, ConnectTimeout, NotConnected

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

MessageHandler = Callable[[Any], Awaitable[None]]
ClosedHandler = Callable[[Optional[int], str], None]


class TransportState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class TransportSession:
    def __init__(self, on_message: MessageHandler, on_closed: ClosedHandler):
        self._on_message = on_message
        self._on_closed = on_closed
        self._ws: Optional[ClientConnection] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._state = TransportState.NEW
        self._closed_fired = False
        self.url: Optional[str] = None

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is TransportState.OPEN

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def open(self, url: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        if self._state is not TransportState.NEW:
            raise RuntimeError("TransportSession is single-use; create a new one to reconnect")
        self.url = url
        self._state = TransportState.CONNECTING

        async def _connect() -> ClientConnection:
            return await connect(url, open_timeout=None, proxy=None)

        try:
            ws = await asyncio.wait_for(_connect(), timeout)
        except asyncio.TimeoutError:
            self._state = TransportState.CLOSED
            raise ConnectTimeout(f"Connection to {url} timed out after {timeout:g}s") from None
        except InvalidURI as e:
            self._state = TransportState.CLOSED
            raise ValueError(f"Invalid OBS WebSocket URL {url!r}: {e}") from e
        except (OSError, InvalidHandshake) as e:
            self._state = TransportState.CLOSED
            raise ConnectionRefused(f"Could not connect to {url}: {e}") from e

        if self._state is not TransportState.CONNECTING:
            # close() raced the opening handshake
            await ws.close()
            raise NotConnected(f"Transport to {url} was closed while opening")

        self._ws = ws
        self._state = TransportState.OPEN
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())
        log.debug(f"Transport open: {url}")

    async def close(self) -> None:
        if self._ws is None:
            self._state = TransportState.CLOSED
            return
        if self._state is TransportState.OPEN:
            self._state = TransportState.CLOSING
            await self._ws.close()
        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait([task])

    async def send(self, frame: str) -> None:
        if self._state is not TransportState.OPEN or self._ws is None:
            raise NotConnected("Transport is not open")
        try:
            await self._ws.send(frame)
        except ConnectionClosed as e:
            raise NotConnected(f"Transport closed during send: {e}") from e

    # ── Reader ────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for frame in self._ws:
                try:
                    await self._on_message(frame)
                except Exception:
                    log.exception("Transport message handler raised")
        except ConnectionClosed:
            pass
        finally:
            self._state = TransportState.CLOSED
            self._fire_closed(self._ws.close_code, self._ws.close_reason or "")

    def _fire_closed(self, code: Optional[int], reason: str) -> None:
        if self._closed_fired:
            return
        self._closed_fired = True
        log.debug(f"Transport closed: {self.url} (code={code}, reason={reason!r})")
        try:
            self._on_closed(code, reason)
        except Exception:
            log.exception("Transport close handler raised")

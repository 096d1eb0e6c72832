"""
core/connection.py — One OBS session: handshake state machine + request/event routing.

    IDLE → CONNECTING → AWAITING_HELLO → AWAITING_IDENTIFIED → READY
                 ↘              ↘                   ↘            ↘
                FAILED        FAILED/CLOSED       FAILED       CLOSED

A Connection is single-use. Once it is CLOSED or FAILED it stays that way;
OBSClient builds a fresh one for every (re)connect attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .correlator import RequestCorrelator
from .errors import (
    AuthenticationFailed,
    AuthenticationRequired,
    ConnectionClosed,
    ConnectTimeout,
    MalformedFrame,
    NotConnected,
    OBSError,
)
from .events import EventDispatcher
from .protocol import (
    RPC_VERSION,
    CloseCode,
    EventSubscription,
    OpCode,
    compute_authentication,
    decode,
    encode,
    identify_payload,
)
from .transport import TransportSession

log = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_HELLO = "awaiting_hello"
    AWAITING_IDENTIFIED = "awaiting_identified"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class ConnectionParams:
    host: str = "localhost"
    port: int = 4455
    password: str = ""
    timeout: float = 5.0

    @property
    def url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"ws://{host}:{self.port}"


class Connection:
    def __init__(
        self,
        params: ConnectionParams,
        dispatcher: Optional[EventDispatcher] = None,
        on_closed: Optional[Callable[["Connection"], None]] = None,
        request_timeout: Optional[float] = None,
        event_subscriptions: int = EventSubscription.ALL,
    ):
        self.params = params
        self.phase = Phase.IDLE
        self.event_subscriptions = event_subscriptions
        self.rpc_version: Optional[int] = None
        self.obs_websocket_version: Optional[str] = None
        self.close_code: Optional[int] = None
        self.closed_by_client = False
        self.was_ready = False

        self._dispatcher = dispatcher or EventDispatcher()
        self._on_closed = on_closed
        self._transport = TransportSession(self._handle_frame, self._handle_transport_closed)
        self._correlator = RequestCorrelator(self._transport.send, request_timeout)
        self._identified: Optional[asyncio.Future] = None

    def __repr__(self) -> str:
        return f"<Connection {self.params.url} {self.phase.value}>"

    @property
    def is_ready(self) -> bool:
        return self.phase is Phase.READY

    @property
    def pending_count(self) -> int:
        return self._correlator.pending_count

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def open(self) -> None:
        """Connect and run the handshake. Returns once READY, raises otherwise."""
        if self.phase is not Phase.IDLE:
            raise RuntimeError(f"{self!r} is single-use")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.params.timeout
        self._identified = loop.create_future()
        self.phase = Phase.CONNECTING

        try:
            await self._transport.open(self.params.url, self.params.timeout)
        except BaseException:
            self.phase = Phase.FAILED
            self._identified.cancel()
            raise
        self.phase = Phase.AWAITING_HELLO

        try:
            await asyncio.wait_for(self._identified, max(0.0, deadline - loop.time()))
        except asyncio.TimeoutError:
            self.phase = Phase.FAILED
            await self._transport.close()
            raise ConnectTimeout(
                f"OBS at {self.params.url} did not complete the handshake within {self.params.timeout:g}s"
            ) from None
        except asyncio.CancelledError:
            self.closed_by_client = True
            await self._transport.close()
            raise
        except OBSError:
            await self._transport.close()
            raise

    async def close(self) -> None:
        self.closed_by_client = True
        if self._identified is not None and not self._identified.done():
            self._identified.cancel()
        await self._transport.close()
        if self.phase is not Phase.FAILED:
            self.phase = Phase.CLOSED
        self._correlator.fail_all()

    # ── Requests ──────────────────────────────────────────────────────

    async def call(
        self,
        request_type: str,
        request_data: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        if self.phase is not Phase.READY:
            raise NotConnected(f"Cannot send {request_type}: connection is {self.phase.value}")
        return await self._correlator.call(request_type, request_data, timeout)

    async def reidentify(self, event_subscriptions: int) -> None:
        """Change the event subscription mask of a live session."""
        if self.phase is not Phase.READY:
            raise NotConnected("Cannot reidentify: connection is not ready")
        self.event_subscriptions = event_subscriptions
        await self._transport.send(encode(OpCode.REIDENTIFY, {"eventSubscriptions": int(event_subscriptions)}))

    # ── Inbound ───────────────────────────────────────────────────────

    async def _handle_frame(self, frame: Any) -> None:
        try:
            msg = decode(frame)
        except MalformedFrame as e:
            log.warning(f"Ignoring malformed frame from {self.params.url}: {e}")
            return

        if msg.op is OpCode.HELLO and self.phase is Phase.AWAITING_HELLO:
            await self._on_hello(msg.d)
        elif msg.op is OpCode.IDENTIFIED and self.phase is Phase.AWAITING_IDENTIFIED:
            await self._on_identified(msg.d)
        elif msg.op is OpCode.REQUEST_RESPONSE and self.phase is Phase.READY:
            self._correlator.resolve(msg.d)
        elif msg.op is OpCode.EVENT and self.phase is Phase.READY:
            self._dispatcher.dispatch_event(msg.d.get("eventType", ""), msg.d.get("eventData"))
        elif msg.op is OpCode.IDENTIFIED and self.phase is Phase.READY:
            log.debug("Reidentify acknowledged")
        else:
            log.debug(f"Dropping {msg.op.name} frame in phase {self.phase.value}")

    async def _on_hello(self, d: dict) -> None:
        self.obs_websocket_version = d.get("obsWebSocketVersion")
        server_rpc = d.get("rpcVersion")
        rpc_version = min(RPC_VERSION, server_rpc) if isinstance(server_rpc, int) else RPC_VERSION

        authentication = None
        challenge = d.get("authentication")
        if challenge:
            if not self.params.password:
                await self._fail(AuthenticationRequired("OBS requires a password but none was provided"))
                return
            authentication = compute_authentication(
                self.params.password, challenge.get("salt", ""), challenge.get("challenge", "")
            )

        self.phase = Phase.AWAITING_IDENTIFIED
        try:
            await self._transport.send(
                encode(OpCode.IDENTIFY, identify_payload(rpc_version, authentication, self.event_subscriptions))
            )
        except NotConnected:
            pass  # the close handler settles the handshake
        else:
            self.rpc_version = rpc_version

    async def _on_identified(self, d: dict) -> None:
        error = d.get("error")
        if error:
            await self._fail(AuthenticationFailed(f"Identify rejected: {error}"))
            return
        self.rpc_version = d.get("negotiatedRpcVersion", self.rpc_version)
        self.phase = Phase.READY
        self.was_ready = True
        if self._identified is not None and not self._identified.done():
            self._identified.set_result(None)

    async def _fail(self, error: OBSError) -> None:
        self.phase = Phase.FAILED
        if self._identified is not None and not self._identified.done():
            self._identified.set_exception(error)
        await self._transport.close()

    def _handle_transport_closed(self, code: Optional[int], reason: str) -> None:
        self.close_code = code
        if self._identified is not None and not self._identified.done():
            if code == CloseCode.AUTHENTICATION_FAILED:
                error: OBSError = AuthenticationFailed(f"Authentication failed: {reason or 'password rejected'}")
            else:
                error = ConnectionClosed(f"OBS closed the connection during the handshake (code={code} {reason})")
            self.phase = Phase.FAILED
            self._identified.set_exception(error)
        elif self.phase is not Phase.FAILED:
            self.phase = Phase.CLOSED

        self._correlator.fail_all()
        if self._on_closed is not None:
            self._on_closed(self)

"""
core/correlator.py — Matches RequestResponse frames to in-flight requests.

Each call() gets its own future keyed by a request id that is unique for the
lifetime of the owning Connection, so any number of requests can be in flight
and resolve in whatever order OBS answers them.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .errors import ConnectionClosed, RequestFailed, RequestTimeout
from .protocol import OpCode, encode, request_payload

log = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[None]]


@dataclass
class PendingRequest:
    request_id: str
    request_type: str
    future: asyncio.Future


class RequestCorrelator:
    def __init__(self, send: SendFn, default_timeout: Optional[float] = None):
        self._send = send
        self.default_timeout = default_timeout or None
        self._ids = itertools.count(1)
        self._pending: dict[str, PendingRequest] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    async def call(
        self,
        request_type: str,
        request_data: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        if self._closed:
            raise ConnectionClosed(f"{request_type}: connection already closed")

        request_id = str(next(self._ids))
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, request_type, future)
        timeout = timeout if timeout is not None else self.default_timeout

        try:
            await self._send(encode(OpCode.REQUEST, request_payload(request_type, request_id, request_data)))
            log.debug(f"→ {request_type} (id={request_id})")
            if timeout:
                try:
                    return await asyncio.wait_for(future, timeout)
                except asyncio.TimeoutError:
                    raise RequestTimeout(f"{request_type} timed out after {timeout:g}s") from None
            return await future
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, payload: dict) -> bool:
        """Complete the pending request a RequestResponse payload belongs to."""
        request_id = str(payload.get("requestId", ""))
        pending = self._pending.pop(request_id, None)
        if pending is None:
            log.debug(f"Dropping response for unknown request id {request_id!r}")
            return False
        if pending.future.done():
            return False

        status = payload.get("requestStatus") or {}
        if status.get("result"):
            pending.future.set_result(payload.get("responseData") or {})
        else:
            pending.future.set_exception(
                RequestFailed(
                    payload.get("requestType", pending.request_type),
                    status.get("code"),
                    status.get("comment"),
                )
            )
        log.debug(f"← {pending.request_type} (id={request_id}, ok={bool(status.get('result'))})")
        return True

    def fail_all(self, reason: str = "connection closed") -> int:
        """Fail every pending request and refuse new ones. Returns how many were failed."""
        self._closed = True
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(ConnectionClosed(f"{entry.request_type}: {reason}"))
        if pending:
            log.debug(f"Failed {len(pending)} pending request(s) on close")
        return len(pending)

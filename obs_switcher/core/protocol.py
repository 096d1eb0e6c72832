"""
core/protocol.py — OBS WebSocket v5 wire codec.

Every frame is a JSON object {"op": <OpCode>, "d": {...}}. This module only
knows about envelopes and payload shapes; it never touches a socket.

Auth (from the v5 protocol docs):
    secret = base64(sha256(password + salt))
    auth   = base64(sha256(secret + challenge))
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Any, Optional, Union

from .errors import MalformedFrame

RPC_VERSION = 1


class OpCode(IntEnum):
    HELLO = 0
    IDENTIFY = 1
    IDENTIFIED = 2
    REIDENTIFY = 3
    EVENT = 5
    REQUEST = 6
    REQUEST_RESPONSE = 7
    REQUEST_BATCH = 8
    REQUEST_BATCH_RESPONSE = 9


class EventSubscription(IntFlag):
    NONE = 0
    GENERAL = 1 << 0
    CONFIG = 1 << 1
    SCENES = 1 << 2
    INPUTS = 1 << 3
    TRANSITIONS = 1 << 4
    FILTERS = 1 << 5
    OUTPUTS = 1 << 6
    SCENE_ITEMS = 1 << 7
    MEDIA_INPUTS = 1 << 8
    VENDORS = 1 << 9
    UI = 1 << 10
    # Everything except the high-volume events, same as the server default.
    ALL = (
        GENERAL | CONFIG | SCENES | INPUTS | TRANSITIONS | FILTERS
        | OUTPUTS | SCENE_ITEMS | MEDIA_INPUTS | VENDORS | UI
    )


class CloseCode(IntEnum):
    """Server-side WebSocket close codes we react to."""
    UNKNOWN_REASON = 4000
    MESSAGE_DECODE_ERROR = 4002
    NOT_IDENTIFIED = 4007
    ALREADY_IDENTIFIED = 4008
    AUTHENTICATION_FAILED = 4009
    UNSUPPORTED_RPC_VERSION = 4010
    SESSION_INVALIDATED = 4011


class RequestStatus(IntEnum):
    SUCCESS = 100
    MISSING_REQUEST_TYPE = 203
    UNKNOWN_REQUEST_TYPE = 204
    MISSING_REQUEST_FIELD = 300
    RESOURCE_NOT_FOUND = 600


@dataclass
class Message:
    op: OpCode
    d: dict = field(default_factory=dict)


Frame = Union[str, bytes]


def encode(op: OpCode, payload: Optional[dict] = None) -> str:
    return json.dumps({"op": int(op), "d": payload or {}})


def decode(frame: Frame) -> Message:
    try:
        data = json.loads(frame)
    except (TypeError, ValueError) as e:
        raise MalformedFrame(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedFrame(f"Frame envelope must be an object, got {type(data).__name__}")

    op = data.get("op")
    # bool is an int subclass; {"op": true} is not a valid opcode
    if not isinstance(op, int) or isinstance(op, bool):
        raise MalformedFrame(f"Frame has missing or non-integer op: {op!r}")
    try:
        opcode = OpCode(op)
    except ValueError:
        raise MalformedFrame(f"Unknown op code: {op}") from None

    payload = data.get("d", {})
    if not isinstance(payload, dict):
        raise MalformedFrame(f"Frame payload must be an object, got {type(payload).__name__}")
    return Message(op=opcode, d=payload)


def compute_authentication(password: str, salt: str, challenge: str) -> str:
    secret = base64.b64encode(hashlib.sha256((password + salt).encode()).digest()).decode()
    return base64.b64encode(hashlib.sha256((secret + challenge).encode()).digest()).decode()


# ── Payload builders ──────────────────────────────────────────────────


def identify_payload(
    rpc_version: int = RPC_VERSION,
    authentication: Optional[str] = None,
    event_subscriptions: Optional[int] = None,
) -> dict:
    d: dict[str, Any] = {"rpcVersion": rpc_version}
    if authentication is not None:
        d["authentication"] = authentication
    if event_subscriptions is not None:
        d["eventSubscriptions"] = int(event_subscriptions)
    return d


def request_payload(request_type: str, request_id: str, request_data: Optional[dict] = None) -> dict:
    d: dict[str, Any] = {"requestType": request_type, "requestId": request_id}
    if request_data:
        d["requestData"] = request_data
    return d

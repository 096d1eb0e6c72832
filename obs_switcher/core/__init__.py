"""core — OBS WebSocket protocol client and connection lifecycle."""
from .connection import Connection, ConnectionParams, Phase
from .connection_manager import ConnectionManager
from .errors import (
    AuthenticationFailed,
    AuthenticationRequired,
    ConnectionClosed,
    ConnectionFailed,
    ConnectionRefused,
    ConnectTimeout,
    MalformedFrame,
    NoMatchingInputFound,
    NotConnected,
    OBSConnectionError,
    OBSError,
    RequestFailed,
    RequestTimeout,
)
from .events import EventDispatcher, Subscription
from .obs_client import ConnectionState, ConnectResult, Input, OBSClient, Scene

__all__ = [
    "AuthenticationFailed",
    "AuthenticationRequired",
    "Connection",
    "ConnectionClosed",
    "ConnectionFailed",
    "ConnectionManager",
    "ConnectionParams",
    "ConnectionRefused",
    "ConnectionState",
    "ConnectResult",
    "ConnectTimeout",
    "EventDispatcher",
    "Input",
    "MalformedFrame",
    "NoMatchingInputFound",
    "NotConnected",
    "OBSClient",
    "OBSConnectionError",
    "OBSError",
    "Phase",
    "RequestFailed",
    "RequestTimeout",
    "Scene",
    "Subscription",
]

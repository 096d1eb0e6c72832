"""
core/errors.py — Error taxonomy for the OBS WebSocket client.

Connection-level failures (ConnectionFailed subclasses) only ever surface as a
failed ConnectResult from OBSClient.connect(). Everything else is raised to the
caller of the specific request that hit it.
"""

from __future__ import annotations

from typing import Optional


class OBSError(Exception):
    """Base class for every error raised by obs_switcher.core."""


# Kept for callers written against the old single-exception API.
OBSConnectionError = OBSError


# ── Connection establishment ──────────────────────────────────────────


class ConnectionFailed(OBSError):
    pass


class ConnectTimeout(ConnectionFailed):
    pass


class ConnectionRefused(ConnectionFailed):
    pass


class AuthenticationRequired(ConnectionFailed):
    """OBS sent an auth challenge but no password was configured."""


class AuthenticationFailed(ConnectionFailed):
    pass


# ── Session / requests ────────────────────────────────────────────────


class NotConnected(OBSError):
    """A request or send was attempted while the session is not Ready."""


class ConnectionClosed(OBSError):
    """The connection went away while a request was still pending."""


class RequestFailed(OBSError):
    def __init__(self, request_type: str, code: Optional[int] = None, comment: Optional[str] = None):
        self.request_type = request_type
        self.code = code
        self.comment = comment or ""
        msg = f"{request_type} failed (code {code})"
        if self.comment:
            msg += f": {self.comment}"
        super().__init__(msg)


class RequestTimeout(OBSError):
    pass


class NoMatchingInputFound(OBSError):
    pass


class MalformedFrame(OBSError, ValueError):
    """Inbound frame could not be decoded. Never fatal to a connection."""

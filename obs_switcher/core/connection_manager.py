"""
core/connection_manager.py — Owns the application's one OBSClient.

Whoever runs the app (CLI command, API server) creates a ConnectionManager and
passes it down explicitly. Nothing here is module-global.
"""

from __future__ import annotations

import logging
from typing import Optional

from obs_switcher.config.settings import OBSSettings

from .obs_client import ConnectResult, OBSClient

log = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self, settings: Optional[OBSSettings] = None, client: Optional[OBSClient] = None):
        self.settings = settings or OBSSettings()
        self._client = client or self._build_client(self.settings)

    @staticmethod
    def _build_client(s: OBSSettings) -> OBSClient:
        return OBSClient(
            host=s.host,
            port=s.port,
            password=s.password,
            timeout=s.timeout,
            reconnect_delay=s.reconnect_delay,
            max_reconnect_attempts=s.max_reconnect_attempts,
            request_timeout=s.request_timeout or None,
        )

    @property
    def client(self) -> OBSClient:
        return self._client

    async def start(self) -> ConnectResult:
        """Initial connection. Failure is logged, not raised; the app keeps running."""
        result = await self._client.connect()
        if not result.success:
            log.warning(f"OBS not reachable at {self.settings.host}:{self.settings.port}: {result.error}")
        return result

    async def shutdown(self) -> None:
        await self._client.disconnect()
        self._client.events.clear()

"""
obs-switcher — OBS Studio scene switcher & mute control over OBS WebSocket v5.

Modules:
  core/     — OBS WebSocket protocol client, handshake, reconnect, domain ops
  api/      — FastAPI REST + WebSocket event bridge
  config/   — Settings, env loading, YAML config
"""

__version__ = "1.0.0"

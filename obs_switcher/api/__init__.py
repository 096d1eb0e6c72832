"""api — FastAPI REST + WebSocket event bridge."""
from .server import WSConnectionPool, create_app, register_event_bridge

__all__ = ["WSConnectionPool", "create_app", "register_event_bridge"]

"""Event bus implementations: in-memory and Redis Streams."""

from billing_backoffice.bus.bus import create_event_bus

__all__ = ["create_event_bus"]

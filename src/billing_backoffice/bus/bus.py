"""Event bus factory.

Creates the appropriate event bus implementation for the configured backend.
"""

from __future__ import annotations

from collections.abc import Callable

from billing_backoffice.core.enums import BusBackend

from .memory_bus import MemoryEventBus
from .redis_streams import RedisStreamsBus


def create_event_bus(
    backend: BusBackend,
    redis_url: str = "redis://localhost:6379/0",
    stream_prefix: str = "billing:",
    max_stream_length: int = 10_000,
    on_handler_error: Callable[
        [str, str, str, Exception], None
    ] | None = None,
) -> MemoryEventBus | RedisStreamsBus:
    """Create an event bus for the given backend.

    - MEMORY: MemoryEventBus (no external deps, queued dispatch)
    - REDIS: RedisStreamsBus (persistent, multi-process)

    Args:
        backend: Which implementation to build.
        redis_url: Redis connection URL (redis only).
        stream_prefix: Prefix for stream keys (redis only).
        max_stream_length: Approximate MAXLEN per stream (redis only).
        on_handler_error: Optional callback ``(name, group, msg_id, exc)``
            invoked when a handler raises.
    """
    if backend == BusBackend.MEMORY:
        return MemoryEventBus(on_handler_error=on_handler_error)
    return RedisStreamsBus(
        redis_url=redis_url,
        stream_prefix=stream_prefix,
        max_stream_length=max_stream_length,
        on_handler_error=on_handler_error,
    )

"""In-memory event bus for tests and single-process deployments.

No external dependencies.  Supports consumer groups for compatibility
with the Redis Streams interface.

Delivery modes:
- queued (default): ``send`` records the message and returns; handlers run
  when ``drain()`` is awaited.  This mirrors the asynchronous hand-off of
  Redis Streams, so a handler never runs inside the ``save`` that
  published the event.
- inline: handlers run inside ``send`` in subscription order.

Handler failures never propagate to the sender; they are counted and
dead-lettered.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from billing_backoffice.core.interfaces import MessageHandler

from .schemas import BusMessage

logger = logging.getLogger(__name__)


@dataclass
class MemoryDeadLetter:
    """Record of a handler failure in the memory bus."""

    name: str
    group: str
    event_id: str
    error: str
    timestamp: float = field(default_factory=time.monotonic)


class MemoryEventBus:
    """In-memory event bus.  Safe within a single asyncio event loop.

    Parameters
    ----------
    dispatch_inline
        Run handlers inside ``send`` instead of on ``drain()``.
    on_handler_error
        Optional ``(name, group, event_id, exc)`` callback for external
        metrics/alerting.
    """

    def __init__(
        self,
        dispatch_inline: bool = False,
        on_handler_error: Callable[
            [str, str, str, Exception], None
        ] | None = None,
    ) -> None:
        # name -> list of (group, handler)
        self._handlers: dict[str, list[tuple[str, MessageHandler]]] = defaultdict(list)
        self._history: list[BusMessage] = []
        self._queue: deque[BusMessage] = deque()
        self._dispatch_inline = dispatch_inline
        self._running = False
        self._on_handler_error = on_handler_error

        # Observability
        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[MemoryDeadLetter] = []
        self._messages_processed: int = 0

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def send(self, name: str, payload: dict[str, Any]) -> str:
        """Record *payload* under *name* and return its event id."""
        message = BusMessage(name=name, payload=dict(payload))
        self._history.append(message)
        logger.debug("Sending event %s (%s)", name, message.event_id)

        if self._dispatch_inline:
            await self._dispatch(message)
        else:
            self._queue.append(message)
        return message.event_id

    async def subscribe(
        self,
        name: str,
        group: str,
        handler: MessageHandler,
    ) -> None:
        """Subscribe a handler to an event name with a consumer group name."""
        self._handlers[name].append((group, handler))

    async def drain(self, max_messages: int | None = None) -> int:
        """Dispatch queued messages, including ones sent by handlers.

        Returns the number of messages taken off the queue.
        """
        taken = 0
        while self._queue and (max_messages is None or taken < max_messages):
            message = self._queue.popleft()
            taken += 1
            await self._dispatch(message)
        return taken

    async def _dispatch(self, message: BusMessage) -> None:
        for group, handler in list(self._handlers.get(message.name, [])):
            try:
                await handler(message)
                self._messages_processed += 1
            except Exception as exc:
                self._error_counts[f"{message.name}/{group}"] += 1
                self._dead_letters.append(
                    MemoryDeadLetter(
                        name=message.name,
                        group=group,
                        event_id=message.event_id,
                        error=str(exc),
                    )
                )
                logger.exception(
                    "Handler error on event=%s group=%s id=%s",
                    message.name,
                    group,
                    message.event_id,
                )

                if self._on_handler_error is not None:
                    try:
                        self._on_handler_error(
                            message.name, group, message.event_id, exc,
                        )
                    except Exception:
                        logger.warning(
                            "on_handler_error callback failed",
                            exc_info=True,
                        )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        """Return per-name/group error counts."""
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[MemoryDeadLetter]:
        """Access the dead-letter list (read-only snapshot)."""
        return list(self._dead_letters)

    @property
    def messages_processed(self) -> int:
        """Total messages successfully handled."""
        return self._messages_processed

    @property
    def pending(self) -> int:
        """Messages sent but not yet dispatched."""
        return len(self._queue)

    # ------------------------------------------------------------------
    # Testing helpers
    # ------------------------------------------------------------------

    def get_history(self, name: str | None = None) -> list[BusMessage]:
        """Get sent messages, optionally filtered by event name."""
        if name is None:
            return list(self._history)
        return [m for m in self._history if m.name == name]

    def clear_history(self) -> None:
        self._history.clear()

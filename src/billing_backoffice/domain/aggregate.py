"""Outbox primitive shared by all aggregates.

Design invariants
-----------------
1.  ``add_event()`` buffers events in **append order**.
2.  ``purge_events()`` delivers buffered events in that same order.  An
    event's id is recorded as sent *before* its delivery is awaited, so a
    second purge of the same instance never re-delivers it, even when the
    first delivery raised half-way.
3.  The sent-id set lives on the loaded instance only.  Reloading the
    aggregate from storage forgets it, which is why delivery is
    at-least-once and consumers must dedupe by ``event_id``.
4.  Buffer and sent set are pydantic private attributes: they are never
    serialized with the aggregate state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, PrivateAttr

from .events import DomainEvent

logger = logging.getLogger(__name__)

# Delivery callback invoked once per buffered event during a purge.
Deliver = Callable[[DomainEvent], Awaitable[object]]


class AggregateRoot(BaseModel):
    """Base class for aggregates that record domain events."""

    _pending_events: list[DomainEvent] = PrivateAttr(default_factory=list)
    _sent_event_ids: set[str] = PrivateAttr(default_factory=set)

    def add_event(self, event: DomainEvent) -> None:
        """Buffer *event* until the next ``purge_events``."""
        self._pending_events.append(event)

    @property
    def pending_events(self) -> list[DomainEvent]:
        """Snapshot of the buffered events, oldest first."""
        return list(self._pending_events)

    def was_sent(self, event_id: str) -> bool:
        return event_id in self._sent_event_ids

    async def purge_events(self, deliver: Deliver) -> int:
        """Hand every not-yet-sent buffered event to *deliver*.

        Returns the number of events delivered by this call.  If *deliver*
        raises, the exception propagates and the buffer is left in place;
        the failed event is already marked sent and will be skipped by a
        retry on this instance.
        """
        delivered = 0
        for event in list(self._pending_events):
            if event.event_id in self._sent_event_ids:
                continue
            self._sent_event_ids.add(event.event_id)
            await deliver(event)
            delivered += 1
        self._pending_events.clear()
        if delivered:
            logger.debug("Purged %d event(s) from outbox", delivered)
        return delivered

"""Domain events emitted by the Invoice aggregate.

Design invariants
-----------------
1.  Every event is **immutable** (``frozen=True``).
2.  ``event_id`` is a UUID4 generated at creation time; the outbox uses it
    to skip events already handed to the bus by the same loaded instance,
    and consumers use it as their dedupe key.
3.  ``data`` is JSON-safe: datetimes are ISO-8601 strings, amounts are
    integer cents.  The bus payload is ``{"aggregateId": ..., **data}``.
4.  Event names are part of the wire contract with consumers and must not
    be renamed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from billing_backoffice.core.ids import new_id as _uuid
from billing_backoffice.core.ids import utc_now as _now

# ---------------------------------------------------------------------------
# Event names
# ---------------------------------------------------------------------------

INVOICE_PDF = "invoice.pdf"
INVOICE_SEND = "invoice.send"
INVOICE_LATER = "invoice.later"
INVOICE_SCHEDULED = "invoice.scheduled"
INVOICE_PUBLISHED = "invoice.published"
INVOICE_PAYMENT = "invoice.payment"
INVOICE_DATES_CHANGED = "InvoiceDatesChanged"
INVOICE_PAID = "InvoicePaid"
INVOICE_CANCELLED = "InvoiceCancelled"

ALL_EVENT_NAMES: frozenset[str] = frozenset({
    INVOICE_PDF,
    INVOICE_SEND,
    INVOICE_LATER,
    INVOICE_SCHEDULED,
    INVOICE_PUBLISHED,
    INVOICE_PAYMENT,
    INVOICE_DATES_CHANGED,
    INVOICE_PAID,
    INVOICE_CANCELLED,
})


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DomainEvent:
    """A fact recorded by an aggregate, waiting in its outbox.

    Shared fields
    ~~~~~~~~~~~~~
    aggregate_id    Id of the aggregate that recorded the event.
    name            Wire name (see the constants above).
    data            JSON-safe payload.
    event_id        Unique identity (UUID4).  Outbox / consumer dedupe key.
    occurred_on     UTC creation time.
    """

    aggregate_id: str
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=_uuid)
    occurred_on: datetime = field(default_factory=_now)

    def to_message(self) -> dict[str, Any]:
        """Payload handed to ``IEventBus.send``."""
        return {"aggregateId": self.aggregate_id, **self.data}


def iso(value: datetime | None) -> str | None:
    """ISO-8601 rendering used inside event payloads."""
    return value.isoformat() if value is not None else None

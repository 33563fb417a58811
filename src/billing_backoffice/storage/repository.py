"""Invoice persistence contract shared by every storage backend.

Design invariants
-----------------
1.  **State first, then events.**  ``save()`` commits the invoice row and
    only afterwards purges the aggregate's outbox into the event bus.  A
    bus failure therefore surfaces as "state changed, event not yet
    delivered"; it propagates to the caller and is never retried here.
2.  **Optimistic concurrency.**  Every stored row carries a ``version``.
    ``save()`` only succeeds when the stored version still equals the one
    the caller loaded; otherwise ``ConcurrencyError`` is raised and
    nothing is written.
3.  **Fresh instances.**  ``get_by_id()`` rebuilds the aggregate from the
    stored record on every call, so two loads never share mutable state
    (nor an outbox).
4.  **Flat records.**  ``to_record`` / ``from_record`` define the on-disk
    shape: scalar columns plus JSON text for ``customer``, ``items``,
    ``activity``, ``submissions``, ``links``, ``pdf`` and
    ``processed_event_ids``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from pydantic import TypeAdapter

from billing_backoffice.core.enums import InvoiceStatus, InvoiceType
from billing_backoffice.core.interfaces import IEventBus
from billing_backoffice.domain.events import DomainEvent
from billing_backoffice.domain.invoice import Invoice
from billing_backoffice.domain.models import (
    CustomerSnapshot,
    InvoiceActivity,
    InvoiceItem,
    InvoiceLinks,
    InvoiceSubmission,
    PdfInfo,
)
from billing_backoffice.observability.metrics import (
    record_delivery_failure,
    record_event_published,
)

logger = logging.getLogger(__name__)

_ITEMS = TypeAdapter(list[InvoiceItem])
_ACTIVITY = TypeAdapter(list[InvoiceActivity])
_SUBMISSIONS = TypeAdapter(list[InvoiceSubmission])


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def as_utc(value: datetime | None) -> datetime | None:
    """Stores without timezone support hand back naive UTC datetimes."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json_or_none(model: Any) -> str | None:
    return model.model_dump_json() if model is not None else None


def invoice_to_record(invoice: Invoice) -> dict[str, Any]:
    """Flatten an :class:`Invoice` into storable columns."""
    customer = invoice.customer.model_dump(mode="json", exclude={"id"})
    return {
        "id": invoice.id,
        "type": invoice.type.value,
        "status": invoice.status.value,
        "customer_id": invoice.customer.id,
        "customer": json.dumps(customer),
        "items": _ITEMS.dump_json(invoice.items).decode(),
        "activity": _ACTIVITY.dump_json(invoice.activity).decode(),
        "submissions": _SUBMISSIONS.dump_json(invoice.submissions).decode(),
        "links": _json_or_none(invoice.links),
        "pdf": _json_or_none(invoice.pdf),
        "processed_event_ids": json.dumps(invoice.processed_event_ids),
        "subject": invoice.subject,
        "footer_text": invoice.footer_text,
        "offer_number": invoice.offer_number,
        "invoice_number": invoice.invoice_number,
        "offered_at": invoice.offered_at,
        "invoiced_at": invoice.invoiced_at,
        "due_at": invoice.due_at,
        "paid_cents": invoice.paid_cents,
        "paid_at": invoice.paid_at,
        "paid_via": invoice.paid_via,
        "total_cents": round(invoice.total_cents),
        "total_tax_cents": round(invoice.total_tax_cents),
        "content_hash": invoice.content_hash,
        "scheduled_send_job_id": invoice.scheduled_send_job_id or "",
        "created_at": invoice.created_at,
        "updated_at": invoice.updated_at,
    }


def record_to_invoice(record: dict[str, Any], version: int) -> Invoice:
    """Rebuild an :class:`Invoice` from columns produced by ``invoice_to_record``."""
    customer = json.loads(record["customer"] or "{}")
    customer["id"] = record.get("customer_id") or ""
    return Invoice(
        id=record["id"],
        type=InvoiceType(record["type"]),
        status=InvoiceStatus(record["status"]),
        customer=CustomerSnapshot.model_validate(customer),
        items=_ITEMS.validate_json(record["items"] or "[]"),
        activity=_ACTIVITY.validate_json(record["activity"] or "[]"),
        submissions=_SUBMISSIONS.validate_json(record["submissions"] or "[]"),
        links=InvoiceLinks.model_validate_json(record["links"]) if record.get("links") else None,
        pdf=PdfInfo.model_validate_json(record["pdf"]) if record.get("pdf") else None,
        processed_event_ids=json.loads(record.get("processed_event_ids") or "[]"),
        subject=record.get("subject"),
        footer_text=record.get("footer_text"),
        offer_number=record.get("offer_number"),
        invoice_number=record.get("invoice_number"),
        offered_at=as_utc(record.get("offered_at")),
        invoiced_at=as_utc(record.get("invoiced_at")),
        due_at=as_utc(record.get("due_at")),
        paid_cents=record.get("paid_cents"),
        paid_at=as_utc(record.get("paid_at")),
        paid_via=record.get("paid_via"),
        total_cents=record.get("total_cents"),
        total_tax_cents=record.get("total_tax_cents"),
        content_hash=record.get("content_hash"),
        scheduled_send_job_id=record.get("scheduled_send_job_id") or None,
        created_at=as_utc(record["created_at"]),
        updated_at=as_utc(record["updated_at"]),
        version=version,
    )


# ---------------------------------------------------------------------------
# Repository base
# ---------------------------------------------------------------------------

class InvoiceRepository(ABC):
    """Loads and saves invoices and flushes their outbox after each write.

    Subclasses implement the four storage primitives; everything else
    (factory, versioning, purge protocol) lives here.
    """

    def __init__(self, event_bus: IEventBus) -> None:
        self._event_bus = event_bus

    # -- storage primitives ---------------------------------------------

    @abstractmethod
    async def _read(self, invoice_id: str) -> tuple[dict[str, Any], int] | None:
        """Return ``(record, version)`` or ``None``."""

    @abstractmethod
    async def _write(self, record: dict[str, Any], expected_version: int) -> int:
        """Insert (``expected_version == 0``) or conditionally update.

        Returns the new version.  Raises ``ConcurrencyError`` when the
        stored version differs from *expected_version*.
        """

    @abstractmethod
    async def _remove(self, invoice_id: str) -> None: ...

    # -- public API -----------------------------------------------------

    async def get_by_id(self, invoice_id: str) -> Invoice | None:
        found = await self._read(invoice_id)
        if found is None:
            return None
        record, version = found
        return record_to_invoice(record, version)

    async def create(
        self,
        kind: InvoiceType,
        customer: CustomerSnapshot,
        user: str | None = None,
    ) -> Invoice:
        """Persist a new Draft (see :meth:`Invoice.draft`)."""
        invoice = Invoice.draft(kind, customer, user)
        return await self.save(invoice)

    async def save(self, invoice: Invoice) -> Invoice:
        """Write *invoice*, bump its version, then purge its outbox."""
        new_version = await self._write(invoice_to_record(invoice), invoice.version)
        invoice.version = new_version
        logger.debug(
            "Saved invoice %s status=%s version=%d",
            invoice.id,
            invoice.status.value,
            new_version,
        )
        await self._purge_outbox(invoice)
        return invoice

    async def delete(self, invoice_id: str) -> None:
        await self._remove(invoice_id)
        logger.debug("Deleted invoice %s", invoice_id)

    # -- outbox -----------------------------------------------------------

    async def _purge_outbox(self, invoice: Invoice) -> None:
        pending = invoice.pending_events
        if not pending:
            return
        logger.debug(
            "Purging %d event(s) for invoice %s: %s",
            len(pending),
            invoice.id,
            [e.name for e in pending],
        )
        await invoice.purge_events(self._deliver)

    async def _deliver(self, event: DomainEvent) -> None:
        try:
            event_id = await self._event_bus.send(event.name, event.to_message())
        except Exception:
            record_delivery_failure(event.name)
            logger.error(
                "Event %s for %s not delivered; state is already committed",
                event.name,
                event.aggregate_id,
            )
            raise
        record_event_published(event.name)
        logger.debug("Event %s sent as %s", event.name, event_id)

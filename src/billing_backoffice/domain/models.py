"""Value objects owned by the Invoice aggregate.

These are plain pydantic models.  They carry no workflow logic beyond
their own arithmetic; all state transitions live on ``Invoice``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from billing_backoffice.core.enums import InvoiceActivityType, InvoiceSubmissionType
from billing_backoffice.core.ids import new_id, utc_now
from billing_backoffice.core.money import round_half_up


# ---------------------------------------------------------------------------
# Customer snapshot
# ---------------------------------------------------------------------------

class CustomerSnapshot(BaseModel):
    """Copy of the customer's data at the time it was assigned.

    ``id`` is a weak reference to the customer record; the remaining fields
    are what gets rendered, so they are part of the content hash.
    """

    id: str = ""
    name: str = ""
    number: str | None = None
    email: str | None = None
    contact_name: str | None = None
    street: str | None = None
    zip: str | None = None
    city: str | None = None
    country_code: str | None = None


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

class LinkedExpense(BaseModel):
    """Expense to book once the invoice is sent (e.g. purchased material)."""

    name: str
    price_cents: int = 0
    category_id: str | None = None
    enabled: bool = True
    expense_id: str | None = None


class InvoiceItem(BaseModel):
    """A line on the invoice.  ``quantity`` may be fractional (hours)."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    description: str | None = None
    quantity: float = 1
    price_cents: int = 0
    tax_percentage: float = 0
    product_id: str | None = None
    linked_expenses: list[LinkedExpense] = Field(default_factory=list)

    def total_cents(self) -> float:
        """Net amount; may be fractional for fractional quantities."""
        return self.quantity * self.price_cents

    def total_tax_cents(self) -> int:
        return round_half_up(self.quantity * self.price_cents * self.tax_percentage / 100)


# ---------------------------------------------------------------------------
# Activity / submissions
# ---------------------------------------------------------------------------

class InvoiceActivity(BaseModel):
    """One entry in the invoice's append-only activity log.

    ``attachment_id`` / ``attach_to_email`` are only meaningful for
    ``ATTACHMENT`` entries; ``ref`` links a ``SCHEDULED_SEND`` entry to its
    deferred job.
    """

    id: str = Field(default_factory=new_id)
    activity_at: datetime = Field(default_factory=utc_now)
    type: InvoiceActivityType
    user: str | None = None
    notes: str | None = None
    attachment_id: str | None = None
    attach_to_email: bool | None = None
    ref: str | None = None


class InvoiceSubmission(BaseModel):
    id: str = Field(default_factory=new_id)
    type: InvoiceSubmissionType = InvoiceSubmissionType.MANUAL
    submitted_at: datetime = Field(default_factory=utc_now)
    is_scheduled: bool = False
    is_cancelled: bool = False
    scheduled_send_job_id: str | None = None


# ---------------------------------------------------------------------------
# PDF / links
# ---------------------------------------------------------------------------

class PdfLocation(BaseModel):
    """Where a rendered PDF was stored."""

    bucket: str
    region: str
    key: str


class PdfInfo(BaseModel):
    """State of the rendered PDF for a given content hash."""

    requested_at: datetime
    for_content_hash: str
    generated_at: datetime | None = None
    bucket: str | None = None
    region: str | None = None
    key: str | None = None

    @property
    def location(self) -> PdfLocation | None:
        if self.bucket and self.key:
            return PdfLocation(bucket=self.bucket, region=self.region or "", key=self.key)
        return None


class InvoiceLinks(BaseModel):
    """Weak cross references between an offer and the invoice made from it."""

    offer_id: str | None = None
    invoice_id: str | None = None

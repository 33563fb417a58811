"""Invoice aggregate: state machine, content hash, payments and submissions.

States
------
``DRAFT -> SENT -> {CANCELLED | PAID_PARTIALLY -> PAID | PAID}``

``CANCELLED`` and ``PAID`` are terminal.  Payment states are only entered
through ``add_payment``; cancellation only through ``update_status``; the
Draft to Sent transition only through ``add_submission``.

Content hash
------------
``content_hash`` fingerprints every field that affects the rendered
document (customer, items, texts, dates, numbers, totals).  It is ``None``
until the first such mutation and recomputed on every one after that.  A
rendered PDF is tied to the hash it was rendered for, so a stale PDF is
detected by comparing hashes.

Outbox
------
Mutations record ``DomainEvent``s through ``add_event``; the persistence
adapter purges them into the event bus after a successful write.

All guarded methods raise ``InvoiceStateError`` on a violated
precondition.  These indicate a logic bug or a stale client and are never
retried.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import Field, field_validator

from billing_backoffice.core.enums import (
    InvoiceActivityType,
    InvoiceStatus,
    InvoiceSubmissionType,
    InvoiceType,
)
from billing_backoffice.core.errors import (
    InvariantViolation,
    InvoiceStateError,
    NotFoundError,
)
from billing_backoffice.core.ids import fingerprint, new_id, utc_now
from billing_backoffice.core.money import cents_to_price, round_half_up

from .activity import cancelled_activity_type, created_activity_type, sent_activity_type
from .aggregate import AggregateRoot
from .events import (
    INVOICE_CANCELLED,
    INVOICE_DATES_CHANGED,
    INVOICE_LATER,
    INVOICE_PAID,
    INVOICE_PAYMENT,
    INVOICE_PDF,
    INVOICE_PUBLISHED,
    INVOICE_SCHEDULED,
    INVOICE_SEND,
    DomainEvent,
    iso,
)
from .expense import CreateExpense, Expense, ExpenseDraft
from .jobs import DeferredJob
from .models import (
    CustomerSnapshot,
    InvoiceActivity,
    InvoiceItem,
    InvoiceLinks,
    InvoiceSubmission,
    PdfInfo,
    PdfLocation,
)
from .settings import InvoiceSettings

logger = logging.getLogger(__name__)

GetSettings = Callable[[], Awaitable[InvoiceSettings]]
DeleteJob = Callable[[str], Awaitable[object]]


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT}),
    InvoiceStatus.SENT: frozenset(
        {
            InvoiceStatus.CANCELLED,
            InvoiceStatus.PAID_PARTIALLY,
            InvoiceStatus.PAID,
        }
    ),
    InvoiceStatus.PAID_PARTIALLY: frozenset(
        {
            InvoiceStatus.PAID_PARTIALLY,  # further partial payments
            InvoiceStatus.PAID,
        }
    ),
    # Terminal states -- no further transitions allowed.
    InvoiceStatus.CANCELLED: frozenset(),
    InvoiceStatus.PAID: frozenset(),
}

_DATE_EDITABLE = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.SENT})

# Fields that change the rendered document.
_HASHED_FIELDS = frozenset({
    "customer",
    "items",
    "footer_text",
    "subject",
    "invoiced_at",
    "offered_at",
    "due_at",
    "offer_number",
    "invoice_number",
    "total_cents",
    "total_tax_cents",
})


class Invoice(AggregateRoot):
    """An invoice or offer together with its items, activity and submissions."""

    id: str
    type: InvoiceType = InvoiceType.INVOICE
    status: InvoiceStatus = InvoiceStatus.DRAFT
    customer: CustomerSnapshot = Field(default_factory=CustomerSnapshot)
    items: list[InvoiceItem] = Field(default_factory=list)
    total_cents: int = 0
    total_tax_cents: int = 0

    subject: str | None = None
    footer_text: str | None = None
    offer_number: str | None = None
    invoice_number: str | None = None

    offered_at: datetime | None = None
    invoiced_at: datetime | None = None
    due_at: datetime | None = None

    paid_cents: int | None = None
    paid_at: datetime | None = None
    paid_via: str | None = None

    activity: list[InvoiceActivity] = Field(default_factory=list)
    submissions: list[InvoiceSubmission] = Field(default_factory=list)
    content_hash: str | None = None
    pdf: PdfInfo | None = None
    links: InvoiceLinks | None = None
    processed_event_ids: list[str] = Field(default_factory=list)
    scheduled_send_job_id: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    @field_validator("total_cents", "total_tax_cents", mode="before")
    @classmethod
    def _finite_total(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0
        if not math.isfinite(value):
            return 0
        return round_half_up(value)

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def draft(
        cls,
        kind: InvoiceType,
        customer: CustomerSnapshot,
        user: str | None = None,
        invoice_id: str | None = None,
    ) -> "Invoice":
        """A fresh Draft with zero totals and a single "created" activity."""
        invoice = cls(id=invoice_id or new_id(), type=kind, customer=customer)
        invoice.activity.append(
            InvoiceActivity(type=created_activity_type(kind), user=user)
        )
        return invoice

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        self.updated_at = utc_now()

    def _emit(self, name: str, data: dict[str, Any]) -> None:
        self.add_event(DomainEvent(aggregate_id=self.id, name=name, data=data))

    def _snapshot(self) -> dict[str, Any]:
        """Dates and totals carried by every accounting-relevant event."""
        return {
            "offeredAt": iso(self.offered_at),
            "invoicedAt": iso(self.invoiced_at),
            "dueAt": iso(self.due_at),
            "totalCents": self.total_cents,
            "totalTax": self.total_tax_cents,
        }

    def _transition(self, target: InvoiceStatus, action: str) -> None:
        allowed = _VALID_TRANSITIONS[self.status]
        if target not in allowed:
            raise InvoiceStateError(
                f"Invoice {self.id} cannot {action}: "
                f"{self.status.value} -> {target.value} is not allowed"
            )
        self.status = target

    def update_content_hash(self) -> str:
        """Recompute and store the fingerprint of the renderable fields."""
        relevant = self.model_dump(mode="json", include=set(_HASHED_FIELDS))
        for item in relevant["items"]:
            # not rendered; booking an expense must not invalidate the PDF
            item.pop("linked_expenses", None)
        self.content_hash = fingerprint(relevant)
        return self.content_hash

    @property
    def is_terminal(self) -> bool:
        return not _VALID_TRANSITIONS[self.status]

    @property
    def document_number(self) -> str | None:
        if self.type == InvoiceType.INVOICE:
            return self.invoice_number
        return self.offer_number

    # ------------------------------------------------------------------
    # Content edits
    # ------------------------------------------------------------------

    def update_items(self, items: list[InvoiceItem]) -> None:
        """Replace the items and recompute totals.  Draft only."""
        if self.status != InvoiceStatus.DRAFT:
            raise InvoiceStateError(
                f"Invoice items cannot be changed in status {self.status.value}"
            )
        self.items = list(items)
        subtotal = round_half_up(sum(item.total_cents() for item in self.items))
        total_tax = sum(item.total_tax_cents() for item in self.items)
        self.total_tax_cents = total_tax
        self.total_cents = subtotal + total_tax
        self._touch()
        self.update_content_hash()

    def update_dates(
        self,
        *,
        offered_at: datetime | None = None,
        invoiced_at: datetime | None = None,
        due_at: datetime | None = None,
    ) -> None:
        """Apply the given dates.  Draft and Sent only.

        Once sent, accounting consumers are told through
        ``InvoiceDatesChanged``.
        """
        if self.status not in _DATE_EDITABLE:
            raise InvoiceStateError(
                f"Invoice dates cannot be changed in status {self.status.value}"
            )
        if offered_at is not None:
            self.offered_at = offered_at
        if invoiced_at is not None:
            self.invoiced_at = invoiced_at
        if due_at is not None:
            self.due_at = due_at
        self._touch()
        self.update_content_hash()

        if self.status == InvoiceStatus.SENT:
            self._emit(INVOICE_DATES_CHANGED, self._snapshot())

    def update_texts(
        self,
        *,
        subject: str | None = None,
        footer_text: str | None = None,
    ) -> None:
        if subject is not None:
            self.subject = subject
        if footer_text is not None:
            self.footer_text = footer_text
        self._touch()
        self.update_content_hash()

    def update_customer(self, customer: CustomerSnapshot) -> None:
        self.customer = customer
        self._touch()
        self.update_content_hash()

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    def request_pdf(self, requested_at: datetime | None = None) -> str:
        """Ask for a PDF of the current content.  Returns the content hash."""
        if not self.content_hash:
            raise InvoiceStateError("Invoice PDF cannot be requested - no content hash")

        self.pdf = PdfInfo(
            requested_at=requested_at or utc_now(),
            for_content_hash=self.content_hash,
        )
        self._emit(
            INVOICE_PDF,
            {"invoiceId": self.id, "forContentHash": self.content_hash},
        )
        return self.content_hash

    def update_pdf(self, location: PdfLocation) -> None:
        """Record where the PDF for the current content was stored."""
        if not self.content_hash:
            raise InvoiceStateError("Invoice PDF cannot be updated - no content hash")

        requested_at = self.pdf.requested_at if self.pdf else utc_now()
        self.pdf = PdfInfo(
            requested_at=requested_at,
            for_content_hash=self.content_hash,
            generated_at=utc_now(),
            bucket=location.bucket,
            region=location.region,
            key=location.key,
        )

    def has_pdf_for_current_content(self) -> bool:
        return (
            self.pdf is not None
            and self.content_hash is not None
            and self.pdf.for_content_hash == self.content_hash
        )

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def add_submission(
        self,
        submission: InvoiceSubmission,
        user_name: str,
        get_settings: GetSettings,
        scheduled_job: DeferredJob | None = None,
    ) -> InvoiceActivity:
        """Record a send of the document.

        With *scheduled_job* the send is only scheduled: the job receives an
        ``invoice.later`` payload and nothing else changes state.  Without
        it the send happens now; a Draft becomes Sent and receives its
        document number.

        Callers must hold the tenant's numbering lock when the invoice is
        still a Draft.
        """
        self.submissions.append(submission)

        if scheduled_job is not None:
            return self._schedule_submission(submission, user_name, scheduled_job)

        settings = await get_settings()
        just_sent = False
        if self.status == InvoiceStatus.DRAFT:
            self._transition(InvoiceStatus.SENT, "be sent")
            just_sent = True
            if self.type == InvoiceType.INVOICE:
                if not self.invoice_number:
                    self.invoice_number = await settings.invoice_numbers.get_next_number()
            elif not self.offer_number:
                self.offer_number = await settings.offer_numbers.get_next_number()

        now = utc_now()
        if self.type == InvoiceType.INVOICE:
            self.invoiced_at = self.invoiced_at or now
            self.due_at = self.due_at or self.invoiced_at + timedelta(
                days=settings.default_invoice_due_days
            )
        else:
            self.offered_at = self.offered_at or now
            self.due_at = self.due_at or self.offered_at + timedelta(
                days=settings.offer_validity_days
            )

        if just_sent:
            self.update_content_hash()
            self._emit(INVOICE_PUBLISHED, self._snapshot())

        if not self.content_hash:
            raise InvariantViolation(f"Invoice {self.id} content hash is missing")

        if submission.type == InvoiceSubmissionType.EMAIL:
            self._emit(
                INVOICE_SEND,
                {
                    "id": new_id(),
                    "invoiceId": self.id,
                    "submissionId": submission.id,
                    "forContentHash": self.content_hash,
                },
            )

        self._touch()
        activity = InvoiceActivity(
            type=sent_activity_type(self.type, submission.type),
            user=user_name,
        )
        self.activity.append(activity)
        return activity

    def _schedule_submission(
        self,
        submission: InvoiceSubmission,
        user_name: str,
        job: DeferredJob,
    ) -> InvoiceActivity:
        submission.is_scheduled = True
        submission.scheduled_send_job_id = job.id
        self.scheduled_send_job_id = job.id

        job.event_type = INVOICE_LATER
        job.event_payload = {
            "id": new_id(),
            "userName": user_name,
            "invoiceId": self.id,
            "submissionId": submission.id,
        }

        activity = InvoiceActivity(
            type=InvoiceActivityType.SCHEDULED_SEND,
            user=user_name,
            ref=job.id,
            notes=f"Scheduled for {job.run_after_datetime.isoformat()}",
        )
        self.activity.append(activity)
        self._emit(INVOICE_SCHEDULED, {"scheduledSendJobId": job.id})
        self._touch()
        return activity

    async def cancel_submission(self, delete_job: DeleteJob) -> None:
        """Cancel the pending scheduled send and delete its job."""
        job_id = self.scheduled_send_job_id
        if not job_id:
            raise InvoiceStateError(f"Invoice {self.id} has no scheduled send")

        for submission in self.submissions:
            if submission.scheduled_send_job_id == job_id:
                submission.is_cancelled = True
        for entry in self.activity:
            if entry.type == InvoiceActivityType.SCHEDULED_SEND and entry.ref == job_id:
                entry.type = InvoiceActivityType.CANCELLED_SCHEDULED_SEND

        await delete_job(job_id)
        self.scheduled_send_job_id = None
        self._touch()

    def take_scheduled_submission(self) -> InvoiceSubmission:
        """Remove and return the pending scheduled submission.

        Used when its job fires: the caller follows up with an immediate
        ``add_submission`` of the same channel.
        """
        job_id = self.scheduled_send_job_id
        if not job_id:
            raise InvoiceStateError(f"Invoice {self.id} has no scheduled send")

        original = next(
            (
                s for s in self.submissions
                if s.scheduled_send_job_id == job_id and s.is_scheduled
            ),
            None,
        )
        if original is None:
            raise InvoiceStateError(
                f"Scheduled submission for job {job_id} not found"
            )
        if original.is_cancelled:
            raise InvoiceStateError(
                f"Scheduled submission {original.id} is already cancelled"
            )

        self.submissions = [
            s for s in self.submissions if s.scheduled_send_job_id != job_id
        ]
        self.scheduled_send_job_id = None
        return original

    # ------------------------------------------------------------------
    # Payments / status
    # ------------------------------------------------------------------

    def add_payment(
        self,
        *,
        paid_cents: int,
        paid_at: datetime,
        paid_via: str,
        user: str | None = None,
    ) -> InvoiceActivity:
        """Accrue a (partial) payment.  Returns the last appended activity."""
        if paid_cents <= 0:
            raise InvoiceStateError(f"Payment must be positive, got {paid_cents}")

        total_paid = (self.paid_cents or 0) + paid_cents
        fully_paid = total_paid >= self.total_cents
        self._transition(
            InvoiceStatus.PAID if fully_paid else InvoiceStatus.PAID_PARTIALLY,
            "accept a payment",
        )
        self.paid_cents = total_paid
        self.paid_at = paid_at
        self.paid_via = paid_via
        self._touch()

        self.activity.append(
            InvoiceActivity(
                type=InvoiceActivityType.PAYMENT,
                user=user,
                activity_at=paid_at,
                notes=(
                    f"Paid {cents_to_price(paid_cents)} €/"
                    f"{cents_to_price(self.total_cents)} € via {paid_via}"
                ),
            )
        )
        self._emit(
            INVOICE_PAYMENT,
            {
                **self._snapshot(),
                "paidAt": iso(self.paid_at),
                "paidVia": self.paid_via,
                "paidCents": paid_cents,
                "totalPaidCents": self.paid_cents,
            },
        )

        if fully_paid:
            self.activity.append(
                InvoiceActivity(type=InvoiceActivityType.PAID, user=user)
            )
            self._emit(
                INVOICE_PAID,
                {**self._snapshot(), "totalPaidCents": self.paid_cents},
            )

        return self.activity[-1]

    def update_status(self, status: InvoiceStatus, user: str | None = None) -> InvoiceActivity:
        """Cancel a sent document.

        Cancellation is the only status change accepted here; sending and
        payments have dedicated methods.
        """
        if status != InvoiceStatus.CANCELLED:
            raise InvoiceStateError(
                "This status change needs to use the correct method"
            )
        if self.status != InvoiceStatus.SENT:
            raise InvoiceStateError(
                f"Invoice {self.id} cannot be cancelled in status {self.status.value}"
            )
        self._transition(InvoiceStatus.CANCELLED, "be cancelled")
        self._touch()

        activity = InvoiceActivity(type=cancelled_activity_type(self.type), user=user)
        self.activity.append(activity)
        if self.type == InvoiceType.INVOICE:
            self._emit(INVOICE_CANCELLED, self._snapshot())
        return activity

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def add_activity(self, activity: InvoiceActivity) -> None:
        self.activity.append(activity)
        self._touch()

    def set_attach_to_email(self, activity_id: str, attach: bool) -> InvoiceActivity:
        """Toggle whether an attachment entry is sent along with the email."""
        entry = next((a for a in self.activity if a.id == activity_id), None)
        if entry is None:
            raise NotFoundError(f"Activity {activity_id} not found on invoice {self.id}")
        if entry.type != InvoiceActivityType.ATTACHMENT:
            raise InvoiceStateError(
                f"Activity {activity_id} is not an attachment ({entry.type.value})"
            )
        entry.attach_to_email = attach
        self._touch()
        return entry

    def email_attachment_ids(self) -> list[str]:
        return [
            a.attachment_id
            for a in self.activity
            if a.type == InvoiceActivityType.ATTACHMENT and a.attach_to_email and a.attachment_id
        ]

    # ------------------------------------------------------------------
    # Inbound event idempotency
    # ------------------------------------------------------------------

    def has_processed_event(self, event_id: str) -> bool:
        return event_id in self.processed_event_ids

    def mark_event_as_processed(self, event_id: str) -> None:
        if not self.has_processed_event(event_id):
            self.processed_event_ids.append(event_id)
            self._touch()

    # ------------------------------------------------------------------
    # Linked expenses
    # ------------------------------------------------------------------

    async def create_and_link_expenses_for_invoice(
        self, create_expense: CreateExpense
    ) -> list[Expense]:
        """Book each enabled linked expense once and remember its id."""
        created: list[Expense] = []
        for item in self.items:
            for linked in item.linked_expenses:
                if not linked.enabled or linked.expense_id:
                    continue
                expense = await create_expense(
                    ExpenseDraft(
                        name=linked.name,
                        expended_cents=round_half_up(linked.price_cents * item.quantity),
                        expended_at=self.invoiced_at or utc_now(),
                        category_id=linked.category_id,
                        invoice_id=self.id,
                    )
                )
                linked.expense_id = expense.id
                created.append(expense)
        if created:
            self._touch()
        return created

    def unlink_expenses(self) -> list[str]:
        """Forget every linked expense id and return them for deletion."""
        ids: list[str] = []
        for item in self.items:
            for linked in item.linked_expenses:
                if linked.expense_id:
                    ids.append(linked.expense_id)
                    linked.expense_id = None
        if ids:
            self._touch()
        return ids

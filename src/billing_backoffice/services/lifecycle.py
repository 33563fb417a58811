"""Invoice lifecycle workflows.

Each public method is one user-facing command: load the aggregate, apply
one mutation, save (which purges the outbox), and return the resulting
activity where there is one.

Design invariants
-----------------
1.  **Serialized numbering.**  A send of a Draft consumes a document
    number, so it runs under the tenant's numbering lock.  The lock spans
    settings load, number consumption, and the invoice save.
2.  **Schedule lead time.**  A send requested for a time closer than
    ``schedule_min_lead_seconds`` goes out immediately.
3.  **One pending schedule.**  Rescheduling cancels the previous
    scheduled send (and deletes its job) before creating the new one.
4.  **Invoice first, jobs second.**  A scheduled send saves the invoice
    before persisting its job, and a superseded job is deleted only after
    the save; a failed write leaves the stored invoice pointing at a live
    job.
5.  **One save per send.**  Linked expenses are booked before the single
    save that publishes the send events; nothing writes the invoice
    again after its events are out.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from billing_backoffice.core.clock import IClock, WallClock
from billing_backoffice.core.enums import (
    InvoiceActivityType,
    InvoiceStatus,
    InvoiceSubmissionType,
    InvoiceType,
)
from billing_backoffice.core.errors import InvoiceNotFoundError, InvoiceStateError
from billing_backoffice.core.interfaces import (
    IDeferredJobStore,
    IExpenseStore,
    INumberingLock,
    ISettingsProvider,
)
from billing_backoffice.domain.invoice import Invoice
from billing_backoffice.domain.jobs import DeferredJob
from billing_backoffice.domain.models import (
    CustomerSnapshot,
    InvoiceActivity,
    InvoiceItem,
    InvoiceSubmission,
    PdfLocation,
)
from billing_backoffice.observability.metrics import record_number_issued
from billing_backoffice.storage.repository import InvoiceRepository

logger = logging.getLogger(__name__)


class InvoiceLifecycleService:
    """User-facing invoice commands.

    Parameters
    ----------
    repository:
        Invoice repository; its ``save`` purges the outbox.
    jobs:
        Deferred job store used for scheduled sends.
    settings:
        Provider of the tenant's ``InvoiceSettings``.
    numbering_lock:
        Mutual exclusion around document-number assignment.
    expenses:
        Store for expenses booked from linked item expenses.
    clock:
        Time source; defaults to ``WallClock``.
    schedule_min_lead_seconds:
        Sends scheduled closer than this go out immediately.
    pdf_request_debounce_seconds:
        A pending PDF request younger than this is not repeated.
    tenant_key:
        Numbering lock key.
    """

    def __init__(
        self,
        repository: InvoiceRepository,
        jobs: IDeferredJobStore,
        settings: ISettingsProvider,
        numbering_lock: INumberingLock,
        expenses: IExpenseStore,
        clock: IClock | None = None,
        *,
        schedule_min_lead_seconds: int = 300,
        pdf_request_debounce_seconds: int = 60,
        tenant_key: str = "default",
    ) -> None:
        self._repository = repository
        self._jobs = jobs
        self._settings = settings
        self._lock = numbering_lock
        self._expenses = expenses
        self._clock = clock or WallClock()
        self._schedule_lead = timedelta(seconds=schedule_min_lead_seconds)
        self._pdf_debounce = timedelta(seconds=pdf_request_debounce_seconds)
        self._tenant_key = tenant_key

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, invoice_id: str) -> Invoice:
        invoice = await self._repository.get_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    async def _link_expenses(self, invoice: Invoice) -> None:
        created = await invoice.create_and_link_expenses_for_invoice(self._expenses.create)
        if created:
            logger.info("Booked %d expense(s) for invoice %s", len(created), invoice.id)

    async def _cancel_schedule(self, invoice: Invoice) -> list[str]:
        """Cancel the pending schedule; return job ids to delete after saving."""
        stale: list[str] = []
        if invoice.scheduled_send_job_id:

            async def _defer(job_id: str) -> None:
                stale.append(job_id)

            await invoice.cancel_submission(_defer)
        return stale

    async def _delete_jobs(self, job_ids: list[str]) -> None:
        for job_id in job_ids:
            await self._jobs.delete(job_id)

    # ------------------------------------------------------------------
    # Creation / deletion
    # ------------------------------------------------------------------

    async def create(
        self,
        kind: InvoiceType,
        customer: CustomerSnapshot,
        user: str | None = None,
    ) -> Invoice:
        invoice = await self._repository.create(kind, customer, user)
        logger.info("Created %s draft %s", kind.value, invoice.id)
        return invoice

    async def delete_draft(self, invoice_id: str) -> Invoice:
        """Delete a Draft.  Anything already sent must be cancelled instead."""
        invoice = await self._load(invoice_id)
        if invoice.status != InvoiceStatus.DRAFT:
            raise InvoiceStateError(
                f"Invoice {invoice_id} is {invoice.status.value}; only drafts can be deleted"
            )
        if invoice.scheduled_send_job_id:
            await self._jobs.delete(invoice.scheduled_send_job_id)
        await self._repository.delete(invoice_id)
        logger.info("Deleted draft %s", invoice_id)
        return invoice

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        invoice_id: str,
        submission_type: InvoiceSubmissionType,
        user: str,
        when: datetime | None = None,
    ) -> InvoiceActivity:
        """Send now, or schedule the send when *when* is far enough ahead."""
        now = self._clock.now()
        if when is not None and when > now + self._schedule_lead:
            return await self._schedule(invoice_id, submission_type, user, when)
        return await self._send_now(invoice_id, submission_type, user)

    async def _schedule(
        self,
        invoice_id: str,
        submission_type: InvoiceSubmissionType,
        user: str,
        when: datetime,
    ) -> InvoiceActivity:
        invoice = await self._load(invoice_id)
        stale = await self._cancel_schedule(invoice)

        job = DeferredJob.at(when)
        activity = await invoice.add_submission(
            InvoiceSubmission(type=submission_type, submitted_at=self._clock.now()),
            user,
            self._settings.get_settings,
            scheduled_job=job,
        )
        await self._link_expenses(invoice)
        await self._repository.save(invoice)
        await self._delete_jobs(stale)
        await self._jobs.create(job)
        logger.info("Scheduled send of %s for %s (job %s)", invoice_id, when.isoformat(), job.id)
        return activity

    async def _send_now(
        self,
        invoice_id: str,
        submission_type: InvoiceSubmissionType,
        user: str,
    ) -> InvoiceActivity:
        async with self._lock.hold(self._tenant_key):
            invoice = await self._load(invoice_id)
            # sending now supersedes the pending schedule
            stale = await self._cancel_schedule(invoice)
            was_draft = invoice.status == InvoiceStatus.DRAFT
            activity = await invoice.add_submission(
                InvoiceSubmission(type=submission_type, submitted_at=self._clock.now()),
                user,
                self._settings.get_settings,
            )
            await self._link_expenses(invoice)
            await self._repository.save(invoice)

        await self._delete_jobs(stale)
        if was_draft:
            record_number_issued(invoice.type.value)
            logger.info(
                "Sent %s %s as %s",
                invoice.type.value,
                invoice.id,
                invoice.document_number,
            )
        return activity

    async def cancel_scheduled_send(self, invoice_id: str) -> Invoice:
        invoice = await self._load(invoice_id)
        if not invoice.scheduled_send_job_id:
            raise InvoiceStateError(f"Invoice {invoice_id} has no scheduled send")
        stale = await self._cancel_schedule(invoice)
        await self._repository.save(invoice)
        await self._delete_jobs(stale)
        logger.info("Cancelled scheduled send of %s", invoice_id)
        return invoice

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    async def request_pdf(self, invoice_id: str) -> PdfLocation | None:
        """Return the PDF location for the current content, or request one.

        ``None`` means a render is pending; poll again later.
        """
        invoice = await self._load(invoice_id)

        if invoice.has_pdf_for_current_content():
            location = invoice.pdf.location
            if location is not None:
                logger.debug("PDF for %s already rendered", invoice_id)
                return location
            if invoice.pdf.requested_at > self._clock.now() - self._pdf_debounce:
                logger.debug("PDF for %s already requested", invoice_id)
                return None

        invoice.request_pdf(self._clock.now())
        await self._repository.save(invoice)
        logger.info("Requested PDF for %s", invoice_id)
        return None

    # ------------------------------------------------------------------
    # Payments / cancellation
    # ------------------------------------------------------------------

    async def add_payment(
        self,
        invoice_id: str,
        paid_cents: int,
        paid_via: str,
        user: str | None = None,
        paid_at: datetime | None = None,
    ) -> InvoiceActivity:
        invoice = await self._load(invoice_id)
        activity = invoice.add_payment(
            paid_cents=paid_cents,
            paid_at=paid_at or self._clock.now(),
            paid_via=paid_via,
            user=user,
        )
        await self._repository.save(invoice)
        logger.info(
            "Payment of %d on %s (%s)", paid_cents, invoice_id, invoice.status.value
        )
        return activity

    async def cancel_unpaid(
        self,
        invoice_id: str,
        user: str | None = None,
        delete_expenses: bool = False,
    ) -> InvoiceActivity:
        invoice = await self._load(invoice_id)
        activity = invoice.update_status(InvoiceStatus.CANCELLED, user)
        removed: list[str] = []
        if delete_expenses:
            removed = invoice.unlink_expenses()
        await self._repository.save(invoice)
        for expense_id in removed:
            await self._expenses.delete(expense_id)
        logger.info("Cancelled %s (%d expense(s) deleted)", invoice_id, len(removed))
        return activity

    # ------------------------------------------------------------------
    # Content edits
    # ------------------------------------------------------------------

    async def update_items(self, invoice_id: str, items: list[InvoiceItem]) -> Invoice:
        invoice = await self._load(invoice_id)
        invoice.update_items(items)
        return await self._repository.save(invoice)

    async def update_dates(
        self,
        invoice_id: str,
        *,
        offered_at: datetime | None = None,
        invoiced_at: datetime | None = None,
        due_at: datetime | None = None,
    ) -> Invoice:
        invoice = await self._load(invoice_id)
        invoice.update_dates(offered_at=offered_at, invoiced_at=invoiced_at, due_at=due_at)
        return await self._repository.save(invoice)

    async def update_texts(
        self,
        invoice_id: str,
        *,
        subject: str | None = None,
        footer_text: str | None = None,
    ) -> Invoice:
        invoice = await self._load(invoice_id)
        invoice.update_texts(subject=subject, footer_text=footer_text)
        return await self._repository.save(invoice)

    async def update_customer(self, invoice_id: str, customer: CustomerSnapshot) -> Invoice:
        invoice = await self._load(invoice_id)
        invoice.update_customer(customer)
        return await self._repository.save(invoice)

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def add_note(self, invoice_id: str, notes: str, user: str | None = None) -> InvoiceActivity:
        invoice = await self._load(invoice_id)
        activity = InvoiceActivity(type=InvoiceActivityType.NOTE, user=user, notes=notes)
        invoice.add_activity(activity)
        await self._repository.save(invoice)
        return activity

    async def add_attachment(
        self,
        invoice_id: str,
        attachment_id: str,
        user: str | None = None,
        attach_to_email: bool = False,
    ) -> InvoiceActivity:
        invoice = await self._load(invoice_id)
        activity = InvoiceActivity(
            type=InvoiceActivityType.ATTACHMENT,
            user=user,
            attachment_id=attachment_id,
            attach_to_email=attach_to_email,
        )
        invoice.add_activity(activity)
        await self._repository.save(invoice)
        return activity

    async def set_attach_to_email(
        self, invoice_id: str, activity_id: str, attach: bool
    ) -> InvoiceActivity:
        invoice = await self._load(invoice_id)
        activity = invoice.set_attach_to_email(activity_id, attach)
        await self._repository.save(invoice)
        return activity

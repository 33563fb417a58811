"""Handlers for events consumed from the bus.

Each handler validates the message payload against its registered schema
(:mod:`billing_backoffice.bus.schemas`), loads a fresh aggregate, mutates
it, and saves it.  Exceptions propagate to the bus, which counts and
dead-letters them; a handler never retries on its own.

Idempotency
-----------
Handlers whose side effects must not repeat (email, scheduled send,
delivery notifications) record the inbound event id on the invoice with
``mark_event_as_processed`` and skip ids they have already seen.  The
email handler persists that mark **before** calling the mailer, so a
crash between the two loses at most one email rather than sending two.
"""

from __future__ import annotations

import logging

from billing_backoffice.bus.schemas import (
    EMAIL_DELIVERY_STATUS,
    BusMessage,
    EmailDeliveryStatus,
    InvoicePdfRequested,
    InvoiceSendLater,
    InvoiceSendRequested,
    parse_payload,
)
from billing_backoffice.core.enums import InvoiceActivityType, InvoiceStatus
from billing_backoffice.core.errors import InvoiceNotFoundError, InvoiceStateError
from billing_backoffice.core.interfaces import (
    IEventBus,
    IExpenseStore,
    IInvoiceMailer,
    INumberingLock,
    IPdfRenderer,
    ISettingsProvider,
)
from billing_backoffice.domain.events import INVOICE_LATER, INVOICE_PDF, INVOICE_SEND
from billing_backoffice.domain.invoice import Invoice
from billing_backoffice.domain.models import InvoiceActivity, InvoiceSubmission
from billing_backoffice.observability.logger import set_trace_id
from billing_backoffice.observability.metrics import record_number_issued
from billing_backoffice.storage.repository import InvoiceRepository

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "billing"


async def _load(repository: InvoiceRepository, invoice_id: str) -> Invoice:
    invoice = await repository.get_by_id(invoice_id)
    if invoice is None:
        raise InvoiceNotFoundError(invoice_id)
    return invoice


def _redact(email: str) -> str:
    return f"<redacted>@{email.rsplit('@', 1)[-1]}"


# ---------------------------------------------------------------------------
# invoice.later
# ---------------------------------------------------------------------------

class SendLaterHandler:
    """Performs a scheduled send once its deferred job fires."""

    def __init__(
        self,
        repository: InvoiceRepository,
        settings: ISettingsProvider,
        numbering_lock: INumberingLock,
        expenses: IExpenseStore,
        tenant_key: str = "default",
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._lock = numbering_lock
        self._expenses = expenses
        self._tenant_key = tenant_key

    async def handle(self, message: BusMessage) -> None:
        payload: InvoiceSendLater = parse_payload(message)  # type: ignore[assignment]
        set_trace_id(payload.id)

        async with self._lock.hold(self._tenant_key):
            invoice = await _load(self._repository, payload.invoice_id)
            if invoice.has_processed_event(payload.id):
                logger.info("Scheduled send %s already done, skipping", payload.id)
                return

            original = invoice.take_scheduled_submission()
            was_draft = invoice.status == InvoiceStatus.DRAFT
            invoice.mark_event_as_processed(payload.id)
            await invoice.add_submission(
                InvoiceSubmission(id=original.id, type=original.type),
                payload.user_name,
                self._settings.get_settings,
            )
            await invoice.create_and_link_expenses_for_invoice(self._expenses.create)
            await self._repository.save(invoice)

        if was_draft:
            record_number_issued(invoice.type.value)
        logger.info("Scheduled send of %s performed", invoice.id)


# ---------------------------------------------------------------------------
# invoice.send
# ---------------------------------------------------------------------------

class SendEmailHandler:
    """Emails the invoice for an ``invoice.send`` event.

    When a renderer is given, a PDF for the current content is produced
    first if none exists yet.
    """

    def __init__(
        self,
        repository: InvoiceRepository,
        mailer: IInvoiceMailer,
        renderer: IPdfRenderer | None = None,
    ) -> None:
        self._repository = repository
        self._mailer = mailer
        self._renderer = renderer

    async def handle(self, message: BusMessage) -> None:
        payload: InvoiceSendRequested = parse_payload(message)  # type: ignore[assignment]
        set_trace_id(payload.id)

        invoice = await _load(self._repository, payload.invoice_id)
        if not invoice.customer.email:
            raise InvoiceStateError(f"Invoice {invoice.id} customer has no email address")
        if invoice.content_hash != payload.for_content_hash:
            raise InvoiceStateError(
                f"Invoice {invoice.id} has changed since send was requested"
            )
        if invoice.has_processed_event(payload.id):
            logger.info("Email %s for %s already sent, skipping", payload.id, invoice.id)
            return

        if self._renderer is not None and not invoice.has_pdf_for_current_content():
            invoice.update_pdf(await self._renderer.render(invoice))

        invoice.mark_event_as_processed(payload.id)
        await self._repository.save(invoice)

        message_id = await self._mailer.send_invoice(
            invoice, payload.submission_id, invoice.email_attachment_ids()
        )
        logger.info(
            "Email for %s sent to %s (message %s)",
            invoice.id,
            _redact(invoice.customer.email),
            message_id,
        )

        invoice.add_activity(
            InvoiceActivity(type=InvoiceActivityType.EMAIL_SENT, ref=message_id)
        )
        await self._repository.save(invoice)


# ---------------------------------------------------------------------------
# invoice.pdf
# ---------------------------------------------------------------------------

class PdfRequestHandler:
    """Renders the PDF requested for a specific content hash."""

    def __init__(self, repository: InvoiceRepository, renderer: IPdfRenderer) -> None:
        self._repository = repository
        self._renderer = renderer

    async def handle(self, message: BusMessage) -> None:
        payload: InvoicePdfRequested = parse_payload(message)  # type: ignore[assignment]

        invoice = await _load(self._repository, payload.invoice_id)
        if invoice.content_hash != payload.for_content_hash:
            logger.info(
                "Invoice %s changed since PDF was requested (%s != %s); not rendering",
                invoice.id,
                invoice.content_hash,
                payload.for_content_hash,
            )
            return

        location = await self._renderer.render(invoice)
        invoice.update_pdf(location)
        await self._repository.save(invoice)
        logger.info("PDF for %s stored at %s/%s", invoice.id, location.bucket, location.key)


# ---------------------------------------------------------------------------
# email.delivery
# ---------------------------------------------------------------------------

class DeliveryStatusHandler:
    """Records mail-provider delivery notifications in the activity log."""

    def __init__(self, repository: InvoiceRepository) -> None:
        self._repository = repository

    async def handle(self, message: BusMessage) -> None:
        payload: EmailDeliveryStatus = parse_payload(message)  # type: ignore[assignment]

        invoice = await self._repository.get_by_id(payload.invoice_id)
        if invoice is None:
            logger.warning("Delivery status for unknown invoice %s", payload.invoice_id)
            return
        if invoice.has_processed_event(payload.id):
            return

        invoice.mark_event_as_processed(payload.id)
        invoice.add_activity(
            InvoiceActivity(
                type=(
                    InvoiceActivityType.EMAIL_SENT
                    if payload.delivered
                    else InvoiceActivityType.EMAIL_BOUNCED
                ),
                notes=payload.detail,
            )
        )
        await self._repository.save(invoice)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

async def register_handlers(
    bus: IEventBus,
    repository: InvoiceRepository,
    settings: ISettingsProvider,
    numbering_lock: INumberingLock,
    expenses: IExpenseStore,
    *,
    mailer: IInvoiceMailer | None = None,
    renderer: IPdfRenderer | None = None,
    tenant_key: str = "default",
    group: str = CONSUMER_GROUP,
) -> list[str]:
    """Subscribe every handler whose collaborators are available.

    Returns the event names subscribed.
    """
    subscriptions = [
        (
            INVOICE_LATER,
            SendLaterHandler(repository, settings, numbering_lock, expenses, tenant_key),
        ),
        (EMAIL_DELIVERY_STATUS, DeliveryStatusHandler(repository)),
    ]
    if mailer is not None:
        subscriptions.append((INVOICE_SEND, SendEmailHandler(repository, mailer, renderer)))
    if renderer is not None:
        subscriptions.append((INVOICE_PDF, PdfRequestHandler(repository, renderer)))

    for name, handler in subscriptions:
        await bus.subscribe(name, group, handler.handle)
        logger.info("Subscribed %s to %s", type(handler).__name__, name)
    return [name for name, _ in subscriptions]

"""Payment accrual on sent invoices."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from billing_backoffice.core.enums import InvoiceActivityType, InvoiceStatus, InvoiceSubmissionType
from billing_backoffice.core.errors import InvoiceStateError
from billing_backoffice.domain.events import INVOICE_PAID, INVOICE_PAYMENT
from billing_backoffice.domain.models import InvoiceSubmission

PAID_AT = datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc)


async def _discard(event) -> None:
    return None


@pytest.fixture
async def sent(draft, invoice_settings):
    async def get():
        return invoice_settings

    await draft.add_submission(InvoiceSubmission(type=InvoiceSubmissionType.MANUAL), "alice", get)
    await draft.purge_events(_discard)
    return draft


class TestPartialPayments:
    @pytest.mark.asyncio
    async def test_partial_payment(self, sent):
        activity = sent.add_payment(paid_cents=1234, paid_at=PAID_AT, paid_via="bank", user="bob")

        assert sent.status == InvoiceStatus.PAID_PARTIALLY
        assert activity.type == InvoiceActivityType.PAYMENT
        assert activity.notes == "Paid 12.34 €/56.00 € via bank"
        assert activity.activity_at == PAID_AT
        assert sent.paid_cents == 1234

        [event] = sent.pending_events
        assert event.name == INVOICE_PAYMENT
        assert event.data["paidCents"] == 1234
        assert event.data["totalPaidCents"] == 1234
        assert event.data["paidAt"] == PAID_AT.isoformat()
        assert event.data["paidVia"] == "bank"

    @pytest.mark.asyncio
    async def test_payments_accrue_to_paid(self, sent):
        sent.add_payment(paid_cents=1000, paid_at=PAID_AT, paid_via="bank")
        sent.add_payment(paid_cents=2000, paid_at=PAID_AT, paid_via="cash")
        assert sent.status == InvoiceStatus.PAID_PARTIALLY

        last = sent.add_payment(paid_cents=2600, paid_at=PAID_AT, paid_via="bank")
        assert sent.status == InvoiceStatus.PAID
        assert sent.paid_cents == 5600
        assert sent.paid_via == "bank"
        assert last.type == InvoiceActivityType.PAID
        assert [e.name for e in sent.pending_events][-2:] == [INVOICE_PAYMENT, INVOICE_PAID]
        assert sent.pending_events[-1].data["totalPaidCents"] == 5600

    @pytest.mark.asyncio
    async def test_overpayment_counts_as_paid(self, sent):
        sent.add_payment(paid_cents=9999, paid_at=PAID_AT, paid_via="bank")
        assert sent.status == InvoiceStatus.PAID
        assert sent.paid_cents == 9999


class TestPaymentGuards:
    def test_draft_cannot_be_paid(self, draft):
        with pytest.raises(InvoiceStateError):
            draft.add_payment(paid_cents=100, paid_at=PAID_AT, paid_via="bank")
        assert draft.paid_cents is None

    @pytest.mark.asyncio
    async def test_paid_is_terminal(self, sent):
        sent.add_payment(paid_cents=5600, paid_at=PAID_AT, paid_via="bank")
        with pytest.raises(InvoiceStateError):
            sent.add_payment(paid_cents=1, paid_at=PAID_AT, paid_via="bank")
        assert sent.paid_cents == 5600

    @pytest.mark.parametrize("amount", [0, -100])
    @pytest.mark.asyncio
    async def test_non_positive_amount(self, sent, amount):
        with pytest.raises(InvoiceStateError, match="must be positive"):
            sent.add_payment(paid_cents=amount, paid_at=PAID_AT, paid_via="bank")
        assert sent.status == InvoiceStatus.SENT

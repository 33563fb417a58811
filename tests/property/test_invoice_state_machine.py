"""Property test: Invoice status machine invariants.

Uses hypothesis to generate random sequences of sends, payments and
cancellations and verifies the invoice never enters an invalid state and
terminal states stay terminal.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from hypothesis import given, settings, strategies as st

from billing_backoffice.core.enums import InvoiceStatus, InvoiceSubmissionType, InvoiceType
from billing_backoffice.core.errors import InvoiceStateError
from billing_backoffice.domain.invoice import Invoice, _VALID_TRANSITIONS
from billing_backoffice.domain.models import CustomerSnapshot, InvoiceItem, InvoiceSubmission
from billing_backoffice.domain.settings import InvoiceSettings, NumberSequence

TERMINAL_STATUSES = {InvoiceStatus.CANCELLED, InvoiceStatus.PAID}
TOTAL = 10_000
PAID_AT = datetime(2024, 6, 1, tzinfo=timezone.utc)

OPERATIONS = st.one_of(
    st.tuples(st.just("send"), st.sampled_from(list(InvoiceSubmissionType))),
    st.tuples(st.just("pay"), st.integers(min_value=1, max_value=TOTAL)),
    st.tuples(st.just("cancel"), st.none()),
)


def _make_invoice() -> Invoice:
    invoice = Invoice.draft(InvoiceType.INVOICE, CustomerSnapshot(id="c", name="Acme"))
    invoice.update_items([InvoiceItem(name="Work", price_cents=TOTAL)])
    return invoice


def _settings() -> InvoiceSettings:
    return InvoiceSettings(invoice_numbers=NumberSequence(template="[INV]-####"))


def _send(invoice: Invoice, settings: InvoiceSettings, channel: InvoiceSubmissionType) -> None:
    async def get():
        return settings

    asyncio.run(invoice.add_submission(InvoiceSubmission(type=channel), "prop", get))


@settings(max_examples=200)
@given(operations=st.lists(OPERATIONS, min_size=1, max_size=12))
def test_random_operations_never_corrupt_state(operations):
    invoice = _make_invoice()
    numbers = _settings()
    status = InvoiceStatus.DRAFT
    paid = 0

    for op, arg in operations:
        before = invoice.status
        if op == "send":
            _send(invoice, numbers, arg)
            if status == InvoiceStatus.DRAFT:
                status = InvoiceStatus.SENT
        elif op == "pay":
            if status in (InvoiceStatus.SENT, InvoiceStatus.PAID_PARTIALLY):
                invoice.add_payment(paid_cents=arg, paid_at=PAID_AT, paid_via="bank")
                paid += arg
                status = InvoiceStatus.PAID if paid >= TOTAL else InvoiceStatus.PAID_PARTIALLY
            else:
                with pytest.raises(InvoiceStateError):
                    invoice.add_payment(paid_cents=arg, paid_at=PAID_AT, paid_via="bank")
        else:
            if status == InvoiceStatus.SENT:
                invoice.update_status(InvoiceStatus.CANCELLED)
                status = InvoiceStatus.CANCELLED
            else:
                with pytest.raises(InvoiceStateError):
                    invoice.update_status(InvoiceStatus.CANCELLED)

        assert invoice.status == status
        if before in TERMINAL_STATUSES:
            assert invoice.status == before

    # a number is issued exactly once, on leaving Draft
    if status == InvoiceStatus.DRAFT:
        assert invoice.invoice_number is None
    else:
        assert invoice.invoice_number == "INV-0001"
        assert invoice.content_hash is not None
    assert (invoice.paid_cents or 0) == paid
    assert invoice.is_terminal == (status in TERMINAL_STATUSES)


@given(n_invoices=st.integers(min_value=1, max_value=15))
def test_shared_settings_issue_distinct_numbers(n_invoices):
    numbers = _settings()
    issued = []
    for _ in range(n_invoices):
        invoice = _make_invoice()
        _send(invoice, numbers, InvoiceSubmissionType.MANUAL)
        issued.append(invoice.invoice_number)

    assert len(set(issued)) == n_invoices
    assert issued == sorted(issued)
    assert numbers.invoice_numbers.last_number == issued[-1]


def test_valid_transitions_map_is_consistent():
    for status in InvoiceStatus:
        assert status in _VALID_TRANSITIONS, f"{status} missing from transition map"

    for status in TERMINAL_STATUSES:
        assert len(_VALID_TRANSITIONS[status]) == 0

    for status in set(InvoiceStatus) - TERMINAL_STATUSES:
        assert len(_VALID_TRANSITIONS[status]) > 0

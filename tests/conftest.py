"""Shared fixtures for the billing back-office test suite."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from billing_backoffice.bus.memory_bus import MemoryEventBus
from billing_backoffice.core.clock import FixedClock
from billing_backoffice.core.enums import InvoiceType
from billing_backoffice.domain.invoice import Invoice
from billing_backoffice.domain.models import CustomerSnapshot, InvoiceItem
from billing_backoffice.domain.settings import InvoiceSettings, NumberSequence
from billing_backoffice.services.lifecycle import InvoiceLifecycleService
from billing_backoffice.storage.memory import (
    AsyncioNumberingLock,
    InMemoryDeferredJobStore,
    InMemoryExpenseStore,
    InMemoryInvoiceRepository,
    InMemorySettingsProvider,
)

# ---------------------------------------------------------------------------
# Domain
# ---------------------------------------------------------------------------

@pytest.fixture
def customer() -> CustomerSnapshot:
    return CustomerSnapshot(
        id="cust-1",
        name="Acme GmbH",
        number="K-1000",
        email="billing@acme.example",
        street="Hauptstr. 1",
        zip="10115",
        city="Berlin",
        country_code="DE",
    )


@pytest.fixture
def two_items() -> list[InvoiceItem]:
    """Tax 200 + 400, net 1000 + 4000."""
    return [
        InvoiceItem(name="Consulting", quantity=1, price_cents=1000, tax_percentage=20),
        InvoiceItem(name="Material", quantity=2, price_cents=2000, tax_percentage=10),
    ]


@pytest.fixture
def invoice_settings() -> InvoiceSettings:
    return InvoiceSettings(
        invoice_numbers=NumberSequence(template="[INV]-###", increment_template="[INV]-###"),
        offer_numbers=NumberSequence(template="[OF]-###", increment_template="[OF]-###"),
    )


@pytest.fixture
def draft(customer, two_items) -> Invoice:
    invoice = Invoice.draft(InvoiceType.INVOICE, customer, user="alice")
    invoice.update_items(two_items)
    return invoice


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def bus() -> MemoryEventBus:
    return MemoryEventBus()


@pytest.fixture
def repository(bus) -> InMemoryInvoiceRepository:
    return InMemoryInvoiceRepository(bus)


@pytest.fixture
def job_store() -> InMemoryDeferredJobStore:
    return InMemoryDeferredJobStore()


@pytest.fixture
def settings_provider(invoice_settings) -> InMemorySettingsProvider:
    return InMemorySettingsProvider(invoice_settings)


@pytest.fixture
def expense_store() -> InMemoryExpenseStore:
    return InMemoryExpenseStore()


@pytest.fixture
def numbering_lock() -> AsyncioNumberingLock:
    return AsyncioNumberingLock(timeout_seconds=1.0)


@pytest.fixture
def lifecycle(
    repository, job_store, settings_provider, numbering_lock, expense_store, clock
) -> InvoiceLifecycleService:
    return InvoiceLifecycleService(
        repository,
        job_store,
        settings_provider,
        numbering_lock,
        expense_store,
        clock,
    )

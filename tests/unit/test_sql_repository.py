"""SQL storage backends against a throwaway SQLite database."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from billing_backoffice.core.enums import InvoiceStatus, InvoiceSubmissionType
from billing_backoffice.core.errors import ConcurrencyError, SettingsNotConfiguredError
from billing_backoffice.domain.expense import ExpenseDraft
from billing_backoffice.domain.jobs import DeferredJob
from billing_backoffice.domain.models import InvoiceSubmission, PdfLocation
from billing_backoffice.domain.settings import InvoiceSettings, NumberSequence
from billing_backoffice.storage.postgres.connection import (
    create_all,
    create_engine,
    make_session_factory,
)
from billing_backoffice.storage.postgres.repos import (
    SqlDeferredJobStore,
    SqlExpenseStore,
    SqlInvoiceRepository,
    SqlSettingsProvider,
)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", use_null_pool=True)
    await create_all(engine)
    yield make_session_factory(engine)
    await engine.dispose()


def _getter(settings):
    async def _get():
        return settings

    return _get


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class TestSqlInvoiceRepository:
    @pytest.mark.asyncio
    async def test_round_trip(self, session_factory, bus, draft, invoice_settings):
        repository = SqlInvoiceRepository(session_factory, bus)
        draft.request_pdf()
        draft.update_pdf(PdfLocation(bucket="pdfs", region="eu", key="a.pdf"))
        await draft.add_submission(
            InvoiceSubmission(type=InvoiceSubmissionType.EMAIL), "alice", _getter(invoice_settings)
        )
        await repository.save(draft)

        loaded = await repository.get_by_id(draft.id)
        assert loaded.version == 1
        assert loaded.status == InvoiceStatus.SENT
        assert loaded.invoice_number == "INV-001"
        assert loaded.total_cents == 5600
        assert loaded.items == draft.items
        assert loaded.submissions == draft.submissions
        assert loaded.pdf.location == PdfLocation(bucket="pdfs", region="eu", key="a.pdf")
        assert loaded.invoiced_at == draft.invoiced_at
        assert loaded.invoiced_at.tzinfo is not None
        assert [m.name for m in bus.get_history()] == ["invoice.pdf", "invoice.published", "invoice.send"]

    @pytest.mark.asyncio
    async def test_versioned_updates(self, session_factory, bus, draft):
        repository = SqlInvoiceRepository(session_factory, bus)
        await repository.save(draft)

        first = await repository.get_by_id(draft.id)
        stale = await repository.get_by_id(draft.id)
        first.update_texts(subject="first")
        await repository.save(first)
        assert first.version == 2

        stale.update_texts(subject="stale")
        with pytest.raises(ConcurrencyError) as info:
            await repository.save(stale)
        assert info.value.actual == 2
        assert (await repository.get_by_id(draft.id)).subject == "first"

    @pytest.mark.asyncio
    async def test_duplicate_insert(self, session_factory, bus, draft):
        repository = SqlInvoiceRepository(session_factory, bus)
        await repository.save(draft)
        with pytest.raises(ConcurrencyError):
            await repository.save(draft.model_copy(update={"version": 0}))

    @pytest.mark.asyncio
    async def test_delete(self, session_factory, bus, draft):
        repository = SqlInvoiceRepository(session_factory, bus)
        await repository.save(draft)
        await repository.delete(draft.id)
        assert await repository.get_by_id(draft.id) is None


# ---------------------------------------------------------------------------
# Jobs / settings / expenses
# ---------------------------------------------------------------------------

class TestSqlDeferredJobStore:
    @pytest.mark.asyncio
    async def test_list_due(self, session_factory):
        store = SqlDeferredJobStore(session_factory)
        await store.create(DeferredJob(id="b", run_after=200, event_type="invoice.later"))
        await store.create(DeferredJob(id="a", run_after=200, event_type="invoice.later"))
        await store.create(
            DeferredJob(id="future", run_after=10_000, event_type="invoice.later", event_payload={"k": "v"})
        )

        assert [j.id for j in await store.list_due(500)] == ["a", "b"]
        assert [j.id for j in await store.list_due(500, limit=1)] == ["a"]
        future = await store.get("future")
        assert future.event_payload == {"k": "v"}
        assert future.created_at.tzinfo is not None

        await store.delete("a")
        assert [j.id for j in await store.list_due(500)] == ["b"]


class TestSqlSettingsProvider:
    @pytest.mark.asyncio
    async def test_store_and_consume(self, session_factory):
        provider = SqlSettingsProvider(session_factory)
        with pytest.raises(SettingsNotConfiguredError):
            await provider.get_settings()

        await provider.store_settings(
            InvoiceSettings(invoice_numbers=NumberSequence(template="[INV]-###"))
        )
        settings = await provider.get_settings()
        assert await settings.invoice_numbers.get_next_number() == "INV-001"

        reloaded = await provider.get_settings()
        assert reloaded.invoice_numbers.last_number == "INV-001"


class TestSqlExpenseStore:
    @pytest.mark.asyncio
    async def test_crud(self, session_factory):
        store = SqlExpenseStore(session_factory)
        expense = await store.create(
            ExpenseDraft(
                name="Cable",
                expended_cents=300,
                expended_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
                invoice_id="inv-1",
            )
        )
        loaded = await store.get(expense.id)
        assert loaded.expended_cents == 300
        assert loaded.invoice_id == "inv-1"
        assert loaded.expended_at == datetime(2024, 6, 1, tzinfo=timezone.utc)

        await store.delete(expense.id)
        assert await store.get(expense.id) is None

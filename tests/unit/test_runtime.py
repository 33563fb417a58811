"""Backend wiring in build_runtime."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from billing_backoffice.bus.memory_bus import MemoryEventBus
from billing_backoffice.bus.redis_streams import RedisStreamsBus
from billing_backoffice.bus.schemas import EMAIL_DELIVERY_STATUS
from billing_backoffice.core.config import Settings
from billing_backoffice.core.enums import InvoiceStatus, InvoiceSubmissionType, InvoiceType
from billing_backoffice.core.errors import ConfigError
from billing_backoffice.domain.events import INVOICE_LATER, INVOICE_SEND
from billing_backoffice.domain.settings import InvoiceSettings, NumberSequence
from billing_backoffice.runtime import build_runtime
from billing_backoffice.storage.memory import (
    AsyncioNumberingLock,
    InMemoryDeferredJobStore,
    InMemoryInvoiceRepository,
)
from billing_backoffice.storage.postgres.repos import SqlDeferredJobStore, SqlInvoiceRepository
from billing_backoffice.storage.redis_state import RedisStateStore


class TestBuildRuntime:
    def test_memory_defaults(self, clock):
        runtime = build_runtime(Settings(), clock)

        assert isinstance(runtime.event_bus, MemoryEventBus)
        assert isinstance(runtime.repository, InMemoryInvoiceRepository)
        assert isinstance(runtime.jobs, InMemoryDeferredJobStore)
        assert isinstance(runtime.numbering_lock, AsyncioNumberingLock)
        assert runtime.engine is None
        assert runtime.redis_state is None

    def test_production_layout(self):
        runtime = build_runtime(
            Settings(
                storage={"backend": "postgres"},
                bus={"backend": "redis"},
                scheduler={"job_store": "redis"},
                numbering={"lock_backend": "redis"},
            )
        )
        assert isinstance(runtime.event_bus, RedisStreamsBus)
        assert isinstance(runtime.repository, SqlInvoiceRepository)
        assert isinstance(runtime.redis_state, RedisStateStore)
        assert runtime.jobs is runtime.redis_state
        assert runtime.numbering_lock is runtime.redis_state
        assert runtime.engine is not None

    def test_postgres_job_store(self):
        runtime = build_runtime(
            Settings(
                storage={"backend": "postgres"},
                scheduler={"job_store": "postgres"},
                numbering={"single_process": True},
            )
        )
        assert isinstance(runtime.jobs, SqlDeferredJobStore)
        assert runtime.redis_state is None

    def test_invalid_combination(self):
        with pytest.raises(ConfigError):
            build_runtime(Settings(scheduler={"job_store": "postgres"}))


class TestRuntimeLifecycle:
    @pytest.mark.asyncio
    async def test_memory_runtime_end_to_end(self, clock, customer, two_items):
        runtime = build_runtime(Settings(), clock)
        await runtime.invoice_settings.store_settings(
            InvoiceSettings(invoice_numbers=NumberSequence(template="[R]-YYYY-####"))
        )
        await runtime.start()
        try:
            invoice = await runtime.lifecycle.create(InvoiceType.INVOICE, customer)
            await runtime.lifecycle.update_items(invoice.id, two_items)
            await runtime.lifecycle.send(invoice.id, InvoiceSubmissionType.MANUAL, "alice")
            sent = await runtime.repository.get_by_id(invoice.id)
            assert sent.invoice_number.startswith("R-")
            assert sent.invoice_number.endswith("-0001")
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_start_subscribes_handlers_once(self, clock):
        mailer = AsyncMock()
        runtime = build_runtime(Settings(), clock, mailer=mailer)

        await runtime.start()
        await runtime.stop()
        await runtime.start()
        try:
            assert set(runtime.subscriptions) == {INVOICE_LATER, EMAIL_DELIVERY_STATUS, INVOICE_SEND}
            assert len(runtime.event_bus._handlers[INVOICE_LATER]) == 1
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_scheduled_send_performs_after_dispatch(self, clock, customer, two_items):
        runtime = build_runtime(Settings(), clock)
        await runtime.invoice_settings.store_settings(
            InvoiceSettings(invoice_numbers=NumberSequence(template="[R]-###"))
        )
        await runtime.start()
        try:
            invoice = await runtime.lifecycle.create(InvoiceType.INVOICE, customer)
            await runtime.lifecycle.update_items(invoice.id, two_items)
            await runtime.lifecycle.send(
                invoice.id,
                InvoiceSubmissionType.MANUAL,
                "alice",
                when=clock.now() + timedelta(hours=3),
            )
            clock.advance(3 * 3600)

            report = await runtime.dispatcher.dispatch_due()
            handled = await runtime.process_pending()

            assert len(report.dispatched) == 1
            assert handled >= 1
            sent = await runtime.repository.get_by_id(invoice.id)
            assert sent.status == InvoiceStatus.SENT
            assert sent.invoice_number == "R-001"
            assert sent.scheduled_send_job_id is None
        finally:
            await runtime.stop()

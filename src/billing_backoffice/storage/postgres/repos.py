"""SQL implementations of the storage protocols.

Every repository receives a session factory and opens one scoped
session per operation (see :func:`connection.session_scope`), so each
call is its own transaction.

Conversion helpers translate between domain models
(:mod:`billing_backoffice.domain`) and ORM records.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from billing_backoffice.core.errors import ConcurrencyError, SettingsNotConfiguredError
from billing_backoffice.core.interfaces import IEventBus
from billing_backoffice.domain.expense import Expense, ExpenseDraft
from billing_backoffice.domain.jobs import DeferredJob
from billing_backoffice.domain.settings import SETTINGS_ID, InvoiceSettings
from billing_backoffice.storage.repository import InvoiceRepository, as_utc

from .connection import SessionFactory, session_scope
from .models import DeferredJobRecord, ExpenseRecord, InvoiceRecord, SettingRecord

logger = logging.getLogger(__name__)

_INVOICE_COLUMNS = tuple(
    c.key for c in InvoiceRecord.__table__.columns if c.key != "version"
)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _job_to_record(job: DeferredJob) -> DeferredJobRecord:
    return DeferredJobRecord(
        id=job.id,
        run_after=job.run_after,
        event_type=job.event_type,
        event_payload=json.dumps(job.event_payload, default=str),
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


def _record_to_job(record: DeferredJobRecord) -> DeferredJob:
    return DeferredJob(
        id=record.id,
        run_after=record.run_after,
        event_type=record.event_type,
        event_payload=json.loads(record.event_payload or "{}"),
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


def _record_to_expense(record: ExpenseRecord) -> Expense:
    return Expense(
        id=record.id,
        name=record.name,
        expended_cents=record.expended_cents,
        expended_at=as_utc(record.expended_at),
        category_id=record.category_id,
        invoice_id=record.invoice_id,
        created_at=as_utc(record.created_at),
    )


# ---------------------------------------------------------------------------
# SqlInvoiceRepository
# ---------------------------------------------------------------------------

class SqlInvoiceRepository(InvoiceRepository):
    """Invoice rows guarded by a ``version`` column.

    Inserts happen when the caller's version is ``0``; every other save is
    an ``UPDATE ... WHERE version = :expected``.  A zero row count means
    someone else won the race.
    """

    def __init__(self, session_factory: SessionFactory, event_bus: IEventBus) -> None:
        super().__init__(event_bus)
        self._factory = session_factory

    async def _read(self, invoice_id: str) -> tuple[dict[str, Any], int] | None:
        async with session_scope(self._factory) as session:
            row = await session.get(InvoiceRecord, invoice_id)
            if row is None:
                return None
            return {key: getattr(row, key) for key in _INVOICE_COLUMNS}, row.version

    async def _write(self, record: dict[str, Any], expected_version: int) -> int:
        invoice_id = record["id"]
        new_version = expected_version + 1
        async with session_scope(self._factory) as session:
            if expected_version == 0:
                session.add(InvoiceRecord(**record, version=new_version))
                try:
                    await session.flush()
                except IntegrityError as exc:
                    raise ConcurrencyError(invoice_id, expected_version, None) from exc
                return new_version

            values = {k: v for k, v in record.items() if k != "id"}
            stmt = (
                update(InvoiceRecord)
                .where(
                    InvoiceRecord.id == invoice_id,
                    InvoiceRecord.version == expected_version,
                )
                .values(**values, version=new_version)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                actual = await session.scalar(
                    select(InvoiceRecord.version).where(InvoiceRecord.id == invoice_id)
                )
                raise ConcurrencyError(invoice_id, expected_version, actual)
        return new_version

    async def _remove(self, invoice_id: str) -> None:
        async with session_scope(self._factory) as session:
            await session.execute(delete(InvoiceRecord).where(InvoiceRecord.id == invoice_id))


# ---------------------------------------------------------------------------
# SqlDeferredJobStore
# ---------------------------------------------------------------------------

class SqlDeferredJobStore:
    """Deferred jobs in the ``deferred_jobs`` table, indexed by ``run_after``."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._factory = session_factory

    async def create(self, job: DeferredJob) -> DeferredJob:
        async with session_scope(self._factory) as session:
            await session.merge(_job_to_record(job))
        logger.debug("Stored deferred job %s due at %d", job.id, job.run_after)
        return job

    async def get(self, job_id: str) -> DeferredJob | None:
        async with session_scope(self._factory) as session:
            record = await session.get(DeferredJobRecord, job_id)
            return _record_to_job(record) if record is not None else None

    async def delete(self, job_id: str) -> None:
        async with session_scope(self._factory) as session:
            await session.execute(
                delete(DeferredJobRecord).where(DeferredJobRecord.id == job_id)
            )

    async def list_due(self, now_seconds: int, limit: int = 100) -> list[DeferredJob]:
        stmt = (
            select(DeferredJobRecord)
            .where(DeferredJobRecord.run_after <= now_seconds)
            .order_by(DeferredJobRecord.run_after.asc(), DeferredJobRecord.id.asc())
            .limit(limit)
        )
        async with session_scope(self._factory) as session:
            result = await session.execute(stmt)
            records: Sequence[DeferredJobRecord] = result.scalars().all()
            return [_record_to_job(r) for r in records]


# ---------------------------------------------------------------------------
# SqlSettingsProvider
# ---------------------------------------------------------------------------

class SqlSettingsProvider:
    """Stores the invoice settings document under ``SETTINGS_ID``."""

    def __init__(self, session_factory: SessionFactory, setting_id: str = SETTINGS_ID) -> None:
        self._factory = session_factory
        self._setting_id = setting_id

    async def get_settings(self) -> InvoiceSettings:
        async with session_scope(self._factory) as session:
            record = await session.get(SettingRecord, self._setting_id)
            if record is None:
                raise SettingsNotConfiguredError(
                    f"Settings {self._setting_id!r} are not configured"
                )
            data = json.loads(record.data)
        return InvoiceSettings.model_validate(data).bind(self._save)

    async def store_settings(self, settings: InvoiceSettings) -> None:
        await self._save(settings.serializable())

    async def _save(self, data: dict[str, Any]) -> None:
        async with session_scope(self._factory) as session:
            await session.merge(
                SettingRecord(setting_id=self._setting_id, data=json.dumps(data))
            )


# ---------------------------------------------------------------------------
# SqlExpenseStore
# ---------------------------------------------------------------------------

class SqlExpenseStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._factory = session_factory

    async def create(self, draft: ExpenseDraft) -> Expense:
        expense = Expense(**draft.model_dump())
        async with session_scope(self._factory) as session:
            session.add(ExpenseRecord(**expense.model_dump()))
        return expense

    async def get(self, expense_id: str) -> Expense | None:
        async with session_scope(self._factory) as session:
            record = await session.get(ExpenseRecord, expense_id)
            return _record_to_expense(record) if record is not None else None

    async def delete(self, expense_id: str) -> None:
        async with session_scope(self._factory) as session:
            await session.execute(delete(ExpenseRecord).where(ExpenseRecord.id == expense_id))

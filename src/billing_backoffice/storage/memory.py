"""In-process storage backends.

Used by tests and single-process deployments.  Every store keeps
serialized copies, never live objects, so callers always receive fresh
instances exactly as they would from Postgres or Redis.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from billing_backoffice.core.errors import (
    ConcurrencyError,
    LockTimeoutError,
    SettingsNotConfiguredError,
)
from billing_backoffice.core.interfaces import IEventBus
from billing_backoffice.domain.expense import Expense, ExpenseDraft
from billing_backoffice.domain.jobs import DeferredJob
from billing_backoffice.domain.settings import InvoiceSettings

from .repository import InvoiceRepository

logger = logging.getLogger(__name__)


class InMemoryInvoiceRepository(InvoiceRepository):
    """Dict-backed invoice repository with the same versioning rules as SQL."""

    def __init__(self, event_bus: IEventBus) -> None:
        super().__init__(event_bus)
        self._rows: dict[str, tuple[dict[str, Any], int]] = {}
        self._lock = asyncio.Lock()

    async def _read(self, invoice_id: str) -> tuple[dict[str, Any], int] | None:
        found = self._rows.get(invoice_id)
        if found is None:
            return None
        record, version = found
        return copy.deepcopy(record), version

    async def _write(self, record: dict[str, Any], expected_version: int) -> int:
        invoice_id = record["id"]
        async with self._lock:
            current = self._rows.get(invoice_id)
            actual = current[1] if current is not None else 0
            if actual != expected_version:
                raise ConcurrencyError(invoice_id, expected_version, actual)
            new_version = expected_version + 1
            self._rows[invoice_id] = (copy.deepcopy(record), new_version)
        return new_version

    async def _remove(self, invoice_id: str) -> None:
        self._rows.pop(invoice_id, None)

    def __len__(self) -> int:
        return len(self._rows)


class InMemoryDeferredJobStore:
    """Deferred jobs kept in a dict; ``list_due`` sorts by ``run_after``."""

    def __init__(self) -> None:
        self._jobs: dict[str, dict[str, Any]] = {}

    async def create(self, job: DeferredJob) -> DeferredJob:
        self._jobs[job.id] = job.model_dump(mode="json")
        logger.debug("Stored deferred job %s due at %d", job.id, job.run_after)
        return job

    async def get(self, job_id: str) -> DeferredJob | None:
        data = self._jobs.get(job_id)
        return DeferredJob.model_validate(data) if data is not None else None

    async def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    async def list_due(self, now_seconds: int, limit: int = 100) -> list[DeferredJob]:
        due = sorted(
            (d for d in self._jobs.values() if d["run_after"] <= now_seconds),
            key=lambda d: (d["run_after"], d["id"]),
        )
        return [DeferredJob.model_validate(d) for d in due[:limit]]

    def __len__(self) -> int:
        return len(self._jobs)


class InMemorySettingsProvider:
    """Holds one serialized settings document."""

    def __init__(self, initial: InvoiceSettings | None = None) -> None:
        self._data: dict[str, Any] | None = (
            initial.serializable() if initial is not None else None
        )

    async def get_settings(self) -> InvoiceSettings:
        if self._data is None:
            raise SettingsNotConfiguredError("Invoice settings are not configured")
        return InvoiceSettings.model_validate(copy.deepcopy(self._data)).bind(self._save)

    async def store_settings(self, settings: InvoiceSettings) -> None:
        await self._save(settings.serializable())

    async def _save(self, data: dict[str, Any]) -> None:
        self._data = copy.deepcopy(data)

    @property
    def raw(self) -> dict[str, Any] | None:
        return self._data


class InMemoryExpenseStore:
    def __init__(self) -> None:
        self._expenses: dict[str, Expense] = {}

    async def create(self, draft: ExpenseDraft) -> Expense:
        expense = Expense(**draft.model_dump())
        self._expenses[expense.id] = expense
        return expense.model_copy()

    async def get(self, expense_id: str) -> Expense | None:
        expense = self._expenses.get(expense_id)
        return expense.model_copy() if expense is not None else None

    async def delete(self, expense_id: str) -> None:
        self._expenses.pop(expense_id, None)

    def __len__(self) -> int:
        return len(self._expenses)


class AsyncioNumberingLock:
    """Per-key ``asyncio.Lock``; serializes numbering within one process only."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._timeout = timeout_seconds
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks[key]
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise LockTimeoutError(f"Numbering lock {key!r} not acquired") from exc
        try:
            yield
        finally:
            lock.release()

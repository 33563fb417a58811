"""Protocol interfaces for the billing back-office.

All module boundaries are defined here as Protocol classes.
Implementations can be swapped (memory / postgres / redis) without
changing callers.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Protocol, runtime_checkable

if TYPE_CHECKING:
    from billing_backoffice.bus.schemas import BusMessage
    from billing_backoffice.domain.expense import Expense, ExpenseDraft
    from billing_backoffice.domain.invoice import Invoice
    from billing_backoffice.domain.jobs import DeferredJob
    from billing_backoffice.domain.models import PdfLocation
    from billing_backoffice.domain.settings import InvoiceSettings

MessageHandler = Callable[["BusMessage"], Coroutine[Any, Any, None]]


# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------

@runtime_checkable
class IEventBus(Protocol):
    """Publish/subscribe event bus keyed by event name."""

    async def send(self, name: str, payload: dict[str, Any]) -> str:
        """Publish *payload* under *name*; return the event id."""
        ...

    async def subscribe(self, name: str, group: str, handler: MessageHandler) -> None: ...

    async def start(self) -> None: ...
    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

@runtime_checkable
class IDeferredJobStore(Protocol):
    """Persistence for deferred jobs, indexed by ``run_after``."""

    async def create(self, job: DeferredJob) -> DeferredJob: ...
    async def get(self, job_id: str) -> DeferredJob | None: ...
    async def delete(self, job_id: str) -> None: ...
    async def list_due(self, now_seconds: int, limit: int = 100) -> list[DeferredJob]: ...


@runtime_checkable
class ISettingsProvider(Protocol):
    """Loads the tenant's invoice settings, bound so ``save()`` persists."""

    async def get_settings(self) -> InvoiceSettings:
        """Raises ``SettingsNotConfiguredError`` when nothing is stored."""
        ...

    async def store_settings(self, settings: InvoiceSettings) -> None: ...


@runtime_checkable
class IExpenseStore(Protocol):
    async def create(self, draft: ExpenseDraft) -> Expense: ...
    async def get(self, expense_id: str) -> Expense | None: ...
    async def delete(self, expense_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class INumberingLock(Protocol):
    """Mutual exclusion around document-number assignment for a tenant."""

    def hold(self, key: str) -> AbstractAsyncContextManager[None]: ...


# ---------------------------------------------------------------------------
# Rendering / delivery collaborators
# ---------------------------------------------------------------------------

@runtime_checkable
class IPdfRenderer(Protocol):
    """Renders an invoice and stores the PDF, returning its location."""

    async def render(self, invoice: Invoice) -> PdfLocation: ...


@runtime_checkable
class IInvoiceMailer(Protocol):
    """Sends the rendered invoice to the customer; returns a message id."""

    async def send_invoice(
        self, invoice: Invoice, submission_id: str, attachment_ids: list[str]
    ) -> str: ...

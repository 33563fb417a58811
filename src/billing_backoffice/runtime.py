"""Application wiring.

``build_runtime`` turns ``Settings`` into concrete backends; nothing
connects until ``Runtime.start()`` is awaited.  Starting also subscribes
the inbound handlers, so every runtime consumes the events its
dispatcher publishes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from .bus import create_event_bus
from .bus.memory_bus import MemoryEventBus
from .core.clock import IClock, WallClock
from .core.config import Settings
from .core.enums import JobStoreBackend, LockBackend, StorageBackend
from .core.interfaces import (
    IDeferredJobStore,
    IEventBus,
    IExpenseStore,
    IInvoiceMailer,
    INumberingLock,
    IPdfRenderer,
    ISettingsProvider,
)
from .services.handlers import register_handlers
from .services.lifecycle import InvoiceLifecycleService
from .services.scheduler import DeferredJobDispatcher
from .storage.memory import (
    AsyncioNumberingLock,
    InMemoryDeferredJobStore,
    InMemoryExpenseStore,
    InMemoryInvoiceRepository,
    InMemorySettingsProvider,
)
from .storage.repository import InvoiceRepository

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every wired collaborator, plus the resources ``stop()`` releases."""

    settings: Settings
    clock: IClock
    event_bus: IEventBus
    repository: InvoiceRepository
    jobs: IDeferredJobStore
    invoice_settings: ISettingsProvider
    numbering_lock: INumberingLock
    expenses: IExpenseStore
    lifecycle: InvoiceLifecycleService
    dispatcher: DeferredJobDispatcher
    engine: AsyncEngine | None = None
    redis_state: Any = None
    mailer: IInvoiceMailer | None = None
    renderer: IPdfRenderer | None = None
    subscriptions: list[str] = field(default_factory=list)
    _started: bool = field(default=False, repr=False)

    async def start(self) -> None:
        if self._started:
            return
        if self.redis_state is not None:
            await self.redis_state.connect()
        if self.engine is not None and self.settings.storage.create_tables:
            from .storage.postgres.connection import create_all

            await create_all(self.engine)
        if not self.subscriptions:
            self.subscriptions = await register_handlers(
                self.event_bus,
                self.repository,
                self.invoice_settings,
                self.numbering_lock,
                self.expenses,
                mailer=self.mailer,
                renderer=self.renderer,
                tenant_key=self.settings.numbering.tenant_key,
            )
        await self.event_bus.start()
        self._started = True
        logger.info(
            "Runtime started (storage=%s, bus=%s, jobs=%s, lock=%s)",
            self.settings.storage.backend.value,
            self.settings.bus.backend.value,
            self.settings.scheduler.job_store.value,
            self.settings.numbering.lock_backend.value,
        )

    async def stop(self) -> None:
        await self.event_bus.stop()
        if self.redis_state is not None:
            await self.redis_state.close()
        if self.engine is not None:
            await self.engine.dispose()
        self._started = False
        logger.info("Runtime stopped")

    async def process_pending(self) -> int:
        """Hand queued in-process messages to their handlers.

        Redis Streams consumers run on their own tasks, so this only does
        work for the memory bus.
        """
        if isinstance(self.event_bus, MemoryEventBus):
            return await self.event_bus.drain()
        return 0


def build_runtime(
    settings: Settings,
    clock: IClock | None = None,
    *,
    mailer: IInvoiceMailer | None = None,
    renderer: IPdfRenderer | None = None,
) -> Runtime:
    """Wire the backends selected in *settings*.

    *mailer* and *renderer* enable the email and PDF handlers.

    Raises:
        ConfigError: The backend combination is invalid.
    """
    settings.validate_backends()
    clock = clock or WallClock()

    event_bus = create_event_bus(
        settings.bus.backend,
        redis_url=settings.redis_url,
        stream_prefix=settings.bus.stream_prefix,
        max_stream_length=settings.bus.max_stream_length,
    )

    engine: AsyncEngine | None = None
    redis_state = None
    if (
        settings.scheduler.job_store == JobStoreBackend.REDIS
        or settings.numbering.lock_backend == LockBackend.REDIS
    ):
        from .storage.redis_state import RedisStateStore

        redis_state = RedisStateStore(
            settings.redis_url,
            prefix=settings.bus.stream_prefix,
            lock_timeout_seconds=settings.numbering.lock_timeout_seconds,
        )

    repository: InvoiceRepository
    invoice_settings: ISettingsProvider
    expenses: IExpenseStore
    jobs: IDeferredJobStore

    if settings.storage.backend == StorageBackend.POSTGRES:
        from .storage.postgres.connection import create_engine, make_session_factory
        from .storage.postgres.repos import (
            SqlDeferredJobStore,
            SqlExpenseStore,
            SqlInvoiceRepository,
            SqlSettingsProvider,
        )

        engine = create_engine(
            settings.storage.postgres_url,
            pool_size=settings.storage.pool_size,
            max_overflow=settings.storage.max_overflow,
            echo=settings.storage.echo,
        )
        factory = make_session_factory(engine)
        repository = SqlInvoiceRepository(factory, event_bus)
        invoice_settings = SqlSettingsProvider(factory)
        expenses = SqlExpenseStore(factory)
    else:
        repository = InMemoryInvoiceRepository(event_bus)
        invoice_settings = InMemorySettingsProvider()
        expenses = InMemoryExpenseStore()

    if settings.scheduler.job_store == JobStoreBackend.REDIS:
        jobs = redis_state
    elif settings.scheduler.job_store == JobStoreBackend.POSTGRES:
        jobs = SqlDeferredJobStore(factory)
    else:
        jobs = InMemoryDeferredJobStore()

    numbering_lock: INumberingLock
    if settings.numbering.lock_backend == LockBackend.REDIS:
        numbering_lock = redis_state
    else:
        numbering_lock = AsyncioNumberingLock(settings.numbering.lock_timeout_seconds)

    lifecycle = InvoiceLifecycleService(
        repository,
        jobs,
        invoice_settings,
        numbering_lock,
        expenses,
        clock,
        schedule_min_lead_seconds=settings.lifecycle.schedule_min_lead_seconds,
        pdf_request_debounce_seconds=settings.lifecycle.pdf_request_debounce_seconds,
        tenant_key=settings.numbering.tenant_key,
    )
    dispatcher = DeferredJobDispatcher(
        jobs, event_bus, clock, batch_size=settings.scheduler.batch_size
    )

    return Runtime(
        settings=settings,
        clock=clock,
        event_bus=event_bus,
        repository=repository,
        jobs=jobs,
        invoice_settings=invoice_settings,
        numbering_lock=numbering_lock,
        expenses=expenses,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        engine=engine,
        redis_state=redis_state,
        mailer=mailer,
        renderer=renderer,
    )

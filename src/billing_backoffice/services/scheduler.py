"""Deferred job dispatcher.

Polls the job store for jobs whose ``run_after`` has passed, publishes
each job's ``(event_type, event_payload)`` on the bus, and deletes the job
once the bus accepted it.  A job whose publication fails stays in the
store and is retried on the next poll, so delivery is at-least-once;
consumers deduplicate by payload ``id``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from billing_backoffice.core.clock import IClock, WallClock
from billing_backoffice.core.interfaces import IDeferredJobStore, IEventBus
from billing_backoffice.observability.logger import new_trace_id
from billing_backoffice.observability.metrics import record_job

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """Outcome of one ``dispatch_due`` pass."""

    dispatched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.dispatched) + len(self.failed)


class DeferredJobDispatcher:
    def __init__(
        self,
        jobs: IDeferredJobStore,
        event_bus: IEventBus,
        clock: IClock | None = None,
        batch_size: int = 100,
    ) -> None:
        self._jobs = jobs
        self._event_bus = event_bus
        self._clock = clock or WallClock()
        self._batch_size = batch_size

    async def dispatch_due(self, now_seconds: int | None = None) -> DispatchReport:
        """Publish every job due at *now_seconds* (default: the clock's now)."""
        now = self._clock.now_seconds() if now_seconds is None else now_seconds
        report = DispatchReport()

        for job in await self._jobs.list_due(now, limit=self._batch_size):
            if not job.event_type:
                # scheduled but never bound to an event; nothing to publish
                logger.warning("Deferred job %s has no event type, dropping", job.id)
                await self._jobs.delete(job.id)
                record_job("", "dropped")
                continue
            try:
                await self._event_bus.send(job.event_type, job.event_payload)
                await self._jobs.delete(job.id)
            except Exception:
                logger.exception("Deferred job %s (%s) failed", job.id, job.event_type)
                report.failed.append(job.id)
                record_job(job.event_type, "failed")
                continue
            report.dispatched.append(job.id)
            record_job(job.event_type, "dispatched")
            logger.debug("Dispatched deferred job %s (%s)", job.id, job.event_type)

        if report.total:
            logger.info(
                "Deferred jobs: %d dispatched, %d failed",
                len(report.dispatched),
                len(report.failed),
            )
        return report

    async def run_forever(
        self,
        interval_seconds: float = 30.0,
        stop_event: asyncio.Event | None = None,
        after_pass: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        """Poll until *stop_event* is set (or the task is cancelled).

        *after_pass* runs after every poll, e.g. to drain an in-process bus.
        """
        stop = stop_event or asyncio.Event()
        logger.info("Deferred job dispatcher polling every %.1fs", interval_seconds)
        while not stop.is_set():
            new_trace_id()
            try:
                await self.dispatch_due()
                if after_pass is not None:
                    await after_pass()
            except Exception:
                logger.exception("Deferred job poll failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Deferred job dispatcher stopped")

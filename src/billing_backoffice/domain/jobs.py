"""Deferred job reference.

A ``DeferredJob`` describes an event to publish at a later time.  The
Invoice aggregate only creates and cancels references to jobs; a
``DeferredJobDispatcher`` polls the job store and publishes
``(event_type, event_payload)`` once ``run_after`` has passed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, model_validator

from billing_backoffice.core.ids import job_id, utc_now


class DeferredJob(BaseModel):
    """A future event publication.

    ``run_after`` is whole seconds since epoch so stores can index it as a
    plain integer (SQL column, Redis sorted-set score).
    """

    id: str = ""
    run_after: int = 0
    event_type: str = ""
    event_payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _fill_defaults(self) -> "DeferredJob":
        if not self.id:
            self.id = job_id(self.event_type or None)
        if not self.run_after:
            self.run_after = int(self.created_at.timestamp())
        return self

    @classmethod
    def at(cls, when: datetime, event_type: str = "", **payload: Any) -> "DeferredJob":
        """Build a job that becomes due at *when*."""
        return cls(
            run_after=int(when.astimezone(timezone.utc).timestamp()),
            event_type=event_type,
            event_payload=payload,
        )

    @property
    def run_after_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.run_after, tz=timezone.utc)

    def is_due(self, now_seconds: int) -> bool:
        return self.run_after <= now_seconds

"""SQLAlchemy ORM models for the billing database.

Nested invoice structures (items, activity, submissions, ...) are stored
as JSON text so the schema stays portable across Postgres and SQLite.
The ``version`` column carries the optimistic-concurrency counter.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# InvoiceRecord
# ---------------------------------------------------------------------------

class InvoiceRecord(Base):
    """One invoice or offer.  Each save is an UPDATE guarded by ``version``."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="draft")
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    customer: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    items: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    activity: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    submissions: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    links: Mapped[str | None] = mapped_column(Text, nullable=True)
    pdf: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_event_ids: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    footer_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    offer_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    offered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invoiced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    paid_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_via: Mapped[str | None] = mapped_column(String(64), nullable=True)

    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    scheduled_send_job_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_invoices_status", "status"),
        Index("ix_invoices_customer_id", "customer_id"),
        Index("ix_invoices_invoice_number", "invoice_number"),
    )

    def __repr__(self) -> str:
        return (
            f"<InvoiceRecord(id={self.id!r}, type={self.type!r}, "
            f"status={self.status!r}, version={self.version})>"
        )


# ---------------------------------------------------------------------------
# DeferredJobRecord
# ---------------------------------------------------------------------------

class DeferredJobRecord(Base):
    """A pending event publication, polled by ``run_after``."""

    __tablename__ = "deferred_jobs"

    id: Mapped[str] = mapped_column(String(96), primary_key=True)
    run_after: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, server_default=func.now(),
    )

    __table_args__ = (Index("ix_deferred_jobs_run_after", "run_after"),)

    def __repr__(self) -> str:
        return (
            f"<DeferredJobRecord(id={self.id!r}, event_type={self.event_type!r}, "
            f"run_after={self.run_after})>"
        )


# ---------------------------------------------------------------------------
# SettingRecord
# ---------------------------------------------------------------------------

class SettingRecord(Base):
    """Serialized settings documents keyed by setting id."""

    __tablename__ = "settings"

    setting_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# ExpenseRecord
# ---------------------------------------------------------------------------

class ExpenseRecord(Base):
    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    expended_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    expended_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )

    __table_args__ = (Index("ix_expenses_invoice_id", "invoice_id"),)

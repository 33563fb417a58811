"""Minimal expense record created from an invoice's linked expenses."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime

from pydantic import BaseModel, Field

from billing_backoffice.core.ids import new_id, utc_now


class ExpenseDraft(BaseModel):
    """Fields handed to the expense factory."""

    name: str
    expended_cents: int
    expended_at: datetime
    category_id: str | None = None
    invoice_id: str | None = None


class Expense(ExpenseDraft):
    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utc_now)


CreateExpense = Callable[[ExpenseDraft], Awaitable[Expense]]

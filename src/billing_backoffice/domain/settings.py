"""Tenant invoice settings and the document-number sequences they own.

``InvoiceSettings`` is a single mutable resource shared by every invoice
of a tenant.  Its sequences are **not** safe under concurrent callers:
two first-sends must not interleave the read-modify-write of
``last_number``.  Callers hold a ``NumberingLock`` around
``Invoice.add_submission`` when the invoice is still a draft.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from billing_backoffice.core.enums import InvoiceOutputFormat
from billing_backoffice.core.errors import NumberingError
from billing_backoffice.core.numbering import Numbering

logger = logging.getLogger(__name__)

SETTINGS_ID = "invoice-numbers"

# Persists the serialized settings document.
SaveSettings = Callable[[dict[str, Any]], Awaitable[None]]


class NumberSequence(BaseModel):
    """Template, increment template and last issued number.

    Example: ``template="[INV]-YYMM-####"``, ``increment_template="YY-####"``
    restarts the counter every year.
    """

    template: str = ""
    increment_template: str = ""
    last_number: str = ""

    _owner: Any = PrivateAttr(default=None)

    def update(
        self,
        *,
        template: str | None = None,
        increment_template: str | None = None,
        last_number: str | None = None,
    ) -> None:
        if template is not None:
            self.template = template
        if increment_template is not None:
            self.increment_template = increment_template
        if last_number is not None:
            self.last_number = last_number

    def peek_next_number(self, today: date | None = None) -> str:
        """Compute the next number without consuming it."""
        if not self.template:
            raise NumberingError("No numbering template configured")
        return Numbering.make_next_number(
            self.template,
            self.increment_template or self.template,
            self.last_number,
            today,
        )

    async def get_next_number(self, today: date | None = None) -> str:
        """Consume the next number and persist the owning settings."""
        next_number = self.peek_next_number(today)
        self.last_number = next_number
        if self._owner is not None:
            await self._owner.save()
        return next_number


class InvoiceSettings(BaseModel):
    """Numbering sequences and document defaults for one tenant."""

    invoice_numbers: NumberSequence = Field(default_factory=NumberSequence)
    offer_numbers: NumberSequence = Field(default_factory=NumberSequence)
    customer_numbers: NumberSequence = Field(default_factory=NumberSequence)
    offer_validity_days: int = 14
    default_invoice_due_days: int = 14
    default_invoice_footer_text: str = ""
    invoice_output_format: InvoiceOutputFormat = InvoiceOutputFormat.PDF

    _save_inner: SaveSettings | None = PrivateAttr(default=None)

    @field_validator("offer_validity_days", "default_invoice_due_days", mode="before")
    @classmethod
    def _default_days(cls, value: Any) -> Any:
        # 0 / None mean "not configured"
        return value or 14

    @field_validator("invoice_output_format", mode="before")
    @classmethod
    def _output_format(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return InvoiceOutputFormat(value.lower())
            except ValueError:
                return InvoiceOutputFormat.PDF
        return value or InvoiceOutputFormat.PDF

    def model_post_init(self, __context: Any) -> None:
        for sequence in (self.invoice_numbers, self.offer_numbers, self.customer_numbers):
            sequence._owner = self

    def bind(self, save_inner: SaveSettings) -> "InvoiceSettings":
        """Attach the persistence callback used by ``save``."""
        self._save_inner = save_inner
        return self

    def serializable(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    async def save(self) -> None:
        if self._save_inner is None:
            logger.debug("InvoiceSettings has no save callback bound; not persisted")
            return
        await self._save_inner(self.serializable())

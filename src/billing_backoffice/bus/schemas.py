"""Bus message envelope and event-name -> payload schema registry.

Producers send plain dicts (``DomainEvent.to_message()``); consumers
validate them into the payload models registered here before acting.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from billing_backoffice.core.ids import new_id, utc_now
from billing_backoffice.domain.events import (
    INVOICE_LATER,
    INVOICE_PDF,
    INVOICE_SEND,
)

# Inbound notification from the mail provider; not produced by the aggregate.
EMAIL_DELIVERY_STATUS = "email.delivery"


class BusMessage(BaseModel):
    """Envelope a handler receives."""

    event_id: str = Field(default_factory=new_id)
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    sent_at: datetime = Field(default_factory=utc_now)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InvoicePdfRequested(_Payload):
    invoice_id: str = Field(alias="invoiceId")
    for_content_hash: str = Field(alias="forContentHash")


class InvoiceSendRequested(_Payload):
    id: str
    invoice_id: str = Field(alias="invoiceId")
    submission_id: str = Field(alias="submissionId")
    for_content_hash: str = Field(alias="forContentHash")


class InvoiceSendLater(_Payload):
    id: str
    user_name: str = Field(alias="userName")
    invoice_id: str = Field(alias="invoiceId")
    submission_id: str = Field(alias="submissionId")


class EmailDeliveryStatus(_Payload):
    id: str
    invoice_id: str = Field(alias="invoiceId")
    delivered: bool
    detail: str | None = None


# Event name -> payload model for the events this service consumes
TOPIC_SCHEMAS: dict[str, type[_Payload]] = {
    INVOICE_PDF: InvoicePdfRequested,
    INVOICE_SEND: InvoiceSendRequested,
    INVOICE_LATER: InvoiceSendLater,
    EMAIL_DELIVERY_STATUS: EmailDeliveryStatus,
}


def get_payload_class(name: str) -> type[_Payload] | None:
    return TOPIC_SCHEMAS.get(name)


def parse_payload(message: BusMessage) -> _Payload:
    """Validate *message*'s payload against its registered model."""
    payload_cls = get_payload_class(message.name)
    if payload_cls is None:
        raise KeyError(f"No payload schema registered for {message.name!r}")
    return payload_cls.model_validate(message.payload)

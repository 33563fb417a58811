"""Lookup tables over the closed ``InvoiceActivityType`` enum.

Every consumer of activity types goes through a table keyed by the enum,
and ``tests/unit/test_activity.py`` asserts each table is exhaustive, so a
new member cannot be added without deciding how every layer treats it.
"""

from __future__ import annotations

from billing_backoffice.core.enums import (
    InvoiceActivityType as A,
    InvoiceSubmissionType,
    InvoiceType,
)

_SENT: dict[tuple[InvoiceType, InvoiceSubmissionType], A] = {
    (InvoiceType.INVOICE, InvoiceSubmissionType.EMAIL): A.SENT_INVOICE_EMAIL,
    (InvoiceType.INVOICE, InvoiceSubmissionType.LETTER): A.SENT_INVOICE_LETTER,
    (InvoiceType.INVOICE, InvoiceSubmissionType.MANUAL): A.SENT_INVOICE_MANUALLY,
    (InvoiceType.OFFER, InvoiceSubmissionType.EMAIL): A.SENT_OFFER_EMAIL,
    (InvoiceType.OFFER, InvoiceSubmissionType.LETTER): A.SENT_OFFER_LETTER,
    (InvoiceType.OFFER, InvoiceSubmissionType.MANUAL): A.SENT_OFFER_MANUALLY,
}

_CREATED: dict[InvoiceType, A] = {
    InvoiceType.INVOICE: A.CREATED_INVOICE,
    InvoiceType.OFFER: A.CREATED_OFFER,
}

_CANCELLED: dict[InvoiceType, A] = {
    InvoiceType.INVOICE: A.CANCEL_INVOICE,
    InvoiceType.OFFER: A.CANCEL_OFFER,
}

# Human-readable text for the activity feed.
ACTIVITY_LABELS: dict[A, str] = {
    A.IMPORTED: "Imported",
    A.CREATED_INVOICE: "Invoice created",
    A.CREATED_OFFER: "Offer created",
    A.UPDATED: "Updated",
    A.CONVERT_TO_INVOICE: "Converted to invoice",
    A.ARCHIVE_OFFER: "Offer archived",
    A.ARCHIVE_INVOICE: "Invoice archived",
    A.CANCEL_INVOICE: "Invoice cancelled",
    A.CANCEL_OFFER: "Offer cancelled",
    A.SENT_OFFER_MANUALLY: "Offer marked as sent",
    A.SENT_OFFER_EMAIL: "Offer sent by email",
    A.SENT_OFFER_LETTER: "Offer sent by letter",
    A.SENT_INVOICE_MANUALLY: "Invoice marked as sent",
    A.SENT_INVOICE_EMAIL: "Invoice sent by email",
    A.SENT_INVOICE_LETTER: "Invoice sent by letter",
    A.EMAIL_SENT: "Email delivered",
    A.EMAIL_BOUNCED: "Email bounced",
    A.PAYMENT: "Payment received",
    A.PAID: "Paid in full",
    A.NOTE: "Note",
    A.ATTACHMENT: "Attachment",
    A.SCHEDULED_SEND: "Send scheduled",
    A.CANCELLED_SCHEDULED_SEND: "Scheduled send cancelled",
}

# Entries a user may remove or edit in the UI; everything else is system-written.
USER_EDITABLE: frozenset[A] = frozenset({A.NOTE, A.ATTACHMENT})


def sent_activity_type(kind: InvoiceType, channel: InvoiceSubmissionType) -> A:
    return _SENT[(kind, channel)]


def created_activity_type(kind: InvoiceType) -> A:
    return _CREATED[kind]


def cancelled_activity_type(kind: InvoiceType) -> A:
    return _CANCELLED[kind]


def describe(activity_type: A) -> str:
    return ACTIVITY_LABELS[activity_type]

"""Enumerations shared across the billing back-office."""

from __future__ import annotations

from enum import Enum


class InvoiceType(str, Enum):
    INVOICE = "invoice"
    OFFER = "offer"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    CANCELLED = "cancelled"
    PAID_PARTIALLY = "paid_partially"
    PAID = "paid"


class InvoiceSubmissionType(str, Enum):
    MANUAL = "manual"
    EMAIL = "email"
    LETTER = "letter"


class InvoiceActivityType(str, Enum):
    IMPORTED = "imported"
    CREATED_INVOICE = "created_invoice"
    CREATED_OFFER = "created_offer"
    UPDATED = "updated"
    CONVERT_TO_INVOICE = "convert_to_invoice"
    ARCHIVE_OFFER = "archive_offer"
    ARCHIVE_INVOICE = "archive_invoice"
    CANCEL_INVOICE = "cancel_invoice"
    CANCEL_OFFER = "cancel_offer"
    SENT_OFFER_MANUALLY = "sent_offer_manually"
    SENT_OFFER_EMAIL = "sent_offer_email"
    SENT_OFFER_LETTER = "sent_offer_letter"
    SENT_INVOICE_MANUALLY = "sent_invoice_manually"
    SENT_INVOICE_EMAIL = "sent_invoice_email"
    SENT_INVOICE_LETTER = "sent_invoice_letter"
    EMAIL_SENT = "email_sent"
    EMAIL_BOUNCED = "email_bounced"
    PAYMENT = "payment"
    PAID = "paid"
    NOTE = "note"
    ATTACHMENT = "attachment"
    SCHEDULED_SEND = "scheduled_send"
    CANCELLED_SCHEDULED_SEND = "cancelled_scheduled_send"


class InvoiceOutputFormat(str, Enum):
    PDF = "pdf"
    XRECHNUNG_PDF = "xrechnung_pdf"
    XRECHNUNG = "xrechnung"
    ZUGFERD = "zugferd"


# ---------------------------------------------------------------------------
# Runtime backends
# ---------------------------------------------------------------------------

class StorageBackend(str, Enum):
    MEMORY = "memory"
    POSTGRES = "postgres"


class BusBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class JobStoreBackend(str, Enum):
    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


class LockBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"

"""Custom exception hierarchy for the billing back-office."""


class BillingError(Exception):
    """Base exception for all billing errors."""


# --- Configuration ---
class ConfigError(BillingError):
    """Invalid or missing configuration."""


# --- State ---
class InvoiceStateError(BillingError):
    """Operation not allowed in the invoice's current state."""


class InvariantViolation(InvoiceStateError):
    """An internal invariant does not hold (programming error)."""


# --- Lookup ---
class NotFoundError(BillingError):
    """A referenced entity does not exist."""


class InvoiceNotFoundError(NotFoundError):
    """No invoice with the requested id."""

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class DeferredJobNotFoundError(NotFoundError):
    """No deferred job with the requested id."""


class SettingsNotConfiguredError(NotFoundError):
    """Invoice settings have not been stored yet."""


# --- Numbering ---
class NumberingError(BillingError):
    """Invalid numbering template or increment template."""


# --- Persistence ---
class PersistenceError(BillingError):
    """Storage adapter failure."""


class ConcurrencyError(PersistenceError):
    """Stored version differs from the version the caller loaded."""

    def __init__(self, entity_id: str, expected: int, actual: int | None):
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Concurrent modification of {entity_id}: "
            f"expected version {expected}, found {actual}"
        )


# --- Delivery ---
class DeliveryError(BillingError):
    """Event bus could not accept an event."""


class LockTimeoutError(PersistenceError):
    """A numbering lock could not be acquired in time."""

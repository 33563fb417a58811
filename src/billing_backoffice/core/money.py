"""Integer-cent money helpers.

Amounts are stored as integer cents everywhere.  Fractional intermediate
values (fractional quantities, tax percentages) are rounded half-up, which
is what customers expect to see on a printed invoice.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation


def round_half_up(value: float | int | Decimal) -> int:
    """Round to the nearest integer, ties away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_price(cents: int | None) -> str:
    """Render cents as a two-decimal price string (``1234`` -> ``"12.34"``)."""
    amount = Decimal(cents or 0) / Decimal(100)
    return f"{amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}"


def price_to_cents(price: str | None) -> int:
    """Parse a user-entered price such as ``"12,50 €"`` into cents.

    Either ``,`` or ``.`` is accepted as decimal separator.  Digits beyond
    the second decimal place are ignored.  Empty input yields 0.
    """
    if not price:
        return 0
    cleaned = price.replace("€", "").replace(",", ".").strip()
    euros, _, cents = cleaned.partition(".")
    cents = (cents[:2]).ljust(2, "0")
    try:
        whole = Decimal(euros or "0")
        fraction = Decimal(cents)
    except InvalidOperation as exc:
        raise ValueError(f"Not a price: {price!r}") from exc
    sign = -1 if whole < 0 or euros.startswith("-") else 1
    return int(abs(whole) * 100 + fraction) * sign

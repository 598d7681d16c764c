"""Utilities for working with monetary values held in integer cents."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")


def require_positive_cents(amount: int, *, allow_zero: bool = False) -> int:
    """Ensure ``amount`` is a positive integer (or non-negative when ``allow_zero`` is true)."""

    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"Amount must be an integer number of cents, got {type(amount)!r}")
    if allow_zero:
        if amount < 0:
            raise ValueError("Amount must be zero or greater.")
    elif amount <= 0:
        raise ValueError("Amount must be greater than zero.")
    return amount


def dollars_to_cents(value: str) -> int:
    """Parse a dollar string such as ``"12.34"`` into cents."""

    cleaned = (value or "").strip().replace("$", "").replace(",", "")
    if not cleaned:
        raise ValueError("Amount is required.")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    return int((amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def format_cents(cents: int) -> str:
    """Return ``cents`` as a currency formatted string (e.g. ``$12.34``)."""

    sign = "-" if cents < 0 else ""
    amount = (Decimal(abs(cents)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)
    return f"{sign}${amount:,.2f}"

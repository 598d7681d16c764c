"""Input validation for new payment requests."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from .config import SUPPORTED_PROVIDERS
from .money import dollars_to_cents, format_cents

MIN_AMOUNT_CENTS = 100
MAX_AMOUNT_CENTS = 50_000_000
LARGE_AMOUNT_WARNING_CENTS = 100_000
MAX_NOTE_LENGTH = 500

_SUSPICIOUS_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"script",
        r"javascript",
        r"vbscript",
        r"onload",
        r"onerror",
        r"onclick",
        r"<.*>",
        r"eval\(",
        r"document\.",
        r"window\.",
    )
)


@dataclass(slots=True)
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def contains_suspicious_content(text: str) -> bool:
    return any(pattern.search(text) for pattern in _SUSPICIOUS_PATTERNS)


def sanitize_note(note: Optional[str]) -> str:
    """Trim ``note`` and strip markup and script handlers from it."""

    if not note:
        return ""
    cleaned = note.strip()[:MAX_NOTE_LENGTH]
    cleaned = re.sub(r"[<>]", "", cleaned)
    cleaned = re.sub(r"javascript:", "", cleaned, flags=re.IGNORECASE)
    return re.sub(r"on\w+\s*=", "", cleaned, flags=re.IGNORECASE)


def parse_amount_to_cents(value: str) -> int:
    cents = dollars_to_cents(value)
    if cents <= 0:
        raise ValueError("Amount must be a positive number.")
    return cents


def validate_amount_cents(amount_cents: int) -> Optional[str]:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        return "Payment amount must be a whole number of cents"
    if amount_cents <= 0:
        return "Payment amount must be a valid positive number"
    if amount_cents < MIN_AMOUNT_CENTS:
        return f"Minimum payment amount is {format_cents(MIN_AMOUNT_CENTS)}"
    if amount_cents > MAX_AMOUNT_CENTS:
        return f"Maximum payment amount is {format_cents(MAX_AMOUNT_CENTS)}"
    return None


def validate_payment_input(
    *,
    amount_cents: int,
    provider: Optional[str],
    parent_id: str,
    student_id: str,
    note: str = "",
) -> ValidationResult:
    result = ValidationResult()

    amount_error = validate_amount_cents(amount_cents)
    if amount_error:
        result.errors.append(amount_error)
    elif amount_cents >= LARGE_AMOUNT_WARNING_CENTS:
        result.warnings.append(
            f"Large payment amount: {format_cents(amount_cents)}. Please verify this is correct."
        )

    provider_key = (provider or "").strip().lower()
    if not provider_key:
        result.errors.append("Payment provider is required")
    elif provider_key not in SUPPORTED_PROVIDERS:
        result.errors.append(f"Invalid payment provider: {provider}")

    if note and len(note) > MAX_NOTE_LENGTH:
        result.errors.append(f"Payment note too long (max {MAX_NOTE_LENGTH} characters)")
    if note and contains_suspicious_content(note):
        result.errors.append("Payment note contains inappropriate content")

    if not (parent_id or "").strip():
        result.errors.append("Parent is required")
    if not (student_id or "").strip():
        result.errors.append("Student selection is required")
    return result


__all__ = [
    "LARGE_AMOUNT_WARNING_CENTS",
    "MAX_AMOUNT_CENTS",
    "MAX_NOTE_LENGTH",
    "MIN_AMOUNT_CENTS",
    "ValidationResult",
    "contains_suspicious_content",
    "parse_amount_to_cents",
    "sanitize_note",
    "validate_amount_cents",
    "validate_payment_input",
]

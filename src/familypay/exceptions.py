"""Custom exception hierarchy for the familypay package."""

from __future__ import annotations

from typing import Sequence


class FamilyPayError(Exception):
    """Base class for all familypay specific errors."""


class PaymentNotFoundError(FamilyPayError):
    """Raised when a payment record lookup fails."""

    def __init__(self, payment_id: str) -> None:
        super().__init__(f"Payment '{payment_id}' not found.")
        self.payment_id = payment_id


class InvalidStateTransitionError(FamilyPayError):
    """Raised when an action is not legal for the payment's current status."""

    def __init__(self, status: object, action: str) -> None:
        status_value = getattr(status, "value", status)
        super().__init__(f"Cannot {action} payment with status: {status_value}")
        self.status = status
        self.action = action


class TransactionConflictError(FamilyPayError):
    """Raised when a concurrent write committed to the same record first."""


class StoreUnavailableError(FamilyPayError):
    """Raised when the ledger store cannot be reached."""


class PaymentValidationError(FamilyPayError):
    """Raised when a new payment request fails input validation."""

    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__("; ".join(errors) or "Invalid payment request.")
        self.errors = tuple(errors)


class DuplicatePaymentError(FamilyPayError):
    """Raised when creating a payment whose identifier already exists."""

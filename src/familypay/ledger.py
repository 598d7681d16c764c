"""Ledger store contract and the in-memory implementation.

A ledger store keeps payment records and offers a transactional
read-decide-write primitive.  ``run_transaction`` reads the current record,
asks ``decide`` for the patch to write and commits it only if no other
transaction committed to the same record in the meantime; otherwise it raises
:class:`~familypay.exceptions.TransactionConflictError` and the caller re-runs
the whole sequence against the fresh value.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from threading import Lock
from typing import Callable, Dict, Iterable, Optional, Tuple

from .exceptions import DuplicatePaymentError, PaymentNotFoundError, TransactionConflictError
from .models import PaymentRecord, PaymentStatus, PaymentUpdate

Decide = Callable[[PaymentRecord], Optional[PaymentUpdate]]
OnConflict = Callable[[int], None]


class LedgerStore(ABC):
    """Durable home of payment records."""

    @abstractmethod
    def create(self, record: PaymentRecord) -> PaymentRecord:
        ...

    @abstractmethod
    def get(self, payment_id: str) -> PaymentRecord:
        ...

    @abstractmethod
    def list_by_status(self, statuses: Iterable[PaymentStatus]) -> Tuple[PaymentRecord, ...]:
        ...

    @abstractmethod
    def run_transaction(self, payment_id: str, decide: Decide) -> PaymentRecord:
        """Apply ``decide``'s patch atomically; ``None`` from ``decide`` means no write."""


class InMemoryLedgerStore(LedgerStore):
    """Dictionary backed store with optimistic per-record versioning."""

    def __init__(self) -> None:
        self._records: Dict[str, Tuple[int, PaymentRecord]] = {}
        self._lock = Lock()

    def create(self, record: PaymentRecord) -> PaymentRecord:
        with self._lock:
            if record.payment_id in self._records:
                raise DuplicatePaymentError(f"Payment '{record.payment_id}' already exists.")
            self._records[record.payment_id] = (0, replace(record))
        return replace(record)

    def _read(self, payment_id: str) -> Tuple[int, PaymentRecord]:
        with self._lock:
            try:
                version, record = self._records[payment_id]
            except KeyError:
                raise PaymentNotFoundError(payment_id) from None
        return version, replace(record)

    def get(self, payment_id: str) -> PaymentRecord:
        return self._read(payment_id)[1]

    def version(self, payment_id: str) -> int:
        return self._read(payment_id)[0]

    def list_by_status(self, statuses: Iterable[PaymentStatus]) -> Tuple[PaymentRecord, ...]:
        wanted = {PaymentStatus.parse(status) for status in statuses}
        with self._lock:
            matches = [replace(record) for _, record in self._records.values() if record.status in wanted]
        return tuple(sorted(matches, key=lambda record: record.payment_id))

    def run_transaction(self, payment_id: str, decide: Decide) -> PaymentRecord:
        version, record = self._read(payment_id)
        update = decide(record)
        if not update:
            return record
        updated = record.apply(update)
        with self._lock:
            current_version, _ = self._records[payment_id]
            if current_version != version:
                raise TransactionConflictError(
                    f"Payment '{payment_id}' changed while the transaction was running."
                )
            self._records[payment_id] = (version + 1, updated)
        return replace(updated)


def run_with_retries(
    store: LedgerStore,
    payment_id: str,
    decide: Decide,
    *,
    max_attempts: int,
    on_conflict: Optional[OnConflict] = None,
) -> PaymentRecord:
    """Re-run the whole read-decide-write sequence on conflict, up to ``max_attempts`` times.

    ``on_conflict`` is called with the attempt number after each conflict; the
    last :class:`TransactionConflictError` propagates once attempts run out.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1.")
    attempt = 0
    while True:
        attempt += 1
        try:
            return store.run_transaction(payment_id, decide)
        except TransactionConflictError:
            if on_conflict is not None:
                on_conflict(attempt)
            if attempt >= max_attempts:
                raise


__all__ = ["Decide", "InMemoryLedgerStore", "LedgerStore", "OnConflict", "run_with_retries"]

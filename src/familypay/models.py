"""Domain models used by the familypay package."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .clock import utcnow


class PaymentStatus(str, Enum):
    """Enumerates every status a payment record can carry."""

    INITIATED = "initiated"
    CONFIRMED_BY_PARENT = "confirmed_by_parent"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    TIMEOUT = "timeout"
    # Legacy values: readable, never produced by new transitions.
    COMPLETED = "completed"
    PENDING = "pending"
    PROCESSING = "processing"

    @classmethod
    def parse(cls, value: "PaymentStatus | str") -> "PaymentStatus":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unknown payment status: {value!r}")
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown payment status: {value!r}") from None


class PaymentAction(str, Enum):
    """Actions that can be attempted against a payment record."""

    PARENT_CONFIRM = "parent_confirm"
    STUDENT_CONFIRM = "student_confirm"
    DISPUTE = "dispute"
    CANCEL = "cancel"
    RESOLVE_DISPUTE = "resolve_dispute"
    FAIL = "fail"
    RETRY = "retry"
    TIMEOUT = "timeout"

    @property
    def verb(self) -> str:
        return _ACTION_VERBS[self]


_ACTION_VERBS: Dict[PaymentAction, str] = {
    PaymentAction.PARENT_CONFIRM: "confirm sending of",
    PaymentAction.STUDENT_CONFIRM: "confirm receipt of",
    PaymentAction.DISPUTE: "dispute",
    PaymentAction.CANCEL: "cancel",
    PaymentAction.RESOLVE_DISPUTE: "resolve dispute on",
    PaymentAction.FAIL: "mark as failed",
    PaymentAction.RETRY: "retry",
    PaymentAction.TIMEOUT: "time out",
}


PaymentUpdate = Dict[str, Any]
"""Field level patch keyed by :class:`PaymentRecord` attribute names."""


# Field names used by records written before the current schema.
LEGACY_FIELD_NAMES: Dict[str, str] = {
    "id": "payment_id",
    "amount_cents": "amount_requested_cents",
    "student_amount_received": "student_received_cents",
    "timeout_at": "timed_out_at",
    "student_disputed_at": "disputed_at",
}


def _as_utc(moment: datetime) -> datetime:
    # Naive timestamps are read as UTC.
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        moment = datetime.fromisoformat(value)
    else:
        raise TypeError(f"Unsupported timestamp type: {type(value)!r}")
    return _as_utc(moment)


@dataclass(slots=True)
class PaymentRecord:
    """A single peer-attested payment between a parent and a student."""

    payment_id: str
    amount_requested_cents: int
    provider: str
    status: PaymentStatus = PaymentStatus.INITIATED
    parent_id: str = ""
    student_id: str = ""
    note: str = ""
    created_at: Optional[datetime] = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    parent_sent_at: Optional[datetime] = None
    student_confirmed_at: Optional[datetime] = None
    student_received_cents: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    disputed_at: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    dispute_resolved_at: Optional[datetime] = None
    dispute_resolved_by: Optional[str] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    timed_out_at: Optional[datetime] = None
    timeout_reason: Optional[str] = None
    original_status: Optional[PaymentStatus] = None

    def __post_init__(self) -> None:
        self.status = PaymentStatus.parse(self.status)
        if self.original_status is not None:
            self.original_status = PaymentStatus.parse(self.original_status)
        for name in DATETIME_FIELDS:
            value = getattr(self, name)
            if isinstance(value, datetime):
                setattr(self, name, _as_utc(value))
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def has_parent_confirmation(self) -> bool:
        """Either parent timestamp is sufficient evidence of the parent's attestation."""

        return self.confirmed_at is not None or self.parent_sent_at is not None

    @property
    def has_student_confirmation(self) -> bool:
        return self.student_confirmed_at is not None

    @property
    def amount_discrepancy_cents(self) -> Optional[int]:
        """Requested minus received amount, once the student attested a figure."""

        if self.student_received_cents is None:
            return None
        return self.amount_requested_cents - self.student_received_cents

    def apply(self, update: Mapping[str, Any]) -> "PaymentRecord":
        """Return a copy of the record with ``update`` applied."""

        unknown = set(update) - FIELD_NAMES
        if unknown:
            raise ValueError(f"Unknown payment fields: {', '.join(sorted(unknown))}")
        if "payment_id" in update and update["payment_id"] != self.payment_id:
            raise ValueError("payment_id is immutable.")
        return replace(self, **dict(update))

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            payload[item.name] = value
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PaymentRecord":
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = LEGACY_FIELD_NAMES.get(key, key)
            if name not in FIELD_NAMES or name in values:
                continue
            values[name] = value
        for name in DATETIME_FIELDS & set(values):
            values[name] = _as_datetime(values[name])
        return cls(**values)


FIELD_NAMES = frozenset(item.name for item in fields(PaymentRecord))
DATETIME_FIELDS = frozenset(
    {
        "created_at",
        "updated_at",
        "confirmed_at",
        "parent_sent_at",
        "student_confirmed_at",
        "cancelled_at",
        "disputed_at",
        "dispute_resolved_at",
        "failed_at",
        "timed_out_at",
    }
)


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """One accepted action and the status change it caused."""

    actor: str
    action: str
    payment_id: str
    to_status: PaymentStatus
    from_status: Optional[PaymentStatus] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def changed_status(self) -> bool:
        return self.from_status is not self.to_status

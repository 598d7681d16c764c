"""Payment status resolution engine.

The functions in this module decide whether an action is legal for a payment
record and compute the exact field level update it produces.  Nothing here
performs I/O: callers run :meth:`PaymentStatusManager.evaluate` (or one of the
``build_*`` methods) against the freshest read of a record inside a ledger
store transaction and write the returned patch.

Two independent facts drive the status of a payment: whether the parent has
attested sending the money and whether the student has attested receiving it.
:func:`resolve_final_status` combines them, so confirmations arriving in
either order (or racing each other) always settle on the same status.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from .clock import Clock, utcnow
from .exceptions import InvalidStateTransitionError
from .models import PaymentAction, PaymentRecord, PaymentStatus, PaymentUpdate
from .money import require_positive_cents
from .timeouts import get_timeout_duration, is_payment_timed_out

S = PaymentStatus

TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    S.INITIATED: frozenset(
        {S.CONFIRMED_BY_PARENT, S.CONFIRMED, S.DISPUTED, S.CANCELLED, S.FAILED, S.TIMEOUT}
    ),
    S.CONFIRMED_BY_PARENT: frozenset({S.CONFIRMED, S.DISPUTED, S.FAILED}),
    S.CONFIRMED: frozenset(),
    S.DISPUTED: frozenset({S.CONFIRMED, S.FAILED}),
    S.CANCELLED: frozenset(),
    S.FAILED: frozenset({S.INITIATED}),
    S.TIMEOUT: frozenset(),
    S.COMPLETED: frozenset(),
    S.PENDING: frozenset({S.TIMEOUT}),
    S.PROCESSING: frozenset({S.TIMEOUT}),
}

PARENT_CONFIRMABLE = frozenset({S.INITIATED, S.CONFIRMED_BY_PARENT})
STUDENT_CONFIRMABLE = frozenset({S.INITIATED, S.CONFIRMED_BY_PARENT, S.CONFIRMED})
DISPUTABLE = frozenset({S.INITIATED, S.CONFIRMED_BY_PARENT})
CANCELLABLE = frozenset({S.INITIATED})
FINAL_STATES = frozenset({S.CONFIRMED, S.COMPLETED, S.CANCELLED, S.DISPUTED})
TIMEOUT_SWEEP_STATUSES = frozenset({S.INITIATED, S.PENDING, S.PROCESSING})
CONFIRMED_STATES = frozenset({S.CONFIRMED, S.COMPLETED})
DISPUTE_OUTCOMES = frozenset({S.CONFIRMED, S.FAILED})

STATUS_DESCRIPTIONS: Dict[PaymentStatus, str] = {
    S.INITIATED: "Processing",
    S.CONFIRMED_BY_PARENT: "Sent by Parent",
    S.CONFIRMED: "Completed",
    S.COMPLETED: "Completed",
    S.DISPUTED: "Disputed",
    S.CANCELLED: "Cancelled",
    S.FAILED: "Failed",
    S.TIMEOUT: "Expired",
    S.PENDING: "Processing",
    S.PROCESSING: "Processing",
}

GREEN = "#10b981"
ORANGE = "#f59e0b"
BLUE = "#3b82f6"
RED = "#dc2626"
GRAY = "#6b7280"

STATUS_COLORS: Dict[PaymentStatus, str] = {
    S.CONFIRMED: GREEN,
    S.COMPLETED: GREEN,
    S.CONFIRMED_BY_PARENT: ORANGE,
    S.INITIATED: BLUE,
    S.PENDING: BLUE,
    S.PROCESSING: BLUE,
    S.DISPUTED: RED,
    S.FAILED: RED,
    S.CANCELLED: GRAY,
    S.TIMEOUT: GRAY,
}

for _table_name, _table in (
    ("TRANSITIONS", TRANSITIONS),
    ("STATUS_DESCRIPTIONS", STATUS_DESCRIPTIONS),
    ("STATUS_COLORS", STATUS_COLORS),
):
    _missing = set(PaymentStatus) - set(_table)
    if _missing:
        raise RuntimeError(
            f"{_table_name} is missing statuses: {', '.join(sorted(s.value for s in _missing))}"
        )


# ---------------------------------------------------------------------------
# Pure predicates
# ---------------------------------------------------------------------------
def is_valid_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    return S.parse(target) in TRANSITIONS[S.parse(current)]


def resolve_final_status(
    current: PaymentStatus | str,
    has_parent_confirmation: bool,
    has_student_confirmation: bool,
) -> PaymentStatus:
    """Combine both attestation facts into one authoritative status."""

    current = S.parse(current)
    if has_parent_confirmation and has_student_confirmation:
        return S.CONFIRMED
    if has_parent_confirmation:
        return S.CONFIRMED_BY_PARENT
    if has_student_confirmation:
        # Student attestation alone closes out a payment nobody has touched yet.
        return S.CONFIRMED if current is S.INITIATED else current
    return S.INITIATED


def can_parent_confirm(status: PaymentStatus | str) -> bool:
    return S.parse(status) in PARENT_CONFIRMABLE


def can_student_confirm(status: PaymentStatus | str) -> bool:
    return S.parse(status) in STUDENT_CONFIRMABLE


def can_dispute(status: PaymentStatus | str) -> bool:
    return S.parse(status) in DISPUTABLE


def can_cancel(status: PaymentStatus | str) -> bool:
    return S.parse(status) in CANCELLABLE


def can_resolve_dispute(status: PaymentStatus | str) -> bool:
    return S.parse(status) is S.DISPUTED


def can_fail(status: PaymentStatus | str) -> bool:
    return is_valid_transition(status, S.FAILED)


def can_retry(status: PaymentStatus | str) -> bool:
    return S.parse(status) is S.FAILED


def can_time_out(status: PaymentStatus | str) -> bool:
    return S.parse(status) in TIMEOUT_SWEEP_STATUSES


def is_final_state(status: PaymentStatus | str) -> bool:
    """``failed`` is not final: it can be retried back to ``initiated``."""

    return S.parse(status) in FINAL_STATES


def get_status_description(status: PaymentStatus | str) -> str:
    return STATUS_DESCRIPTIONS[S.parse(status)]


def get_status_color(status: PaymentStatus | str) -> str:
    return STATUS_COLORS[S.parse(status)]


def parent_confirmation_is_noop(record: PaymentRecord) -> bool:
    """True when a parent confirmation would change nothing.

    Either the parent already attested (both parent timestamps are stamped)
    or the payment was already closed out as confirmed, e.g. by the student
    confirming first.
    """

    already_stamped = record.confirmed_at is not None and record.parent_sent_at is not None
    return already_stamped or record.status in CONFIRMED_STATES


def student_confirmation_is_noop(record: PaymentRecord) -> bool:
    """True when the student already attested or the payment is already confirmed.

    A confirmed payment is final, so a late student attestation reconciles
    to the existing status without touching the record.
    """

    return record.student_confirmed_at is not None or record.status in CONFIRMED_STATES


# ---------------------------------------------------------------------------
# Update builders
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Decision:
    """Outcome of evaluating an action against a record."""

    allowed: bool
    status: PaymentStatus
    update: Optional[PaymentUpdate] = None
    error: Optional[InvalidStateTransitionError] = None

    def __post_init__(self) -> None:
        if self.allowed == (self.error is not None):
            raise ValueError("A decision carries an error exactly when it is not allowed.")

    @property
    def is_noop(self) -> bool:
        return self.allowed and self.update is None


class PaymentStatusManager:
    """Build the atomic update for each sanctioned payment transition."""

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock

    def now(self):
        return self._clock()

    def _require(self, allowed: bool, record: PaymentRecord, action: PaymentAction) -> None:
        if not allowed:
            raise InvalidStateTransitionError(record.status, action.verb)

    def _check_target(self, record: PaymentRecord, target: PaymentStatus, action: PaymentAction) -> None:
        if target is not record.status and not is_valid_transition(record.status, target):
            raise InvalidStateTransitionError(record.status, action.verb)

    def build_parent_confirmation_update(self, record: PaymentRecord) -> PaymentUpdate:
        action = PaymentAction.PARENT_CONFIRM
        self._require(can_parent_confirm(record.status), record, action)
        target = resolve_final_status(record.status, True, record.has_student_confirmation)
        self._check_target(record, target, action)
        now = self.now()
        return {"status": target, "confirmed_at": now, "parent_sent_at": now, "updated_at": now}

    def build_student_confirmation_update(self, record: PaymentRecord, received_cents: int) -> PaymentUpdate:
        """Record the student's attestation; the received amount is stored as given."""

        action = PaymentAction.STUDENT_CONFIRM
        require_positive_cents(received_cents, allow_zero=True)
        self._require(can_student_confirm(record.status), record, action)
        target = resolve_final_status(record.status, record.has_parent_confirmation, True)
        self._check_target(record, target, action)
        now = self.now()
        return {
            "status": target,
            "student_confirmed_at": now,
            "student_received_cents": received_cents,
            "updated_at": now,
        }

    def build_cancellation_update(
        self, record: PaymentRecord, reason: str = "Parent cancelled before sending"
    ) -> PaymentUpdate:
        action = PaymentAction.CANCEL
        self._require(can_cancel(record.status), record, action)
        self._check_target(record, S.CANCELLED, action)
        now = self.now()
        return {"status": S.CANCELLED, "cancelled_at": now, "cancelled_reason": reason, "updated_at": now}

    def build_dispute_update(self, record: PaymentRecord, reason: str = "never_received") -> PaymentUpdate:
        action = PaymentAction.DISPUTE
        self._require(can_dispute(record.status), record, action)
        self._check_target(record, S.DISPUTED, action)
        now = self.now()
        return {"status": S.DISPUTED, "disputed_at": now, "dispute_reason": reason, "updated_at": now}

    def build_dispute_resolution_update(
        self,
        record: PaymentRecord,
        outcome: PaymentStatus | str,
        resolved_by: str,
    ) -> PaymentUpdate:
        action = PaymentAction.RESOLVE_DISPUTE
        target = S.parse(outcome)
        if target not in DISPUTE_OUTCOMES:
            raise ValueError(f"A dispute resolves to confirmed or failed, not {target.value}.")
        self._require(can_resolve_dispute(record.status), record, action)
        self._check_target(record, target, action)
        now = self.now()
        update: PaymentUpdate = {
            "status": target,
            "dispute_resolved_at": now,
            "dispute_resolved_by": resolved_by,
            "updated_at": now,
        }
        if target is S.FAILED:
            update["failed_at"] = now
            update["failure_reason"] = "Dispute resolved as not received"
        return update

    def build_failure_update(self, record: PaymentRecord, reason: str) -> PaymentUpdate:
        action = PaymentAction.FAIL
        self._require(can_fail(record.status), record, action)
        now = self.now()
        return {"status": S.FAILED, "failed_at": now, "failure_reason": reason, "updated_at": now}

    def build_retry_update(self, record: PaymentRecord) -> PaymentUpdate:
        action = PaymentAction.RETRY
        self._require(can_retry(record.status), record, action)
        # Attestations are never cleared, so a retried record could not agree with them.
        if record.has_parent_confirmation or record.has_student_confirmation:
            raise InvalidStateTransitionError(record.status, "retry attested")
        self._check_target(record, S.INITIATED, action)
        return {"status": S.INITIATED, "updated_at": self.now()}

    def build_timeout_update(self, record: PaymentRecord) -> PaymentUpdate:
        action = PaymentAction.TIMEOUT
        self._require(can_time_out(record.status), record, action)
        now = self.now()
        duration = get_timeout_duration(record.provider)
        if not is_payment_timed_out(record.created_at, record.provider, now=now):
            raise InvalidStateTransitionError(record.status, f"time out (before {duration} elapsed)")
        self._check_target(record, S.TIMEOUT, action)
        return {
            "status": S.TIMEOUT,
            "timed_out_at": now,
            "timeout_reason": f"Auto-timeout after {duration}",
            "original_status": record.status,
            "updated_at": now,
        }

    def evaluate(self, record: PaymentRecord, action: PaymentAction | str, **data: Any) -> Decision:
        """Decide ``action`` against ``record`` without raising on illegal actions."""

        action = PaymentAction(action)
        if action is PaymentAction.PARENT_CONFIRM and parent_confirmation_is_noop(record):
            return Decision(allowed=True, status=record.status)
        if action is PaymentAction.STUDENT_CONFIRM and student_confirmation_is_noop(record):
            return Decision(allowed=True, status=record.status)
        try:
            update = self._build(record, action, data)
        except InvalidStateTransitionError as exc:
            return Decision(allowed=False, status=record.status, error=exc)
        return Decision(allowed=True, status=update["status"], update=update)

    def _build(self, record: PaymentRecord, action: PaymentAction, data: Dict[str, Any]) -> PaymentUpdate:
        if action is PaymentAction.PARENT_CONFIRM:
            return self.build_parent_confirmation_update(record)
        if action is PaymentAction.STUDENT_CONFIRM:
            received = data.get("received_cents")
            if received is None:
                received = record.amount_requested_cents
            return self.build_student_confirmation_update(record, received)
        if action is PaymentAction.DISPUTE:
            return self.build_dispute_update(record, data.get("reason") or "never_received")
        if action is PaymentAction.CANCEL:
            return self.build_cancellation_update(
                record, data.get("reason") or "Parent cancelled before sending"
            )
        if action is PaymentAction.RESOLVE_DISPUTE:
            return self.build_dispute_resolution_update(record, data["outcome"], data.get("resolved_by", ""))
        if action is PaymentAction.FAIL:
            return self.build_failure_update(record, data.get("reason") or "System failure")
        if action is PaymentAction.RETRY:
            return self.build_retry_update(record)
        if action is PaymentAction.TIMEOUT:
            return self.build_timeout_update(record)
        raise ValueError(f"Unsupported payment action: {action!r}")


__all__ = [
    "CANCELLABLE",
    "DISPUTABLE",
    "Decision",
    "FINAL_STATES",
    "PARENT_CONFIRMABLE",
    "PaymentStatusManager",
    "STATUS_COLORS",
    "STATUS_DESCRIPTIONS",
    "STUDENT_CONFIRMABLE",
    "TIMEOUT_SWEEP_STATUSES",
    "TRANSITIONS",
    "can_cancel",
    "can_dispute",
    "can_fail",
    "can_parent_confirm",
    "can_resolve_dispute",
    "can_retry",
    "can_student_confirm",
    "can_time_out",
    "get_status_color",
    "get_status_description",
    "is_final_state",
    "is_valid_transition",
    "parent_confirmation_is_noop",
    "resolve_final_status",
    "student_confirmation_is_noop",
]

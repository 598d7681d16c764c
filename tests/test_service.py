from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from familypay.audit import AuditLog
from familypay.clock import FrozenClock
from familypay.exceptions import (
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
    TransactionConflictError,
)
from familypay.ledger import InMemoryLedgerStore
from familypay.models import PaymentStatus
from familypay.notifications import NotificationCenter, NotificationType
from familypay.ops import StructuredLogger
from familypay.service import PaymentAttestationService

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def service(store: InMemoryLedgerStore, clock: FrozenClock) -> PaymentAttestationService:
    ids = count(1)
    return PaymentAttestationService(
        store,
        clock=clock,
        logger=StructuredLogger(clock=clock),
        audit_log=AuditLog(clock=clock),
        notifications=NotificationCenter(),
        id_factory=lambda: f"pay-{next(ids)}",
    )


def start_payment(service: PaymentAttestationService, amount_cents: int = 2000, provider: str = "zelle"):
    return service.initiate_payment(
        parent_id="parent-1",
        student_id="student-1",
        amount_cents=amount_cents,
        provider=provider,
        note="Books",
    )


def test_initiate_payment(service: PaymentAttestationService) -> None:
    record = start_payment(service, provider="Zelle")

    assert record.payment_id == "pay-1"
    assert record.status is PaymentStatus.INITIATED
    assert record.provider == "zelle"
    assert record.created_at == record.updated_at == START
    assert service.get_payment("pay-1") == record
    assert service.audit_log.latest().action == "initiate_payment"
    assert service.logger.tail(1)[0]["event"] == "payment_initiated"


def test_initiate_payment_rejects_bad_input(service: PaymentAttestationService, store: InMemoryLedgerStore) -> None:
    with pytest.raises(PaymentValidationError) as excinfo:
        service.initiate_payment(parent_id="parent-1", student_id="", amount_cents=50, provider="bitcoin")

    assert "Minimum payment amount is $1.00" in excinfo.value.errors
    assert "Invalid payment provider: bitcoin" in excinfo.value.errors
    assert "Student selection is required" in excinfo.value.errors
    assert store.list_by_status(list(PaymentStatus)) == ()


def test_parent_then_student_with_short_amount(service: PaymentAttestationService, clock: FrozenClock) -> None:
    start_payment(service)

    clock.advance(hours=1)
    sent = service.confirm_sent("pay-1", actor="parent-1")
    assert sent.applied
    assert sent.previous_status is PaymentStatus.INITIATED
    assert sent.status is PaymentStatus.CONFIRMED_BY_PARENT

    clock.advance(hours=3)
    received = service.confirm_received("pay-1", actor="student-1", received_cents=1950)

    record = received.record
    assert record.status is PaymentStatus.CONFIRMED
    assert record.student_received_cents == 1950
    assert record.amount_requested_cents == 2000
    assert record.amount_discrepancy_cents == 50
    assert record.confirmed_at == record.parent_sent_at == START + timedelta(hours=1)
    assert record.student_confirmed_at == START + timedelta(hours=4)


def test_student_first_then_parent_is_noop(service: PaymentAttestationService) -> None:
    start_payment(service)

    received = service.confirm_received("pay-1", actor="student-1")
    assert received.status is PaymentStatus.CONFIRMED
    assert received.record.student_received_cents == 2000

    late = service.confirm_sent("pay-1", actor="parent-1")
    assert not late.applied
    assert late.status is PaymentStatus.CONFIRMED
    assert late.record.parent_sent_at is None
    assert service.logger.tail(1)[0]["event"] == "payment_noop"


def test_repeated_parent_confirmation_is_idempotent(service: PaymentAttestationService, clock: FrozenClock) -> None:
    start_payment(service)
    first = service.confirm_sent("pay-1", actor="parent-1")

    clock.advance(minutes=5)
    second = service.confirm_sent("pay-1", actor="parent-1")

    assert not second.applied
    assert second.record == first.record
    assert second.record.updated_at == first.record.updated_at
    assert len(service.audit_log.entries(action="parent_confirm")) == 1


def test_repeated_student_confirmation_keeps_first_amount(service: PaymentAttestationService) -> None:
    start_payment(service)
    service.confirm_sent("pay-1", actor="parent-1")
    service.confirm_received("pay-1", actor="student-1", received_cents=1950)

    again = service.confirm_received("pay-1", actor="student-1", received_cents=2000)

    assert not again.applied
    assert again.record.student_received_cents == 1950


def test_race_between_confirmations_retries_against_fresh_record(
    service: PaymentAttestationService, store: InMemoryLedgerStore
) -> None:
    start_payment(service)
    original = store.run_transaction
    raced = []

    def racing(payment_id, decide):
        if not raced:
            raced.append(True)

            def interleaved(record):
                # The student's write lands after our read.
                service.confirm_received(payment_id, actor="student-1")
                return decide(record)

            return original(payment_id, interleaved)
        return original(payment_id, decide)

    store.run_transaction = racing
    outcome = service.confirm_sent("pay-1", actor="parent-1")

    assert outcome.status is PaymentStatus.CONFIRMED
    final = service.get_payment("pay-1")
    assert final.status is PaymentStatus.CONFIRMED
    assert final.student_confirmed_at is not None
    assert service.logger.tail(event="transaction_conflict")


def test_conflicts_propagate_after_max_attempts(store: InMemoryLedgerStore, clock: FrozenClock) -> None:
    service = PaymentAttestationService(store, clock=clock, logger=StructuredLogger(clock=clock), max_attempts=2)
    record = start_payment(service)

    def always_conflicts(payment_id, decide):
        raise TransactionConflictError("busy")

    store.run_transaction = always_conflicts
    with pytest.raises(TransactionConflictError):
        service.confirm_sent(record.payment_id, actor="parent-1")
    assert len(service.logger.tail(event="transaction_conflict")) == 2


def test_cancel_only_before_parent_confirms(service: PaymentAttestationService) -> None:
    start_payment(service)
    cancelled = service.cancel("pay-1", actor="parent-1")
    assert cancelled.status is PaymentStatus.CANCELLED
    assert cancelled.record.cancelled_reason == "Parent cancelled before sending"

    start_payment(service)
    service.confirm_sent("pay-2", actor="parent-1")
    with pytest.raises(InvalidStateTransitionError) as excinfo:
        service.cancel("pay-2", actor="parent-1")
    assert str(excinfo.value) == "Cannot cancel payment with status: confirmed_by_parent"
    assert service.get_payment("pay-2").status is PaymentStatus.CONFIRMED_BY_PARENT
    assert service.logger.tail(1)[0]["event"] == "payment_rejected"


def test_terminal_payments_reject_further_actions(service: PaymentAttestationService) -> None:
    start_payment(service)
    service.cancel("pay-1", actor="parent-1")
    snapshot = service.get_payment("pay-1")

    for attempt in (
        lambda: service.confirm_sent("pay-1", actor="parent-1"),
        lambda: service.confirm_received("pay-1", actor="student-1"),
        lambda: service.dispute("pay-1", actor="student-1"),
    ):
        with pytest.raises(InvalidStateTransitionError):
            attempt()
    assert service.get_payment("pay-1") == snapshot


def test_dispute_and_resolution(service: PaymentAttestationService) -> None:
    start_payment(service)
    service.confirm_sent("pay-1", actor="parent-1")

    disputed = service.dispute("pay-1", actor="student-1")
    assert disputed.status is PaymentStatus.DISPUTED
    assert disputed.record.dispute_reason == "never_received"

    with pytest.raises(InvalidStateTransitionError):
        service.confirm_received("pay-1", actor="student-1")

    resolved = service.resolve_dispute("pay-1", actor="admin", outcome="failed")
    assert resolved.status is PaymentStatus.FAILED
    assert resolved.record.dispute_resolved_by == "admin"

    # The parent attestation stays on record, so the payment cannot restart.
    with pytest.raises(InvalidStateTransitionError):
        service.retry("pay-1", actor="parent-1")


def test_failed_payment_can_be_retried(service: PaymentAttestationService) -> None:
    start_payment(service)
    failed = service.mark_failed("pay-1", actor="system", reason="Provider outage")
    assert failed.status is PaymentStatus.FAILED
    assert failed.record.failure_reason == "Provider outage"

    retried = service.retry("pay-1", actor="parent-1")
    assert retried.status is PaymentStatus.INITIATED
    assert service.confirm_sent("pay-1", actor="parent-1").status is PaymentStatus.CONFIRMED_BY_PARENT


def test_missing_payment(service: PaymentAttestationService) -> None:
    with pytest.raises(PaymentNotFoundError):
        service.confirm_sent("nope", actor="parent-1")
    with pytest.raises(PaymentNotFoundError):
        service.describe("nope")


def test_notifications_and_audit_trail(service: PaymentAttestationService) -> None:
    start_payment(service)
    service.confirm_sent("pay-1", actor="parent-1")
    service.confirm_received("pay-1", actor="student-1", received_cents=1950)

    sent = service.notifications.pending(notification_type=NotificationType.PAYMENT_SENT)
    received = service.notifications.pending(notification_type=NotificationType.PAYMENT_RECEIVED)
    assert [item.recipient for item in sent] == ["student-1"]
    assert [item.recipient for item in received] == ["parent-1"]
    assert "$19.50" in received[0].body
    assert "$20.00" in received[0].body
    assert received[0].as_dict()["payment_id"] == "pay-1"

    trail = service.audit_log.entries(payment_id="pay-1")
    assert [entry.action for entry in trail] == ["initiate_payment", "parent_confirm", "student_confirm"]
    assert trail[-1].from_status is PaymentStatus.CONFIRMED_BY_PARENT
    assert trail[-1].to_status is PaymentStatus.CONFIRMED
    assert service.audit_log.status_path("pay-1") == (
        PaymentStatus.INITIATED,
        PaymentStatus.CONFIRMED_BY_PARENT,
        PaymentStatus.CONFIRMED,
    )

    assert [item.type for item in service.notifications.drain("parent-1")] == [NotificationType.PAYMENT_RECEIVED]
    assert service.notifications.pending(recipient="parent-1") == ()
    assert len(service.notifications.pending()) == 1
    service.notifications.drain()
    assert len(service.notifications.delivered()) == 2


def test_describe_adds_presentation_fields(service: PaymentAttestationService, clock: FrozenClock) -> None:
    start_payment(service)
    clock.advance(hours=37)

    view = service.describe("pay-1")

    assert view["status"] == "initiated"
    assert view["description"] == "Processing"
    assert view["color"] == "#3b82f6"
    assert view["is_final"] is False
    assert view["amount_display"] == "$20.00"
    assert view["time_remaining"] == "11h 0m remaining"
    assert view["near_timeout"] is True

    service.confirm_sent("pay-1", actor="parent-1")
    view = service.describe("pay-1")
    assert view["time_remaining"] is None
    assert view["near_timeout"] is False

"""High level service coordinating parent and student payment attestations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from .audit import AuditLog
from .clock import Clock, utcnow
from .config import LOG_PATH, MAX_TRANSACTION_ATTEMPTS, TIMEOUT_WARNING_HOURS
from .exceptions import InvalidStateTransitionError, PaymentValidationError
from .ledger import LedgerStore, run_with_retries
from .models import PaymentAction, PaymentRecord, PaymentStatus
from .money import format_cents
from .notifications import Notification, NotificationCenter, NotificationType
from .ops import StructuredLogger
from .status import (
    Decision,
    PaymentStatusManager,
    can_time_out,
    get_status_color,
    get_status_description,
    is_final_state,
)
from .timeouts import format_time_remaining, is_payment_near_timeout
from .validation import sanitize_note, validate_payment_input


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """Result of one attestation action."""

    record: PaymentRecord
    applied: bool
    previous_status: PaymentStatus

    @property
    def status(self) -> PaymentStatus:
        return self.record.status


class PaymentAttestationService:
    """Run every payment action as one read-decide-write ledger transaction."""

    __slots__ = (
        "_store",
        "_clock",
        "_manager",
        "_logger",
        "_audit_log",
        "_notifications",
        "_max_attempts",
        "_id_factory",
    )

    def __init__(
        self,
        store: LedgerStore,
        *,
        clock: Clock = utcnow,
        manager: Optional[PaymentStatusManager] = None,
        logger: Optional[StructuredLogger] = None,
        audit_log: Optional[AuditLog] = None,
        notifications: Optional[NotificationCenter] = None,
        max_attempts: int = MAX_TRANSACTION_ATTEMPTS,
        id_factory: Callable[[], str] = lambda: uuid4().hex,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self._store = store
        self._clock = clock
        self._manager = manager or PaymentStatusManager(clock=clock)
        self._logger = logger or StructuredLogger(path=LOG_PATH, clock=clock)
        self._audit_log = audit_log or AuditLog(clock=clock)
        self._notifications = notifications or NotificationCenter()
        self._max_attempts = max_attempts
        self._id_factory = id_factory

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def manager(self) -> PaymentStatusManager:
        return self._manager

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def notifications(self) -> NotificationCenter:
        return self._notifications

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------
    def initiate_payment(
        self,
        *,
        parent_id: str,
        student_id: str,
        amount_cents: int,
        provider: str,
        note: str = "",
    ) -> PaymentRecord:
        result = validate_payment_input(
            amount_cents=amount_cents,
            provider=provider,
            parent_id=parent_id,
            student_id=student_id,
            note=note,
        )
        if not result.is_valid:
            self._logger.log("payment_invalid", parent=parent_id, errors=list(result.errors))
            raise PaymentValidationError(result.errors)
        now = self._clock()
        record = PaymentRecord(
            payment_id=self._id_factory(),
            amount_requested_cents=amount_cents,
            provider=provider.strip().lower(),
            status=PaymentStatus.INITIATED,
            parent_id=parent_id,
            student_id=student_id,
            note=sanitize_note(note),
            created_at=now,
            updated_at=now,
        )
        self._store.create(record)
        self._audit_log.record(parent_id, "initiate_payment", record.payment_id, to_status=record.status)
        self._logger.log(
            "payment_initiated",
            payment=record.payment_id,
            amount_cents=amount_cents,
            provider=record.provider,
            warnings=list(result.warnings),
        )
        return record

    def get_payment(self, payment_id: str) -> PaymentRecord:
        return self._store.get(payment_id)

    def describe(self, payment_id: str, *, warning_hours: int = TIMEOUT_WARNING_HOURS) -> Dict[str, Any]:
        return self.describe_record(self.get_payment(payment_id), warning_hours=warning_hours)

    def describe_record(self, record: PaymentRecord, *, warning_hours: int = TIMEOUT_WARNING_HOURS) -> Dict[str, Any]:
        """Serialisable view of ``record`` with its presentation fields."""

        now = self._clock()
        awaiting = can_time_out(record.status)
        payload = record.as_dict()
        payload.update(
            {
                "description": get_status_description(record.status),
                "color": get_status_color(record.status),
                "is_final": is_final_state(record.status),
                "amount_display": format_cents(record.amount_requested_cents),
                "time_remaining": (
                    format_time_remaining(record.created_at, record.provider, now=now) if awaiting else None
                ),
                "near_timeout": awaiting
                and is_payment_near_timeout(record.created_at, record.provider, warning_hours, now=now),
            }
        )
        return payload

    # ------------------------------------------------------------------
    # Attestation actions
    # ------------------------------------------------------------------
    def confirm_sent(self, payment_id: str, *, actor: str) -> ActionOutcome:
        """Parent attests that the money was sent through the external provider."""

        return self._perform(payment_id, PaymentAction.PARENT_CONFIRM, actor=actor)

    def confirm_received(
        self,
        payment_id: str,
        *,
        actor: str,
        received_cents: Optional[int] = None,
    ) -> ActionOutcome:
        """Student attests receipt; defaults to the requested amount when none is given."""

        return self._perform(payment_id, PaymentAction.STUDENT_CONFIRM, actor=actor, received_cents=received_cents)

    def dispute(self, payment_id: str, *, actor: str, reason: str = "never_received") -> ActionOutcome:
        return self._perform(payment_id, PaymentAction.DISPUTE, actor=actor, reason=reason)

    def cancel(
        self,
        payment_id: str,
        *,
        actor: str,
        reason: str = "Parent cancelled before sending",
    ) -> ActionOutcome:
        return self._perform(payment_id, PaymentAction.CANCEL, actor=actor, reason=reason)

    def resolve_dispute(self, payment_id: str, *, actor: str, outcome: PaymentStatus | str) -> ActionOutcome:
        return self._perform(
            payment_id,
            PaymentAction.RESOLVE_DISPUTE,
            actor=actor,
            outcome=PaymentStatus.parse(outcome),
            resolved_by=actor,
        )

    def mark_failed(self, payment_id: str, *, actor: str, reason: str) -> ActionOutcome:
        return self._perform(payment_id, PaymentAction.FAIL, actor=actor, reason=reason)

    def retry(self, payment_id: str, *, actor: str) -> ActionOutcome:
        return self._perform(payment_id, PaymentAction.RETRY, actor=actor)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _perform(self, payment_id: str, action: PaymentAction, *, actor: str, **data: Any) -> ActionOutcome:
        seen: Dict[str, Any] = {}

        def decide(record: PaymentRecord) -> Optional[Dict[str, Any]]:
            decision = self._manager.evaluate(record, action, **data)
            seen["previous"] = record.status
            seen["decision"] = decision
            if decision.error is not None:
                raise decision.error
            return decision.update

        def conflict(attempt: int) -> None:
            self._logger.log("transaction_conflict", payment=payment_id, action=action.value, attempt=attempt)

        try:
            record = run_with_retries(
                self._store,
                payment_id,
                decide,
                max_attempts=self._max_attempts,
                on_conflict=conflict,
            )
        except InvalidStateTransitionError as exc:
            self._logger.log(
                "payment_rejected",
                payment=payment_id,
                action=action.value,
                actor=actor,
                status=exc.status,
                message=str(exc),
            )
            raise
        return self._finish(record, action, actor, seen["previous"], seen["decision"])

    def _finish(
        self,
        record: PaymentRecord,
        action: PaymentAction,
        actor: str,
        previous: PaymentStatus,
        decision: Decision,
    ) -> ActionOutcome:
        if decision.is_noop:
            self._logger.log("payment_noop", payment=record.payment_id, action=action.value, actor=actor)
            return ActionOutcome(record=record, applied=False, previous_status=previous)
        self._audit_log.record(
            actor,
            action.value,
            record.payment_id,
            to_status=record.status,
            from_status=previous,
        )
        self._logger.log(
            "payment_transition",
            payment=record.payment_id,
            action=action.value,
            actor=actor,
            from_status=previous,
            to_status=record.status,
        )
        for notification in self._notifications_for(record, action):
            self._notifications.queue(notification)
        return ActionOutcome(record=record, applied=True, previous_status=previous)

    def _notifications_for(self, record: PaymentRecord, action: PaymentAction) -> list[Notification]:
        amount = format_cents(record.amount_requested_cents)
        messages: list[tuple[str, NotificationType, str, str]] = []
        if action is PaymentAction.PARENT_CONFIRM:
            messages.append(
                (
                    record.student_id,
                    NotificationType.PAYMENT_SENT,
                    "Payment sent",
                    f"{amount} was sent via {record.provider}. Confirm once it arrives.",
                )
            )
        elif action is PaymentAction.STUDENT_CONFIRM:
            received = format_cents(record.student_received_cents or 0)
            body = f"Your student confirmed receiving {received}."
            if record.amount_discrepancy_cents:
                body += f" You requested to send {amount}."
            messages.append((record.parent_id, NotificationType.PAYMENT_RECEIVED, "Payment received", body))
        elif action is PaymentAction.DISPUTE:
            messages.append(
                (
                    record.parent_id,
                    NotificationType.PAYMENT_DISPUTED,
                    "Payment issue reported",
                    f"Your student reported never receiving {amount}.",
                )
            )
        elif action is PaymentAction.CANCEL:
            messages.append(
                (
                    record.student_id,
                    NotificationType.PAYMENT_CANCELLED,
                    "Payment cancelled",
                    f"The payment of {amount} was cancelled.",
                )
            )
        elif action is PaymentAction.RESOLVE_DISPUTE:
            body = f"The dispute over {amount} was resolved as {get_status_description(record.status).lower()}."
            for recipient in (record.parent_id, record.student_id):
                messages.append((recipient, NotificationType.PAYMENT_RESOLVED, "Dispute resolved", body))
        return [
            Notification(
                recipient=recipient,
                type=notification_type,
                payment_id=record.payment_id,
                subject=subject,
                body=body,
                created_at=self._clock(),
            )
            for recipient, notification_type, subject, body in messages
        ]


__all__ = ["ActionOutcome", "PaymentAttestationService"]

"""Audit trail of accepted payment actions."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import DefaultDict, List, Optional

from .clock import Clock, utcnow
from .models import AuditEvent, PaymentStatus


class AuditLog:
    """Append-only trail of who moved which payment, and where to.

    Rejected actions and idempotent no-ops are never recorded, so the trail of
    a payment replays exactly the status path stored on it.
    """

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._events: List[AuditEvent] = []
        self._by_payment: DefaultDict[str, List[AuditEvent]] = defaultdict(list)
        self._lock = Lock()

    def record(
        self,
        actor: str,
        action: str,
        payment_id: str,
        *,
        to_status: PaymentStatus,
        from_status: Optional[PaymentStatus] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor=actor,
            action=action,
            payment_id=payment_id,
            to_status=to_status,
            from_status=from_status,
            timestamp=self._clock(),
        )
        with self._lock:
            self._events.append(event)
            self._by_payment[payment_id].append(event)
        return event

    def entries(
        self,
        *,
        payment_id: str | None = None,
        action: str | None = None,
        actor: str | None = None,
    ) -> tuple[AuditEvent, ...]:
        events = self._by_payment.get(payment_id, []) if payment_id is not None else self._events
        if action is not None:
            events = [event for event in events if event.action == action]
        if actor is not None:
            events = [event for event in events if event.actor == actor]
        return tuple(events)

    def status_path(self, payment_id: str) -> tuple[PaymentStatus, ...]:
        """Statuses the payment passed through, starting with its initial one."""

        path: List[PaymentStatus] = []
        for event in self._by_payment.get(payment_id, []):
            if event.from_status is not None and not path:
                path.append(event.from_status)
            if not path or path[-1] is not event.to_status:
                path.append(event.to_status)
        return tuple(path)

    def latest(self) -> AuditEvent | None:
        return self._events[-1] if self._events else None


__all__ = ["AuditLog"]

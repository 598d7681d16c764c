"""Outbox of messages for the counterpart of each payment action.

Delivery (push, email) happens outside this package; the outbox only records
who should hear about which payment, in order, until a sender drains it.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Dict, List, Optional, Sequence

from .clock import utcnow


class NotificationChannel(str, Enum):
    EMAIL = "email"
    PUSH = "push"


class NotificationType(str, Enum):
    PAYMENT_SENT = "payment_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_DISPUTED = "payment_disputed"
    PAYMENT_CANCELLED = "payment_cancelled"
    PAYMENT_RESOLVED = "payment_resolved"
    PAYMENT_TIMED_OUT = "payment_timed_out"


@dataclass(frozen=True, slots=True)
class Notification:
    """A message about one payment waiting for delivery to one user."""

    recipient: str
    type: NotificationType
    payment_id: str
    subject: str
    body: str
    channel: NotificationChannel = NotificationChannel.PUSH
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, str]:
        return {
            "recipient": self.recipient,
            "type": self.type.value,
            "payment_id": self.payment_id,
            "subject": self.subject,
            "body": self.body,
            "channel": self.channel.value,
            "created_at": self.created_at.isoformat(),
        }


class NotificationCenter:
    """Per-recipient outbox; empty recipients are dropped on queueing."""

    def __init__(self) -> None:
        self._outbox: "OrderedDict[str, List[Notification]]" = OrderedDict()
        self._delivered: List[Notification] = []
        self._lock = Lock()

    def queue(self, notification: Notification) -> bool:
        if not notification.recipient:
            return False
        with self._lock:
            self._outbox.setdefault(notification.recipient, []).append(notification)
        return True

    def pending(
        self,
        *,
        recipient: Optional[str] = None,
        notification_type: Optional[NotificationType] = None,
    ) -> Sequence[Notification]:
        with self._lock:
            if recipient is not None:
                items = list(self._outbox.get(recipient, []))
            else:
                items = [item for queued in self._outbox.values() for item in queued]
        if notification_type is not None:
            items = [item for item in items if item.type is notification_type]
        return tuple(sorted(items, key=lambda item: item.created_at))

    def drain(self, recipient: Optional[str] = None) -> Sequence[Notification]:
        """Hand pending notifications to a sender and mark them delivered."""

        with self._lock:
            if recipient is None:
                drained = [item for queued in self._outbox.values() for item in queued]
                self._outbox.clear()
            else:
                drained = self._outbox.pop(recipient, [])
            self._delivered.extend(drained)
        return tuple(drained)

    def delivered(self) -> Sequence[Notification]:
        return tuple(self._delivered)


__all__ = [
    "Notification",
    "NotificationCenter",
    "NotificationChannel",
    "NotificationType",
]

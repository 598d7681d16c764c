"""familypay package for peer-attested family payments."""

from .audit import AuditLog
from .clock import Clock, FrozenClock, utcnow
from .exceptions import (
    DuplicatePaymentError,
    FamilyPayError,
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
    StoreUnavailableError,
    TransactionConflictError,
)
from .ledger import InMemoryLedgerStore, LedgerStore
from .models import AuditEvent, PaymentAction, PaymentRecord, PaymentStatus, PaymentUpdate
from .notifications import Notification, NotificationCenter, NotificationChannel, NotificationType
from .ops import StructuredLogger
from .service import ActionOutcome, PaymentAttestationService
from .status import (
    Decision,
    PaymentStatusManager,
    can_cancel,
    can_dispute,
    can_parent_confirm,
    can_student_confirm,
    get_status_color,
    get_status_description,
    is_final_state,
    is_valid_transition,
    resolve_final_status,
)
from .sweeper import SweepReport, TimeoutSweeper
from .timeouts import (
    format_time_remaining,
    get_timeout_hours,
    is_payment_near_timeout,
    is_payment_timed_out,
)

__all__ = [
    "ActionOutcome",
    "AuditEvent",
    "AuditLog",
    "Clock",
    "Decision",
    "DuplicatePaymentError",
    "FamilyPayError",
    "FrozenClock",
    "InMemoryLedgerStore",
    "InvalidStateTransitionError",
    "LedgerStore",
    "Notification",
    "NotificationCenter",
    "NotificationChannel",
    "NotificationType",
    "PaymentAction",
    "PaymentAttestationService",
    "PaymentNotFoundError",
    "PaymentRecord",
    "PaymentStatus",
    "PaymentStatusManager",
    "PaymentUpdate",
    "PaymentValidationError",
    "StoreUnavailableError",
    "StructuredLogger",
    "SweepReport",
    "TimeoutSweeper",
    "TransactionConflictError",
    "can_cancel",
    "can_dispute",
    "can_parent_confirm",
    "can_student_confirm",
    "format_time_remaining",
    "get_status_color",
    "get_status_description",
    "get_timeout_hours",
    "is_final_state",
    "is_payment_near_timeout",
    "is_payment_timed_out",
    "is_valid_transition",
    "resolve_final_status",
    "utcnow",
]

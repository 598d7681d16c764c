"""Background expiry of payments nobody attested in time."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .clock import Clock, utcnow
from .config import (
    CLEANUP_HISTORY_LIMIT,
    CLEANUP_INTERVAL_HOURS,
    LOG_PATH,
    MAX_TRANSACTION_ATTEMPTS,
    TIMEOUT_WARNING_HOURS,
)
from .exceptions import FamilyPayError
from .ledger import LedgerStore, run_with_retries
from .models import PaymentRecord, PaymentStatus
from .notifications import Notification, NotificationCenter, NotificationType
from .ops import StructuredLogger
from .status import TIMEOUT_SWEEP_STATUSES, PaymentStatusManager, can_time_out
from .timeouts import get_payment_age, get_timeout_hours, is_payment_timed_out


def _format_age(age: timedelta) -> str:
    hours = int(age.total_seconds() // 3600)
    days = hours // 24
    return f"{days}d {hours % 24}h" if days > 0 else f"{hours}h"


@dataclass(slots=True)
class SweepDetail:
    payment_id: str
    provider: str
    age: str
    error: Optional[str] = None


@dataclass(slots=True)
class SweepReport:
    started_at: datetime
    cleaned: int = 0
    errors: int = 0
    details: List[SweepDetail] = field(default_factory=list)


class TimeoutSweeper:
    """Periodically moves stale actionable payments to ``timeout``.

    Each record is expired through the same ledger transaction path as user
    actions, so a confirmation that commits first wins over the expiry.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        clock: Clock = utcnow,
        manager: Optional[PaymentStatusManager] = None,
        logger: Optional[StructuredLogger] = None,
        notifications: Optional[NotificationCenter] = None,
        interval_hours: int = CLEANUP_INTERVAL_HOURS,
        warning_hours: int = TIMEOUT_WARNING_HOURS,
        history_limit: int = CLEANUP_HISTORY_LIMIT,
        max_attempts: int = MAX_TRANSACTION_ATTEMPTS,
    ) -> None:
        self._store = store
        self._max_attempts = max_attempts
        self._clock = clock
        self._manager = manager or PaymentStatusManager(clock=clock)
        self._logger = logger or StructuredLogger(path=LOG_PATH, clock=clock)
        self._notifications = notifications
        self._interval = timedelta(hours=interval_hours)
        self._warning = timedelta(hours=warning_hours)
        self._history_limit = history_limit
        self._history: List[SweepReport] = []
        self.last_run: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Sweeping
    # ------------------------------------------------------------------
    def sweep(self) -> SweepReport:
        started = self._clock()
        report = SweepReport(started_at=started)
        candidates = self._store.list_by_status(TIMEOUT_SWEEP_STATUSES)
        self._logger.log("sweep_started", candidates=len(candidates))
        for record in candidates:
            detail = SweepDetail(payment_id=record.payment_id, provider=record.provider, age="")
            try:
                self._sweep_one(record, report, detail)
            except (FamilyPayError, ValueError, TypeError) as exc:
                report.errors += 1
                detail.error = str(exc)
                report.details.append(detail)
                self._logger.log("sweep_error", payment=record.payment_id, error=str(exc))
        self._remember(report)
        self._logger.log("sweep_completed", cleaned=report.cleaned, errors=report.errors)
        return report

    def _sweep_one(self, record: PaymentRecord, report: SweepReport, detail: SweepDetail) -> None:
        if record.created_at is None:
            self._logger.log("sweep_skipped", payment=record.payment_id, reason="missing created_at")
            return
        now = self._clock()
        age = get_payment_age(record.created_at, now=now)
        detail.age = _format_age(age)
        if not is_payment_timed_out(record.created_at, record.provider, now=now):
            remaining = timedelta(hours=get_timeout_hours(record.provider)) - age
            if remaining <= self._warning:
                self._logger.log(
                    "sweep_near_timeout",
                    payment=record.payment_id,
                    provider=record.provider,
                    remaining_hours=int(remaining.total_seconds() // 3600),
                )
            return

        expired: List[bool] = []

        def decide(current: PaymentRecord):
            # Someone may have confirmed or cancelled since the scan.
            expired.clear()
            if not can_time_out(current.status):
                return None
            expired.append(True)
            return self._manager.build_timeout_update(current)

        def conflict(attempt: int) -> None:
            self._logger.log("sweep_conflict", payment=record.payment_id, attempt=attempt)

        updated = run_with_retries(
            self._store,
            record.payment_id,
            decide,
            max_attempts=self._max_attempts,
            on_conflict=conflict,
        )
        if not expired or updated.status is not PaymentStatus.TIMEOUT:
            return
        report.cleaned += 1
        report.details.append(detail)
        self._logger.log(
            "sweep_timed_out",
            payment=record.payment_id,
            provider=record.provider,
            age=detail.age,
            original_status=updated.original_status,
        )
        self._notify(updated)

    def _notify(self, record: PaymentRecord) -> None:
        if self._notifications is None:
            return
        for recipient in (record.parent_id, record.student_id):
            self._notifications.queue(
                Notification(
                    recipient=recipient,
                    type=NotificationType.PAYMENT_TIMED_OUT,
                    payment_id=record.payment_id,
                    subject="Payment expired",
                    body=record.timeout_reason or "Payment expired before it was confirmed.",
                    created_at=self._clock(),
                )
            )

    def _remember(self, report: SweepReport) -> None:
        self.last_run = report.started_at
        self._history.append(report)
        if len(self._history) > self._history_limit:
            self._history = self._history[-self._history_limit :]

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def next_run(self) -> Optional[datetime]:
        if self.last_run is None:
            return None
        return self.last_run + self._interval

    def is_due(self, *, at: Optional[datetime] = None) -> bool:
        upcoming = self.next_run()
        return upcoming is None or (at or self._clock()) >= upcoming

    def run_if_due(self) -> Optional[SweepReport]:
        if not self.is_due():
            return None
        return self.sweep()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def history(self) -> tuple[SweepReport, ...]:
        return tuple(self._history)

    def status(self) -> Dict[str, Any]:
        return {
            "last_run": self.last_run,
            "next_run": self.next_run(),
            "total_runs": len(self._history),
            "recent": [
                {"timestamp": report.started_at, "cleaned": report.cleaned, "errors": report.errors}
                for report in self._history[-10:]
            ],
        }

    def stats(self) -> Dict[str, Any]:
        total_runs = len(self._history)
        total_cleaned = sum(report.cleaned for report in self._history)
        week_ago = self._clock() - timedelta(days=7)
        last_week = [report for report in self._history if report.started_at > week_ago]
        return {
            "total_runs": total_runs,
            "total_cleaned": total_cleaned,
            "total_errors": sum(report.errors for report in self._history),
            "average_cleaned": round(total_cleaned / total_runs, 2) if total_runs else 0,
            "last_week_runs": len(last_week),
            "last_week_cleaned": sum(report.cleaned for report in last_week),
        }


__all__ = ["SweepDetail", "SweepReport", "TimeoutSweeper"]

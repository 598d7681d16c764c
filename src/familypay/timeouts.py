"""Provider keyed expiry rules for payments awaiting attestation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

from .clock import utcnow
from .config import DEFAULT_TIMEOUT_HOURS, PROVIDER_TIMEOUT_HOURS, TIMEOUT_WARNING_HOURS

_HOUR = timedelta(hours=1)
_MINUTE = timedelta(minutes=1)


@dataclass(frozen=True, slots=True)
class TimeRemaining:
    """Whole hours and minutes left before a payment expires."""

    hours: int
    minutes: int
    expired: bool


def _fallback_hours(table: Mapping[str, int]) -> int:
    return max([DEFAULT_TIMEOUT_HOURS, *table.values()])


def get_timeout_hours(provider: Optional[str], *, table: Mapping[str, int] = PROVIDER_TIMEOUT_HOURS) -> int:
    """Return the expiry threshold for ``provider``; unknown providers get the longest one."""

    key = (provider or "").strip().lower()
    if key in table:
        return table[key]
    return _fallback_hours(table)


def get_timeout_duration(provider: Optional[str]) -> str:
    hours = get_timeout_hours(provider)
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''}"
    days = hours // 24
    return f"{days} day{'s' if days > 1 else ''}"


def _elapsed(created_at: datetime, now: Optional[datetime]) -> timedelta:
    moment = now or utcnow()
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment - created_at


def get_payment_age(created_at: datetime, *, now: Optional[datetime] = None) -> timedelta:
    """Time elapsed since ``created_at``; naive timestamps count as UTC."""

    return _elapsed(created_at, now)


def is_payment_timed_out(
    created_at: Optional[datetime],
    provider: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> bool:
    if created_at is None:
        return False
    return _elapsed(created_at, now) > get_timeout_hours(provider) * _HOUR


def is_payment_near_timeout(
    created_at: Optional[datetime],
    provider: Optional[str],
    warning_hours: int = TIMEOUT_WARNING_HOURS,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """True once the payment is inside the final ``warning_hours`` before expiry."""

    if created_at is None:
        return False
    threshold = (get_timeout_hours(provider) - warning_hours) * _HOUR
    return _elapsed(created_at, now) > threshold


def get_time_until_timeout(
    created_at: Optional[datetime],
    provider: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> TimeRemaining:
    # A record without a creation time is treated as already expired for display.
    if created_at is None:
        return TimeRemaining(hours=0, minutes=0, expired=True)
    remaining = get_timeout_hours(provider) * _HOUR - _elapsed(created_at, now)
    if remaining <= timedelta(0):
        return TimeRemaining(hours=0, minutes=0, expired=True)
    hours = remaining // _HOUR
    minutes = (remaining % _HOUR) // _MINUTE
    return TimeRemaining(hours=hours, minutes=minutes, expired=False)


def format_time_remaining(
    created_at: Optional[datetime],
    provider: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> str:
    if created_at is None:
        return "Invalid Date"
    remaining = get_time_until_timeout(created_at, provider, now=now)
    if remaining.expired:
        return "Expired"
    if remaining.hours > 24:
        return f"{remaining.hours // 24}d {remaining.hours % 24}h remaining"
    if remaining.hours > 0:
        return f"{remaining.hours}h {remaining.minutes}m remaining"
    return f"{remaining.minutes}m remaining"


__all__ = [
    "TimeRemaining",
    "format_time_remaining",
    "get_payment_age",
    "get_time_until_timeout",
    "get_timeout_duration",
    "get_timeout_hours",
    "is_payment_near_timeout",
    "is_payment_timed_out",
]

"""Configuration constants for familypay, read from the environment."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero.")
    return value


SQLITE_FILE_NAME = os.environ.get("FAMILYPAY_SQLITE", "familypay.db")
_log_path = os.environ.get("FAMILYPAY_LOG_PATH", "").strip()
LOG_PATH: Optional[Path] = Path(_log_path) if _log_path else None

MAX_TRANSACTION_ATTEMPTS = _env_int("FAMILYPAY_MAX_TX_ATTEMPTS", 3)
CLEANUP_INTERVAL_HOURS = _env_int("FAMILYPAY_CLEANUP_INTERVAL_HOURS", 6)
TIMEOUT_WARNING_HOURS = _env_int("FAMILYPAY_WARNING_HOURS", 12)
CLEANUP_HISTORY_LIMIT = 50

SUPPORTED_PROVIDERS: Tuple[str, ...] = ("paypal", "venmo", "zelle", "cashapp")
DEFAULT_TIMEOUT_HOURS = _env_int("FAMILYPAY_TIMEOUT_DEFAULT_HOURS", 24 * 7)
PROVIDER_TIMEOUT_HOURS: Dict[str, int] = {
    "paypal": _env_int("FAMILYPAY_TIMEOUT_PAYPAL_HOURS", 24 * 7),
    "venmo": _env_int("FAMILYPAY_TIMEOUT_VENMO_HOURS", 24 * 3),
    "zelle": _env_int("FAMILYPAY_TIMEOUT_ZELLE_HOURS", 24 * 2),
    "cashapp": _env_int("FAMILYPAY_TIMEOUT_CASHAPP_HOURS", 24 * 2),
}

__all__ = [
    "SQLITE_FILE_NAME",
    "LOG_PATH",
    "MAX_TRANSACTION_ATTEMPTS",
    "CLEANUP_INTERVAL_HOURS",
    "TIMEOUT_WARNING_HOURS",
    "CLEANUP_HISTORY_LIMIT",
    "SUPPORTED_PROVIDERS",
    "DEFAULT_TIMEOUT_HOURS",
    "PROVIDER_TIMEOUT_HOURS",
]

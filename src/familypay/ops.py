"""Operational utilities for familypay."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import Lock

from .clock import Clock, utcnow


def _json_default(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


class StructuredLogger:
    """Write JSON lines log entries for admin inspection."""

    def __init__(self, *, path: Path | None = None, clock: Clock = utcnow, keep: int = 1000) -> None:
        self.path = path
        self._clock = clock
        self._keep = keep
        self._entries: list[dict] = []
        self._lock = Lock()

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": self._clock().isoformat(), "event": event_type, **fields}
        line = json.dumps(entry, default=_json_default)
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._keep:
                del self._entries[: len(self._entries) - self._keep]
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        return entry

    def tail(self, limit: int = 50, *, event: str | None = None) -> tuple[dict, ...]:
        entries = self._entries
        if event is not None:
            entries = [entry for entry in entries if entry["event"] == event]
        return tuple(entries[-limit:])


__all__ = ["StructuredLogger"]

"""Operational utilities for Ribbit Reserve."""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


class StructuredLogger:
    """Write JSON lines log entries for parent-facing inspection."""

    def __init__(self, *, path: Path | None = None, max_entries: int = 1000) -> None:
        self.path = path
        self._max_entries = max_entries
        self._entries: list[dict] = []
        self._lock = threading.Lock()

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": datetime.utcnow().isoformat(), "event": event_type, **fields}
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        with self._lock:
            return tuple(self._entries[-limit:])

    def events(self, event_type: str, *, limit: Optional[int] = None) -> tuple[dict, ...]:
        with self._lock:
            matches = [entry for entry in self._entries if entry["event"] == event_type]
        if limit is not None:
            matches = matches[-limit:]
        return tuple(matches)


__all__ = ["StructuredLogger"]

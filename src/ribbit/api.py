"""Snapshot serialisation and change events for presentation layers."""

from __future__ import annotations

import json
import threading
from typing import Callable, Dict

from .ledger import RewardLedger, SpecialRewardEntry
from .models import Task
from .ops import StructuredLogger

ChangeListener = Callable[[Dict[str, object]], None]


class ApiExporter:
    """Convert Ribbit Reserve data structures to JSON friendly dictionaries."""

    def ledger_snapshot(self, ledger: RewardLedger) -> Dict[str, object]:
        money = ledger.money
        return {
            "child": ledger.child_id,
            "version": ledger.version,
            "money": {
                "balance": str(money.balance),
                "interest_rate": str(money.interest_rate),
                "last_interest_applied": (
                    money.last_interest_applied.isoformat() if money.last_interest_applied else None
                ),
            },
            "points": {"balance": ledger.points.balance},
            "special_rewards": [self._serialise_special(entry) for entry in ledger.special_rewards],
            "updated_at": ledger.updated_at.isoformat() if ledger.updated_at else None,
        }

    def task_snapshot(self, task: Task) -> Dict[str, object]:
        return {
            "id": task.id,
            "family": task.family_id,
            "assigned_to": task.assigned_to,
            "title": task.title,
            "description": task.description,
            "status": task.status.value,
            "reward": task.reward.as_dict(),
            "recurrence": task.recurrence.value,
            "due_date": task.due_date.isoformat() if task.due_date else None,
            "created_by": task.created_by,
            "created_at": task.created_at.isoformat(),
            "completed_at": task.completed_at.isoformat() if task.completed_at else None,
            "approved_at": task.approved_at.isoformat() if task.approved_at else None,
            "version": task.version,
        }

    def to_json(self, payload: Dict[str, object]) -> str:
        return json.dumps(payload, sort_keys=True)

    def _serialise_special(self, entry: SpecialRewardEntry) -> Dict[str, object]:
        return {
            "id": entry.id,
            "title": entry.title,
            "description": entry.description,
            "status": entry.status.value,
            "settlement_key": entry.settlement_key,
            "dispense_key": entry.dispense_key,
            "created_at": entry.created_at.isoformat(),
            "redeemed_at": entry.redeemed_at.isoformat() if entry.redeemed_at else None,
        }


class ChangeFeed:
    """Push committed task and ledger changes to registered listeners.

    Delivery happens after the write has committed, so a failing listener is
    logged and skipped rather than reported to the caller.
    """

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self._listeners: list[ChangeListener] = []
        self._lock = threading.Lock()
        self._logger = logger or StructuredLogger()

    def register(self, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unregister(self, listener: ChangeListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def dispatch(self, event: Dict[str, object]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:
                self._logger.log("listener_failed", change=event.get("event"), error=repr(exc))


__all__ = ["ApiExporter", "ChangeFeed", "ChangeListener"]

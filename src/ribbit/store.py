"""Document store contract and the in-memory implementation.

Stores are the only shared mutable resource. Every read hands out a private
copy and every write of a task or ledger is conditioned on the version the
caller read, so two writers can never commit against the same stale version.
"""

from __future__ import annotations

import copy
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from .exceptions import ConcurrencyConflictError, NotFoundError, RibbitError
from .ledger import RewardLedger
from .models import ChildProfile, Family, SettlementRecord, Task, TaskStatus


class RibbitStore(ABC):
    """Persistence boundary for families, children, tasks and reward ledgers."""

    # Families ---------------------------------------------------------------
    @abstractmethod
    def add_family(self, family: Family) -> Family: ...

    @abstractmethod
    def get_family(self, family_id: str) -> Family: ...

    @abstractmethod
    def save_family(self, family: Family) -> Family: ...

    # Children ---------------------------------------------------------------
    @abstractmethod
    def add_child(self, child: ChildProfile) -> ChildProfile: ...

    @abstractmethod
    def get_child(self, child_id: str) -> ChildProfile: ...

    @abstractmethod
    def list_children(self, family_id: str) -> Tuple[ChildProfile, ...]: ...

    @abstractmethod
    def remove_child(self, child_id: str) -> None:
        """Delete the child together with its reward ledger."""

    # Tasks ------------------------------------------------------------------
    @abstractmethod
    def add_task(self, task: Task) -> Task: ...

    @abstractmethod
    def get_task(self, task_id: str) -> Task: ...

    @abstractmethod
    def list_tasks(
        self,
        family_id: str,
        *,
        assigned_to: str | None = None,
        status: TaskStatus | None = None,
    ) -> Tuple[Task, ...]:
        """Return matching tasks, newest first."""

    @abstractmethod
    def replace_task(self, task: Task, *, expected_version: int) -> Task:
        """Write ``task`` if the stored copy is still at ``expected_version``."""

    @abstractmethod
    def delete_task(self, task_id: str, *, expected_version: int | None = None) -> None: ...

    # Ledgers ----------------------------------------------------------------
    @abstractmethod
    def add_ledger(self, ledger: RewardLedger) -> RewardLedger: ...

    @abstractmethod
    def get_ledger(self, child_id: str) -> RewardLedger: ...

    @abstractmethod
    def commit_ledger(
        self,
        ledger: RewardLedger,
        *,
        expected_version: int,
        settlement: SettlementRecord | None = None,
    ) -> RewardLedger:
        """Write ``ledger`` (and ``settlement``) atomically if still at ``expected_version``."""

    @abstractmethod
    def get_settlement(self, task_id: str) -> Optional[SettlementRecord]: ...


class MemoryStore(RibbitStore):
    """Thread-safe in-memory store.

    ``io_delay`` simulates the latency of a remote document store after each
    read, which widens race windows in concurrency tests.
    """

    def __init__(self, *, io_delay: float = 0.0) -> None:
        self._lock = threading.RLock()
        self._io_delay = io_delay
        self._families: Dict[str, Family] = {}
        self._children: Dict[str, ChildProfile] = {}
        self._tasks: Dict[str, Task] = {}
        self._ledgers: Dict[str, RewardLedger] = {}
        self._settlements: Dict[str, SettlementRecord] = {}

    def add_family(self, family: Family) -> Family:
        with self._lock:
            if family.id in self._families:
                raise RibbitError(f"Family '{family.id}' already exists.")
            self._families[family.id] = copy.deepcopy(family)
        return copy.deepcopy(family)

    def get_family(self, family_id: str) -> Family:
        with self._lock:
            family = self._families.get(family_id)
            if family is None:
                raise NotFoundError(f"Family '{family_id}' does not exist.")
            result = copy.deepcopy(family)
        self._pause()
        return result

    def save_family(self, family: Family) -> Family:
        with self._lock:
            if family.id not in self._families:
                raise NotFoundError(f"Family '{family.id}' does not exist.")
            self._families[family.id] = copy.deepcopy(family)
        return copy.deepcopy(family)

    def add_child(self, child: ChildProfile) -> ChildProfile:
        with self._lock:
            if child.id in self._children:
                raise RibbitError(f"Child '{child.id}' already exists.")
            self._children[child.id] = copy.deepcopy(child)
        return copy.deepcopy(child)

    def get_child(self, child_id: str) -> ChildProfile:
        with self._lock:
            child = self._children.get(child_id)
            if child is None:
                raise NotFoundError(f"Child '{child_id}' does not exist.")
            result = copy.deepcopy(child)
        self._pause()
        return result

    def list_children(self, family_id: str) -> Tuple[ChildProfile, ...]:
        with self._lock:
            children = [copy.deepcopy(child) for child in self._children.values() if child.family_id == family_id]
        children.sort(key=lambda child: (child.created_at, child.id))
        return tuple(children)

    def remove_child(self, child_id: str) -> None:
        with self._lock:
            if self._children.pop(child_id, None) is None:
                raise NotFoundError(f"Child '{child_id}' does not exist.")
            self._ledgers.pop(child_id, None)

    def add_task(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise RibbitError(f"Task '{task.id}' already exists.")
            stored = copy.deepcopy(task)
            stored.version = 1
            self._tasks[task.id] = stored
            return copy.deepcopy(stored)

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"Task '{task_id}' does not exist.")
            result = copy.deepcopy(task)
        self._pause()
        return result

    def list_tasks(
        self,
        family_id: str,
        *,
        assigned_to: str | None = None,
        status: TaskStatus | None = None,
    ) -> Tuple[Task, ...]:
        with self._lock:
            tasks = [
                copy.deepcopy(task)
                for task in self._tasks.values()
                if task.family_id == family_id
                and (assigned_to is None or task.assigned_to == assigned_to)
                and (status is None or task.status is status)
            ]
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return tuple(tasks)

    def replace_task(self, task: Task, *, expected_version: int) -> Task:
        with self._lock:
            current = self._tasks.get(task.id)
            if current is None:
                raise NotFoundError(f"Task '{task.id}' does not exist.")
            if current.version != expected_version:
                raise ConcurrencyConflictError(
                    f"Task '{task.id}' is at version {current.version}, expected {expected_version}."
                )
            stored = copy.deepcopy(task)
            stored.version = expected_version + 1
            self._tasks[task.id] = stored
            return copy.deepcopy(stored)

    def delete_task(self, task_id: str, *, expected_version: int | None = None) -> None:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise NotFoundError(f"Task '{task_id}' does not exist.")
            if expected_version is not None and current.version != expected_version:
                raise ConcurrencyConflictError(
                    f"Task '{task_id}' is at version {current.version}, expected {expected_version}."
                )
            del self._tasks[task_id]

    def add_ledger(self, ledger: RewardLedger) -> RewardLedger:
        with self._lock:
            if ledger.child_id in self._ledgers:
                raise ConcurrencyConflictError(f"Ledger for '{ledger.child_id}' already exists.")
            stored = copy.deepcopy(ledger)
            stored.version = 1
            self._ledgers[ledger.child_id] = stored
            return copy.deepcopy(stored)

    def get_ledger(self, child_id: str) -> RewardLedger:
        with self._lock:
            ledger = self._ledgers.get(child_id)
            if ledger is None:
                raise NotFoundError(f"Reward ledger for '{child_id}' does not exist.")
            result = copy.deepcopy(ledger)
        self._pause()
        return result

    def commit_ledger(
        self,
        ledger: RewardLedger,
        *,
        expected_version: int,
        settlement: SettlementRecord | None = None,
    ) -> RewardLedger:
        with self._lock:
            current = self._ledgers.get(ledger.child_id)
            if current is None:
                raise NotFoundError(f"Reward ledger for '{ledger.child_id}' does not exist.")
            if current.version != expected_version:
                raise ConcurrencyConflictError(
                    f"Ledger for '{ledger.child_id}' is at version {current.version}, expected {expected_version}."
                )
            if settlement is not None and settlement.task_id in self._settlements:
                raise ConcurrencyConflictError(f"Task '{settlement.task_id}' was settled concurrently.")
            stored = copy.deepcopy(ledger)
            stored.version = expected_version + 1
            self._ledgers[ledger.child_id] = stored
            if settlement is not None:
                self._settlements[settlement.task_id] = copy.deepcopy(settlement)
            return copy.deepcopy(stored)

    def get_settlement(self, task_id: str) -> Optional[SettlementRecord]:
        with self._lock:
            record = self._settlements.get(task_id)
            return copy.deepcopy(record) if record else None

    def _pause(self) -> None:
        if self._io_delay:
            time.sleep(self._io_delay)


__all__ = ["MemoryStore", "RibbitStore"]

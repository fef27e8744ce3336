"""Task lifecycle: the pending -> completed -> approved state machine and its side effects."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Mapping, Optional, Sequence
from uuid import uuid4

from .api import ApiExporter, ChangeFeed
from .config import RetryPolicy
from .directory import FamilyDirectory
from .exceptions import ConcurrencyConflictError, InvalidStateTransitionError, RibbitError, ValidationError
from .models import Actor, Recurrence, RewardSpec, Task, TaskStatus, ensure_reward
from .notifications import NotificationDispatcher, NotificationType, notify_safely
from .ops import StructuredLogger
from .recurrence import RecurrenceScheduler
from .security import require_child, require_parent
from .settlement import SettlementEngine, SettlementResult
from .store import RibbitStore

EDITABLE_FIELDS = frozenset({"title", "description", "reward", "recurrence", "due_date", "assigned_to"})


@dataclass(frozen=True, slots=True)
class ApprovalResult:
    """Outcome of approving a task: the approved task, its settlement and any follow-up instance."""

    task: Task
    settlement: SettlementResult
    next_task: Optional[Task] = None


def coerce_due_date(value: date | datetime | str | None) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip()).date()
        except ValueError as exc:
            raise ValidationError(f"Invalid due date: {value!r}") from exc
    raise ValidationError(f"Unsupported due date type: {type(value)!r}")


class TaskLifecycleManager:
    """Own task state transitions and orchestrate settlement, notification and recurrence."""

    def __init__(
        self,
        store: RibbitStore,
        directory: FamilyDirectory,
        engine: SettlementEngine,
        *,
        notifier: NotificationDispatcher | None = None,
        logger: StructuredLogger | None = None,
        changes: ChangeFeed | None = None,
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._directory = directory
        self._engine = engine
        self._notifier = notifier
        self._logger = logger or StructuredLogger()
        self._changes = changes or ChangeFeed(logger=self._logger)
        self._retry = retry or RetryPolicy.from_env()
        self._clock = clock
        self._sleep = sleep
        self._exporter = ApiExporter()
        self.scheduler = RecurrenceScheduler(self)

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------
    def create_task(
        self,
        family_id: str,
        assigned_to: str,
        reward: RewardSpec | Mapping[str, Any],
        recurrence: Recurrence | str = Recurrence.NONE,
        due_date: date | datetime | str | None = None,
        *,
        title: str = "",
        description: str = "",
        created_by: str | None = None,
    ) -> Task:
        spec = ensure_reward(reward)
        period = Recurrence.parse(recurrence)
        due = coerce_due_date(due_date)
        self._directory.child_in_family(family_id, assigned_to)
        now = self._clock()
        task = Task(
            id=str(uuid4()),
            family_id=family_id,
            assigned_to=assigned_to,
            reward=spec,
            title=(title or "").strip(),
            description=(description or "").strip(),
            recurrence=period,
            due_date=due,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        stored = self._store.add_task(task)
        self._logger.log(
            "task_created",
            task=stored.id,
            family=family_id,
            child=assigned_to,
            reward=spec.kind.value,
            recurrence=period.value,
        )
        self._publish(stored, "task_created")
        return stored

    def get_task(self, task_id: str) -> Task:
        return self._store.get_task(task_id)

    def tasks_for_family(self, family_id: str) -> Sequence[Task]:
        return self._store.list_tasks(family_id)

    def tasks_for_child(self, family_id: str, child_id: str) -> Sequence[Task]:
        return self._store.list_tasks(family_id, assigned_to=child_id)

    def pending_for_child(self, family_id: str, child_id: str) -> Sequence[Task]:
        return self._store.list_tasks(family_id, assigned_to=child_id, status=TaskStatus.PENDING)

    def awaiting_approval(self, family_id: str) -> Sequence[Task]:
        tasks = list(self._store.list_tasks(family_id, status=TaskStatus.COMPLETED))
        tasks.sort(key=lambda task: task.completed_at or task.created_at, reverse=True)
        return tuple(tasks)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def complete_task(self, task_id: str, actor: Actor) -> Task:
        """Child marks its own pending task as done."""

        def apply(task: Task, now: datetime) -> None:
            require_child(actor, task.assigned_to)
            task.mark_completed(when=now)

        task = self._transition(task_id, "complete_task", apply)
        self._logger.log("task_completed", task=task.id, child=task.assigned_to)
        self._notify_parents(task)
        return task

    def approve_task(self, task_id: str, actor: Actor) -> ApprovalResult:
        """Parent approves a completed task: settle, persist, notify, then recur."""

        attempts = self._retry.max_attempts
        credited: Optional[SettlementResult] = None
        for attempt in range(1, attempts + 1):
            task = self._store.get_task(task_id)
            require_parent(actor, task.family_id)
            if task.status is not TaskStatus.COMPLETED:
                raise InvalidStateTransitionError(
                    f"Task '{task.id}' is {task.status.value}; only completed tasks can be approved."
                )
            expected_version = task.version
            settlement = self._engine.settle(task.assigned_to, task.id, task.reward)
            if settlement.applied:
                credited = settlement
            task.mark_approved(when=self._clock())
            try:
                approved = self._store.replace_task(task, expected_version=expected_version)
            except ConcurrencyConflictError:
                self._logger.log("task_conflict", task=task_id, operation="approve_task", attempt=attempt)
                if attempt < attempts:
                    self._sleep(self._retry.delay(attempt))
                continue
            break
        else:
            raise ConcurrencyConflictError(
                f"Task '{task_id}' kept changing during approval; gave up after {attempts} attempts.",
                attempts=attempts,
            )
        # A retried attempt finds the reward already settled by this call.
        settlement = credited or settlement

        self._logger.log(
            "task_approved",
            task=approved.id,
            child=approved.assigned_to,
            parent=actor.id,
            settled=settlement.applied,
        )
        self._publish(approved, "task_approved")
        notify_safely(
            self._notifier,
            self._logger,
            approved.assigned_to,
            NotificationType.TASK_APPROVED,
            f'Your task "{approved.title}" has been approved! '
            f"{approved.reward.describe()} has been added to your Ribbit Reserve.",
            approved.id,
            title="Task Approved",
        )
        next_task = self._schedule_recurrence(approved, actor)
        return ApprovalResult(task=approved, settlement=settlement, next_task=next_task)

    def edit_task(self, task_id: str, actor: Actor, **changes: Any) -> Task:
        """Parent edits a task that is still pending; the reward is replaced as a whole."""

        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot edit task fields: {', '.join(sorted(unknown))}.")
        updates: dict[str, Any] = {}
        if "reward" in changes:
            updates["reward"] = ensure_reward(changes["reward"])
        if "recurrence" in changes:
            updates["recurrence"] = Recurrence.parse(changes["recurrence"])
        if "due_date" in changes:
            updates["due_date"] = coerce_due_date(changes["due_date"])
        for key in ("title", "description"):
            if key in changes:
                updates[key] = (changes[key] or "").strip()
        if "assigned_to" in changes:
            updates["assigned_to"] = changes["assigned_to"]

        def apply(task: Task, now: datetime) -> None:
            require_parent(actor, task.family_id)
            if task.status is not TaskStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Task '{task.id}' is {task.status.value}; only pending tasks can be edited."
                )
            if "assigned_to" in updates:
                self._directory.child_in_family(task.family_id, updates["assigned_to"])
            for key, value in updates.items():
                setattr(task, key, value)
            task.updated_at = now

        task = self._transition(task_id, "edit_task", apply)
        self._logger.log("task_edited", task=task.id, fields=sorted(updates))
        return task

    def delete_task(self, task_id: str, actor: Actor) -> Task:
        """Parent deletes a task in any state. Settled rewards stay with the child."""

        attempts = self._retry.max_attempts
        for attempt in range(1, attempts + 1):
            task = self._store.get_task(task_id)
            require_parent(actor, task.family_id)
            try:
                self._store.delete_task(task_id, expected_version=task.version)
            except ConcurrencyConflictError:
                self._logger.log("task_conflict", task=task_id, operation="delete_task", attempt=attempt)
                if attempt < attempts:
                    self._sleep(self._retry.delay(attempt))
                continue
            self._logger.log("task_deleted", task=task_id, status=task.status.value, parent=actor.id)
            self._changes.dispatch({"event": "task_deleted", "task": task_id, "family": task.family_id})
            return task
        raise ConcurrencyConflictError(
            f"Task '{task_id}' kept changing during deletion; gave up after {attempts} attempts.",
            attempts=attempts,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _transition(self, task_id: str, operation: str, apply: Callable[[Task, datetime], None]) -> Task:
        """Version-checked read-modify-write of one task; preconditions are re-checked on every attempt."""

        attempts = self._retry.max_attempts
        for attempt in range(1, attempts + 1):
            task = self._store.get_task(task_id)
            expected_version = task.version
            apply(task, self._clock())
            try:
                stored = self._store.replace_task(task, expected_version=expected_version)
            except ConcurrencyConflictError:
                self._logger.log("task_conflict", task=task_id, operation=operation, attempt=attempt)
                if attempt < attempts:
                    self._sleep(self._retry.delay(attempt))
                continue
            self._publish(stored, operation)
            return stored
        raise ConcurrencyConflictError(
            f"Task '{task_id}' kept changing during {operation}; gave up after {attempts} attempts.",
            attempts=attempts,
        )

    def _schedule_recurrence(self, task: Task, actor: Actor) -> Optional[Task]:
        if not task.is_recurring:
            return None
        try:
            next_task = self.scheduler.schedule_next(task, created_by=actor.id)
        except RibbitError as exc:
            self._logger.log("recurrence_failed", task=task.id, child=task.assigned_to, error=repr(exc))
            return None
        self._logger.log(
            "recurrence_created",
            task=task.id,
            next_task=next_task.id if next_task else None,
            due_date=next_task.due_date.isoformat() if next_task and next_task.due_date else None,
        )
        return next_task

    def _notify_parents(self, task: Task) -> None:
        try:
            child = self._directory.get_child(task.assigned_to)
            parent_ids = self._directory.parent_ids(task.family_id)
        except RibbitError as exc:
            self._logger.log("notification_failed", task=task.id, error=repr(exc))
            return
        for parent_id in parent_ids:
            notify_safely(
                self._notifier,
                self._logger,
                parent_id,
                NotificationType.TASK_COMPLETED,
                f'{child.display_name} has completed the task "{task.title}". Please review and approve.',
                task.id,
                title="Task Completed",
            )

    def _publish(self, task: Task, operation: str) -> None:
        self._changes.dispatch(
            {"event": "task_changed", "operation": operation, "task": self._exporter.task_snapshot(task)}
        )


__all__ = ["ApprovalResult", "EDITABLE_FIELDS", "TaskLifecycleManager", "coerce_due_date"]

"""High level service wiring the Ribbit Reserve components together."""

from __future__ import annotations

import time
from datetime import date, datetime
from typing import Any, Callable, Dict, Mapping, Sequence, Tuple

from .api import ApiExporter, ChangeFeed, ChangeListener
from .config import CURRENCY_SYMBOL, DATABASE_URL, LOG_PATH, RetryPolicy
from .directory import FamilyDirectory
from .exceptions import PermissionDeniedError
from .ledger import RewardLedger, SpecialRewardEntry
from .models import Actor, ChildProfile, Family, Recurrence, RewardSpec, Role, Task
from .money import AmountLike, format_currency, format_rate, to_decimal
from .notifications import NotificationCenter, NotificationDispatcher, NotificationType, notify_safely
from .ops import StructuredLogger
from .security import require_child, require_parent
from .settlement import InterestResult, SettlementEngine
from .store import MemoryStore, RibbitStore
from .tasks import ApprovalResult, TaskLifecycleManager


class RibbitReserve:
    """Authorize actors and route their requests to the task and ledger workflows."""

    __slots__ = (
        "_store",
        "_logger",
        "_notifications",
        "_changes",
        "_api",
        "_directory",
        "_engine",
        "_tasks",
        "_currency_symbol",
    )

    def __init__(
        self,
        store: RibbitStore | None = None,
        *,
        notifications: NotificationDispatcher | None = None,
        logger: StructuredLogger | None = None,
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], None] = time.sleep,
        currency_symbol: str = CURRENCY_SYMBOL,
    ) -> None:
        self._store = store or MemoryStore()
        self._logger = logger or StructuredLogger(path=LOG_PATH)
        self._notifications = notifications if notifications is not None else NotificationCenter()
        self._changes = ChangeFeed(logger=self._logger)
        self._api = ApiExporter()
        self._currency_symbol = currency_symbol
        retry = retry or RetryPolicy.from_env()
        self._directory = FamilyDirectory(self._store, logger=self._logger)
        self._engine = SettlementEngine(
            self._store,
            retry=retry,
            logger=self._logger,
            changes=self._changes,
            clock=clock,
            sleep=sleep,
        )
        self._tasks = TaskLifecycleManager(
            self._store,
            self._directory,
            self._engine,
            notifier=self._notifications,
            logger=self._logger,
            changes=self._changes,
            retry=retry,
            clock=clock,
            sleep=sleep,
        )

    @classmethod
    def from_database_url(cls, url: str = DATABASE_URL, **kwargs: Any) -> "RibbitReserve":
        """Build a service persisting to ``url`` through SQLModel."""

        from .persistence import create_store

        return cls(create_store(url), **kwargs)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------
    @property
    def store(self) -> RibbitStore:
        return self._store

    @property
    def directory(self) -> FamilyDirectory:
        return self._directory

    @property
    def engine(self) -> SettlementEngine:
        return self._engine

    @property
    def tasks(self) -> TaskLifecycleManager:
        return self._tasks

    @property
    def notifications(self) -> NotificationDispatcher:
        return self._notifications

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def changes(self) -> ChangeFeed:
        return self._changes

    def subscribe(self, listener: ChangeListener) -> None:
        self._changes.register(listener)

    def unsubscribe(self, listener: ChangeListener) -> None:
        self._changes.unregister(listener)

    # ------------------------------------------------------------------
    # Families and children
    # ------------------------------------------------------------------
    def register_family(self, name: str, parent_id: str, *, family_id: str | None = None) -> Tuple[Family, Actor]:
        """Create a family and return it together with the founding parent's actor."""

        family = self._directory.register_family(name, parent_id, family_id=family_id)
        return family, Actor.parent(parent_id, family.id)

    def add_parent(self, actor: Actor, parent_id: str) -> Actor:
        require_parent(actor, actor.family_id)
        self._directory.add_parent(actor.family_id, parent_id)
        return Actor.parent(parent_id, actor.family_id)

    def add_child(self, actor: Actor, display_name: str, pin: str, *, child_id: str | None = None) -> ChildProfile:
        require_parent(actor, actor.family_id)
        return self._directory.add_child(actor.family_id, display_name, pin, child_id=child_id)

    def remove_child(self, actor: Actor, child_id: str) -> None:
        require_parent(actor, actor.family_id)
        self._directory.remove_child(actor.family_id, child_id)

    def list_children(self, actor: Actor) -> Tuple[ChildProfile, ...]:
        return self._directory.list_children(actor.family_id)

    def login_child(self, child_id: str, pin: str) -> Actor:
        actor = self._directory.verify_child_pin(child_id, pin)
        self._logger.log("child_login", child=child_id)
        return actor

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    def create_task(
        self,
        actor: Actor,
        child_id: str,
        reward: RewardSpec | Mapping[str, Any],
        recurrence: Recurrence | str = Recurrence.NONE,
        due_date: date | datetime | str | None = None,
        *,
        title: str = "",
        description: str = "",
    ) -> Task:
        require_parent(actor, actor.family_id)
        return self._tasks.create_task(
            actor.family_id,
            child_id,
            reward,
            recurrence,
            due_date,
            title=title,
            description=description,
            created_by=actor.id,
        )

    def complete_task(self, actor: Actor, task_id: str) -> Task:
        return self._tasks.complete_task(task_id, actor)

    def approve_task(self, actor: Actor, task_id: str) -> ApprovalResult:
        return self._tasks.approve_task(task_id, actor)

    def edit_task(self, actor: Actor, task_id: str, **changes: Any) -> Task:
        return self._tasks.edit_task(task_id, actor, **changes)

    def delete_task(self, actor: Actor, task_id: str) -> Task:
        return self._tasks.delete_task(task_id, actor)

    def get_task(self, actor: Actor, task_id: str) -> Task:
        task = self._tasks.get_task(task_id)
        self._require_viewer(actor, task.family_id, task.assigned_to)
        return task

    def tasks_for_family(self, actor: Actor) -> Sequence[Task]:
        require_parent(actor, actor.family_id)
        return self._tasks.tasks_for_family(actor.family_id)

    def tasks_for_child(self, actor: Actor, child_id: str) -> Sequence[Task]:
        self._require_viewer(actor, actor.family_id, child_id)
        return self._tasks.tasks_for_child(actor.family_id, child_id)

    def pending_for_child(self, actor: Actor, child_id: str) -> Sequence[Task]:
        self._require_viewer(actor, actor.family_id, child_id)
        return self._tasks.pending_for_child(actor.family_id, child_id)

    def awaiting_approval(self, actor: Actor) -> Sequence[Task]:
        require_parent(actor, actor.family_id)
        return self._tasks.awaiting_approval(actor.family_id)

    # ------------------------------------------------------------------
    # Ledgers
    # ------------------------------------------------------------------
    def ledger(self, actor: Actor, child_id: str) -> RewardLedger:
        self._require_viewer(actor, actor.family_id, child_id)
        self._directory.child_in_family(actor.family_id, child_id)
        return self._engine.get_ledger(child_id)

    def family_ledgers(self, actor: Actor) -> Tuple[RewardLedger, ...]:
        require_parent(actor, actor.family_id)
        children = self._directory.list_children(actor.family_id)
        return self._engine.ledgers_for(child.id for child in children)

    def ledger_snapshot(self, actor: Actor, child_id: str) -> Dict[str, object]:
        return self._api.ledger_snapshot(self.ledger(actor, child_id))

    def task_snapshot(self, actor: Actor, task_id: str) -> Dict[str, object]:
        return self._api.task_snapshot(self.get_task(actor, task_id))

    def dispense_money(self, actor: Actor, child_id: str, amount: AmountLike) -> RewardLedger:
        """Hand ``amount`` from the child's money balance to the child in real life."""

        self._require_family_child(actor, child_id)
        ledger = self._engine.dispense_money(child_id, amount)
        self._notify(
            child_id,
            NotificationType.MONEY_DISPENSED,
            f"{self._money(to_decimal(amount))} was paid out from your Ribbit Reserve. "
            f"Your balance is now {self._money(ledger.money.balance)}.",
            title="Money Dispensed",
        )
        return ledger

    def dispense_points(self, actor: Actor, child_id: str, amount: int) -> RewardLedger:
        self._require_family_child(actor, child_id)
        ledger = self._engine.dispense_points(child_id, amount)
        self._notify(
            child_id,
            NotificationType.POINTS_DISPENSED,
            f"{amount} points were redeemed from your Ribbit Reserve. You have {ledger.points.balance} points left.",
            title="Points Dispensed",
        )
        return ledger

    def dispense_special(self, actor: Actor, child_id: str, reward_id: str) -> SpecialRewardEntry:
        self._require_family_child(actor, child_id)
        entry = self._engine.dispense_special(child_id, reward_id)
        self._notify(
            child_id,
            NotificationType.SPECIAL_DISPENSED,
            f'Your special reward "{entry.title}" is on its way!',
            entry.id,
            title="Special Reward Dispensed",
        )
        return entry

    def grant_special(
        self,
        actor: Actor,
        child_id: str,
        title: str,
        description: str = "",
        *,
        key: str | None = None,
    ) -> SpecialRewardEntry:
        self._require_family_child(actor, child_id)
        entry = self._engine.grant_special(child_id, title, description, key=key)
        self._notify(
            child_id,
            NotificationType.SPECIAL_GRANTED,
            f'You received a special reward: "{entry.title}".',
            entry.id,
            title=entry.title,
        )
        return entry

    def request_redemption(self, actor: Actor, reward_id: str) -> SpecialRewardEntry:
        """Child asks a parent to hand over an available special reward."""

        require_child(actor, actor.id)
        child = self._directory.child_in_family(actor.family_id, actor.id)
        entry = self._engine.request_redemption(actor.id, reward_id)
        for parent_id in self._directory.parent_ids(actor.family_id):
            self._notify(
                parent_id,
                NotificationType.SPECIAL_REDEMPTION,
                f"{child.display_name} wants to redeem the special reward: {entry.title}",
                entry.id,
                title="Special Reward Redemption Request",
            )
        self._notify(
            actor.id,
            NotificationType.SPECIAL_REDEMPTION,
            f"You requested to redeem the special reward: {entry.title}. Your parent has been notified.",
            entry.id,
            title="Special Reward Redemption Requested",
        )
        return entry

    def approve_redemption(self, actor: Actor, child_id: str, reward_id: str) -> SpecialRewardEntry:
        """Mark a requested special reward redeemed; repeating the call changes nothing."""

        self._require_family_child(actor, child_id)
        result = self._engine.approve_redemption(child_id, reward_id)
        entry = result.entry
        if result.applied:
            self._notify(
                child_id,
                NotificationType.SPECIAL_REDEMPTION_APPROVED,
                f'Your special reward "{entry.title}" has been approved!',
                entry.id,
                title="Special Reward Redemption Approved",
            )
        return entry

    def set_interest_rate(self, actor: Actor, child_id: str, rate: AmountLike) -> RewardLedger:
        child = self._require_family_child(actor, child_id)
        ledger = self._engine.set_interest_rate(child_id, rate)
        percent = format_rate(ledger.money.interest_rate)
        self._notify(
            child_id,
            NotificationType.INTEREST_RATE_UPDATED,
            f"Your Ribbit Reserve interest rate has been updated to {percent}.",
            title="Interest Rate Updated",
        )
        self._notify(
            actor.id,
            NotificationType.INTEREST_RATE_UPDATED,
            f"You updated {child.display_name}'s Ribbit Reserve interest rate to {percent}.",
            title="Interest Rate Updated",
        )
        return ledger

    def apply_interest(self, actor: Actor, child_id: str) -> InterestResult:
        self._require_family_child(actor, child_id)
        result = self._engine.apply_interest(child_id)
        if result.amount > 0:
            self._notify(
                child_id,
                NotificationType.INTEREST_APPLIED,
                f"You earned {self._money(result.amount)} in interest on your Ribbit Reserve!",
                title="Interest Applied",
            )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require_family_child(self, actor: Actor, child_id: str) -> ChildProfile:
        require_parent(actor, actor.family_id)
        return self._directory.child_in_family(actor.family_id, child_id)

    def _require_viewer(self, actor: Actor, family_id: str, child_id: str) -> None:
        if actor.role is Role.PARENT:
            require_parent(actor, family_id)
            return
        if actor.family_id != family_id:
            raise PermissionDeniedError(f"Child '{actor.id}' does not belong to family '{family_id}'.")
        require_child(actor, child_id)

    def _notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        message: str,
        related_id: str = "",
        *,
        title: str = "",
    ) -> bool:
        return notify_safely(
            self._notifications,
            self._logger,
            user_id,
            notification_type,
            message,
            related_id,
            title=title,
        )

    def _money(self, amount: Any) -> str:
        return format_currency(amount, symbol=self._currency_symbol)


__all__ = ["RibbitReserve"]

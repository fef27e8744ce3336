"""Domain models used by the Ribbit Reserve package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Mapping, Optional, Union

from .exceptions import InvalidStateTransitionError, ValidationError
from .money import format_currency, require_positive, to_decimal, to_points


class Role(str, Enum):
    """Kind of actor performing an operation."""

    PARENT = "parent"
    CHILD = "child"


@dataclass(frozen=True, slots=True)
class Actor:
    """Resolved identity handed over by the identity provider."""

    role: Role
    id: str
    family_id: str

    @classmethod
    def parent(cls, parent_id: str, family_id: str) -> "Actor":
        return cls(role=Role.PARENT, id=parent_id, family_id=family_id)

    @classmethod
    def child(cls, child_id: str, family_id: str) -> "Actor":
        return cls(role=Role.CHILD, id=child_id, family_id=family_id)

    @property
    def is_parent(self) -> bool:
        return self.role is Role.PARENT


@dataclass(slots=True)
class Family:
    """A household; ``member_ids`` holds the ids of its parents."""

    id: str
    name: str
    member_ids: FrozenSet[str] = field(default_factory=frozenset)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "member_ids", frozenset(self.member_ids))


@dataclass(slots=True)
class ChildProfile:
    """A child belonging to a family, identified by a hashed PIN."""

    id: str
    family_id: str
    display_name: str
    pin_hash: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)


# ---------------------------------------------------------------------------
# Reward kinds
# ---------------------------------------------------------------------------
class RewardKind(str, Enum):
    MONEY = "money"
    POINTS = "points"
    SPECIAL = "special"


@dataclass(frozen=True, slots=True)
class MoneyReward:
    """Credit ``amount`` to the money balance."""

    amount: Decimal
    kind: ClassVar[RewardKind] = RewardKind.MONEY

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", require_positive(to_decimal(self.amount)))

    def describe(self) -> str:
        return format_currency(self.amount)

    def as_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "amount": str(self.amount)}


@dataclass(frozen=True, slots=True)
class PointsReward:
    """Credit ``amount`` points."""

    amount: int
    kind: ClassVar[RewardKind] = RewardKind.POINTS

    def __post_init__(self) -> None:
        points = to_points(self.amount)
        if points <= 0:
            raise ValidationError("Points reward must be greater than zero.")
        object.__setattr__(self, "amount", points)

    def describe(self) -> str:
        return f"{self.amount} points"

    def as_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "amount": self.amount}


@dataclass(frozen=True, slots=True)
class SpecialReward:
    """Grant a non-monetary reward such as a movie night."""

    title: str
    description: str = ""
    kind: ClassVar[RewardKind] = RewardKind.SPECIAL

    def __post_init__(self) -> None:
        title = (self.title or "").strip()
        if not title:
            raise ValidationError("Special rewards need a title.")
        object.__setattr__(self, "title", title)
        object.__setattr__(self, "description", (self.description or "").strip())

    def describe(self) -> str:
        return self.title

    def as_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "title": self.title, "description": self.description}


RewardSpec = Union[MoneyReward, PointsReward, SpecialReward]


def reward_from_dict(payload: Mapping[str, Any]) -> RewardSpec:
    """Build a :data:`RewardSpec` from its serialised ``{"type": ...}`` form."""

    if not isinstance(payload, Mapping):
        raise ValidationError("Reward must be a mapping with a 'type' key.")
    try:
        kind = RewardKind(payload.get("type"))
    except ValueError as exc:
        raise ValidationError(f"Unknown reward type: {payload.get('type')!r}") from exc

    if kind is RewardKind.MONEY:
        if "title" in payload:
            raise ValidationError("Money rewards do not carry a title.")
        return MoneyReward(amount=payload.get("amount", 0))
    if kind is RewardKind.POINTS:
        if "title" in payload:
            raise ValidationError("Points rewards do not carry a title.")
        return PointsReward(amount=payload.get("amount", 0))
    if "amount" in payload:
        raise ValidationError("Special rewards do not carry an amount.")
    return SpecialReward(title=payload.get("title", ""), description=payload.get("description", ""))


def ensure_reward(reward: RewardSpec | Mapping[str, Any]) -> RewardSpec:
    if isinstance(reward, (MoneyReward, PointsReward, SpecialReward)):
        return reward
    return reward_from_dict(reward)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------
class TaskStatus(str, Enum):
    """Lifecycle of a task instance; only moves forward."""

    PENDING = "pending"
    COMPLETED = "completed"
    APPROVED = "approved"


class Recurrence(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @classmethod
    def parse(cls, value: "Recurrence | str | None") -> "Recurrence":
        if value is None or value == "":
            return cls.NONE
        if isinstance(value, Recurrence):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unsupported recurrence: {value!r}") from exc


@dataclass(slots=True)
class Task:
    """A chore assigned to a child together with the reward it pays."""

    id: str
    family_id: str
    assigned_to: str
    reward: RewardSpec
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    recurrence: Recurrence = Recurrence.NONE
    due_date: Optional[date] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    version: int = 0

    def mark_completed(self, *, when: datetime | None = None) -> None:
        if self.status is not TaskStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Task '{self.id}' is {self.status.value}; only pending tasks can be completed."
            )
        moment = when or datetime.utcnow()
        self.status = TaskStatus.COMPLETED
        self.completed_at = moment
        self.updated_at = moment

    def mark_approved(self, *, when: datetime | None = None) -> None:
        if self.status is not TaskStatus.COMPLETED:
            raise InvalidStateTransitionError(
                f"Task '{self.id}' is {self.status.value}; only completed tasks can be approved."
            )
        moment = when or datetime.utcnow()
        self.status = TaskStatus.APPROVED
        self.approved_at = moment
        self.updated_at = moment

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not Recurrence.NONE


@dataclass(slots=True)
class SettlementRecord:
    """Marker proving a task's reward was credited to a ledger."""

    task_id: str
    child_id: str
    applied_at: datetime = field(default_factory=datetime.utcnow)


__all__ = [
    "Actor",
    "ChildProfile",
    "Family",
    "MoneyReward",
    "PointsReward",
    "Recurrence",
    "RewardKind",
    "RewardSpec",
    "Role",
    "SettlementRecord",
    "SpecialReward",
    "Task",
    "TaskStatus",
    "ensure_reward",
    "reward_from_dict",
]

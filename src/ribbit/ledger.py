"""Reward ledger ("Ribbit Reserve") holding a child's money, points and special rewards."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional, Tuple
from uuid import uuid4

from .exceptions import InsufficientBalanceError, InvalidStateTransitionError, NotFoundError, ValidationError
from .models import MoneyReward, PointsReward, RewardSpec, SpecialReward
from .money import CENT, AmountLike, format_currency, require_positive, to_decimal, to_points, to_rate


class SpecialRewardStatus(str, Enum):
    """Lifecycle for special rewards; only moves forward."""

    AVAILABLE = "available"
    PENDING_REDEMPTION = "pending_redemption"
    REDEEMED = "redeemed"


@dataclass(slots=True)
class MoneyBalance:
    balance: Decimal = Decimal("0.00")
    interest_rate: Decimal = Decimal("0.0000")
    last_interest_applied: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.balance = require_positive(to_decimal(self.balance), allow_zero=True)
        self.interest_rate = to_rate(self.interest_rate)


@dataclass(slots=True)
class PointsBalance:
    balance: int = 0

    def __post_init__(self) -> None:
        self.balance = to_points(self.balance)
        if self.balance < 0:
            raise ValidationError("Points balance cannot be negative.")


@dataclass(slots=True)
class SpecialRewardEntry:
    """A special reward owned by a child, tied to the task or grant that created it."""

    id: str
    title: str
    settlement_key: str
    description: str = ""
    status: SpecialRewardStatus = SpecialRewardStatus.AVAILABLE
    dispense_key: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    requested_at: Optional[datetime] = None
    redeemed_at: Optional[datetime] = None

    def request(self, *, when: datetime | None = None, dispense_key: str | None = None) -> None:
        if self.status is not SpecialRewardStatus.AVAILABLE:
            raise InvalidStateTransitionError(f"Special reward '{self.title}' is not available.")
        self.status = SpecialRewardStatus.PENDING_REDEMPTION
        self.requested_at = when or datetime.utcnow()
        if dispense_key is not None:
            self.dispense_key = dispense_key

    def redeem(self, *, when: datetime | None = None) -> bool:
        """Mark the reward redeemed; returns ``False`` when it already was."""

        if self.status is SpecialRewardStatus.REDEEMED:
            return False
        if self.status is not SpecialRewardStatus.PENDING_REDEMPTION:
            raise InvalidStateTransitionError(f"Special reward '{self.title}' is not pending redemption.")
        self.status = SpecialRewardStatus.REDEEMED
        self.redeemed_at = when or datetime.utcnow()
        return True


@dataclass(slots=True)
class RewardLedger:
    """A child's balances. ``version`` is bumped by the store on every committed write."""

    child_id: str
    money: MoneyBalance = field(default_factory=MoneyBalance)
    points: PointsBalance = field(default_factory=PointsBalance)
    special_rewards: List[SpecialRewardEntry] = field(default_factory=list)
    version: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @property
    def available_rewards(self) -> Tuple[SpecialRewardEntry, ...]:
        return self.rewards_with_status(SpecialRewardStatus.AVAILABLE)

    @property
    def pending_rewards(self) -> Tuple[SpecialRewardEntry, ...]:
        return self.rewards_with_status(SpecialRewardStatus.PENDING_REDEMPTION)

    def rewards_with_status(self, status: SpecialRewardStatus) -> Tuple[SpecialRewardEntry, ...]:
        return tuple(entry for entry in self.special_rewards if entry.status is status)

    def find_special(self, reward_id: str) -> SpecialRewardEntry:
        for entry in self.special_rewards:
            if entry.id == reward_id:
                return entry
        raise NotFoundError(f"Special reward '{reward_id}' does not exist for child '{self.child_id}'.")

    def special_by_key(self, settlement_key: str) -> Optional[SpecialRewardEntry]:
        for entry in self.special_rewards:
            if entry.settlement_key == settlement_key:
                return entry
        return None

    # ------------------------------------------------------------------
    # Mutations; callers persist the result through a versioned write
    # ------------------------------------------------------------------
    def apply_reward(self, reward: RewardSpec, *, key: str, when: datetime | None = None) -> None:
        """Credit ``reward``, matching every reward kind explicitly."""

        if isinstance(reward, MoneyReward):
            self.credit_money(reward.amount)
        elif isinstance(reward, PointsReward):
            self.credit_points(reward.amount)
        elif isinstance(reward, SpecialReward):
            self.add_special_reward(reward.title, reward.description, key=key, when=when)
        else:
            raise ValidationError(f"Unsupported reward: {reward!r}")
        self.updated_at = when or datetime.utcnow()

    def credit_money(self, amount: AmountLike) -> Decimal:
        value = require_positive(to_decimal(amount))
        self.money.balance += value
        return value

    def debit_money(self, amount: AmountLike) -> Decimal:
        value = require_positive(to_decimal(amount))
        if self.money.balance < value:
            raise InsufficientBalanceError(
                f"Ledger for '{self.child_id}' holds {format_currency(self.money.balance)}; "
                f"cannot dispense {format_currency(value)}."
            )
        self.money.balance -= value
        return value

    def credit_points(self, amount: int) -> int:
        value = to_points(amount)
        if value <= 0:
            raise ValidationError("Points must be greater than zero.")
        self.points.balance += value
        return value

    def debit_points(self, amount: int) -> int:
        value = to_points(amount)
        if value <= 0:
            raise ValidationError("Points must be greater than zero.")
        if self.points.balance < value:
            raise InsufficientBalanceError(
                f"Ledger for '{self.child_id}' holds {self.points.balance} points; cannot dispense {value}."
            )
        self.points.balance -= value
        return value

    def add_special_reward(
        self,
        title: str,
        description: str = "",
        *,
        key: str,
        when: datetime | None = None,
    ) -> SpecialRewardEntry:
        """Append an available special reward; a key produces at most one entry."""

        existing = self.special_by_key(key)
        if existing is not None:
            return existing
        spec = SpecialReward(title=title, description=description)
        entry = SpecialRewardEntry(
            id=str(uuid4()),
            title=spec.title,
            description=spec.description,
            settlement_key=key,
            created_at=when or datetime.utcnow(),
        )
        self.special_rewards.append(entry)
        return entry

    def set_interest_rate(self, rate: AmountLike) -> Decimal:
        self.money.interest_rate = to_rate(rate)
        return self.money.interest_rate

    def apply_interest(self, *, when: datetime | None = None) -> Decimal:
        """Credit ``balance * interest_rate`` rounded to cents and return the amount."""

        interest = (self.money.balance * self.money.interest_rate).quantize(CENT, rounding=ROUND_HALF_UP)
        self.money.balance += interest
        self.money.last_interest_applied = when or datetime.utcnow()
        return interest


__all__ = [
    "MoneyBalance",
    "PointsBalance",
    "RewardLedger",
    "SpecialRewardEntry",
    "SpecialRewardStatus",
]

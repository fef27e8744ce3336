"""Settlement engine: exactly-once reward credits and race-safe ledger mutations.

Every mutation follows the same optimistic pattern: read the ledger at
version ``v``, apply the change to the private copy, and commit conditioned on
the stored ledger still being at ``v``. A lost race re-reads and re-applies
with bounded exponential backoff. Settlements additionally commit a
:class:`~ribbit.models.SettlementRecord` keyed by task id in the same write,
so a task's reward is credited at most once however often approval runs.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Optional, Tuple, TypeVar
from uuid import uuid4

from .api import ChangeFeed
from .config import RetryPolicy
from .exceptions import ConcurrencyConflictError, NotFoundError, ValidationError
from .ledger import RewardLedger, SpecialRewardEntry, SpecialRewardStatus
from .models import RewardSpec, SettlementRecord, SpecialReward, ensure_reward
from .money import AmountLike, require_positive, to_decimal, to_points, to_rate
from .ops import StructuredLogger
from .store import RibbitStore

T = TypeVar("T")

NO_CHANGE: Any = object()


@dataclass(frozen=True, slots=True)
class SettlementResult:
    task_id: str
    applied: bool
    ledger: RewardLedger
    entry: Optional[SpecialRewardEntry] = None


@dataclass(frozen=True, slots=True)
class RedemptionResult:
    entry: SpecialRewardEntry
    applied: bool
    ledger: RewardLedger


@dataclass(frozen=True, slots=True)
class InterestResult:
    amount: Decimal
    ledger: RewardLedger


class SettlementEngine:
    """Apply rewards, dispenses, redemptions and interest to reward ledgers."""

    def __init__(
        self,
        store: RibbitStore,
        *,
        retry: RetryPolicy | None = None,
        logger: StructuredLogger | None = None,
        changes: ChangeFeed | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._retry = retry or RetryPolicy.from_env()
        self._logger = logger or StructuredLogger()
        self._changes = changes or ChangeFeed(logger=self._logger)
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def open_ledger(self, child_id: str) -> RewardLedger:
        try:
            return self._store.get_ledger(child_id)
        except NotFoundError:
            pass
        try:
            return self._store.add_ledger(RewardLedger(child_id=child_id, created_at=self._clock()))
        except ConcurrencyConflictError:
            return self._store.get_ledger(child_id)

    def get_ledger(self, child_id: str) -> RewardLedger:
        return self._store.get_ledger(child_id)

    def ledgers_for(self, child_ids: Iterable[str]) -> Tuple[RewardLedger, ...]:
        return tuple(self._store.get_ledger(child_id) for child_id in child_ids)

    def is_settled(self, task_id: str) -> bool:
        return self._store.get_settlement(task_id) is not None

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    def settle(self, child_id: str, task_id: str, reward: RewardSpec | Mapping[str, Any]) -> SettlementResult:
        """Credit ``reward`` for ``task_id`` exactly once."""

        spec = ensure_reward(reward)

        def change(ledger: RewardLedger, now: datetime) -> Optional[SpecialRewardEntry]:
            ledger.apply_reward(spec, key=task_id, when=now)
            if isinstance(spec, SpecialReward):
                return ledger.special_by_key(task_id)
            return None

        committed = self._mutate(child_id, "settle", change, settlement_key=task_id)
        if committed is None:
            self._logger.log("settlement_skipped", child=child_id, task=task_id)
            return SettlementResult(task_id=task_id, applied=False, ledger=self._store.get_ledger(child_id))
        ledger, entry = committed
        self._logger.log(
            "settled",
            child=child_id,
            task=task_id,
            reward=spec.kind.value,
            amount=float(spec.amount) if not isinstance(spec, SpecialReward) else None,
            version=ledger.version,
        )
        return SettlementResult(task_id=task_id, applied=True, ledger=ledger, entry=entry)

    def grant_special(
        self,
        child_id: str,
        title: str,
        description: str = "",
        *,
        key: str | None = None,
    ) -> SpecialRewardEntry:
        """Grant a special reward outside of a task; repeated ``key`` values grant once."""

        grant_key = key or f"grant:{uuid4()}"
        spec = SpecialReward(title=title, description=description)

        def change(ledger: RewardLedger, now: datetime) -> SpecialRewardEntry:
            existing = ledger.special_by_key(grant_key)
            if existing is not None:
                return NO_CHANGE
            return ledger.add_special_reward(spec.title, spec.description, key=grant_key, when=now)

        ledger, entry = self._mutate(child_id, "grant_special", change)
        if entry is NO_CHANGE:
            return ledger.special_by_key(grant_key)
        self._logger.log("special_granted", child=child_id, reward=entry.id, key=grant_key)
        return entry

    # ------------------------------------------------------------------
    # Parent dispenses
    # ------------------------------------------------------------------
    def dispense_money(self, child_id: str, amount: AmountLike) -> RewardLedger:
        value = require_positive(to_decimal(amount))
        ledger, _ = self._mutate(child_id, "dispense_money", lambda ledger, now: ledger.debit_money(value))
        self._logger.log("money_dispensed", child=child_id, amount=float(value), balance=float(ledger.money.balance))
        return ledger

    def dispense_points(self, child_id: str, amount: int) -> RewardLedger:
        value = to_points(amount)
        if value <= 0:
            raise ValidationError("Points must be greater than zero.")
        ledger, _ = self._mutate(child_id, "dispense_points", lambda ledger, now: ledger.debit_points(value))
        self._logger.log("points_dispensed", child=child_id, amount=value, balance=ledger.points.balance)
        return ledger

    def dispense_special(self, child_id: str, reward_id: str) -> SpecialRewardEntry:
        """Hand over an available special reward, tagging it with a fresh dispense key."""

        dispense_key = f"dispense:{uuid4()}"

        def change(ledger: RewardLedger, now: datetime) -> SpecialRewardEntry:
            entry = ledger.find_special(reward_id)
            entry.request(when=now, dispense_key=dispense_key)
            return entry

        _, entry = self._mutate(child_id, "dispense_special", change)
        self._logger.log("special_dispensed", child=child_id, reward=reward_id, key=dispense_key)
        return entry

    # ------------------------------------------------------------------
    # Redemptions
    # ------------------------------------------------------------------
    def request_redemption(self, child_id: str, reward_id: str) -> SpecialRewardEntry:
        def change(ledger: RewardLedger, now: datetime) -> SpecialRewardEntry:
            entry = ledger.find_special(reward_id)
            entry.request(when=now)
            return entry

        _, entry = self._mutate(child_id, "request_redemption", change)
        self._logger.log("redemption_requested", child=child_id, reward=reward_id)
        return entry

    def approve_redemption(self, child_id: str, reward_id: str) -> RedemptionResult:
        """Mark a pending redemption redeemed; already redeemed entries are left alone.

        ``applied`` is true only for the call whose write did the redemption.
        """

        def change(ledger: RewardLedger, now: datetime) -> SpecialRewardEntry:
            entry = ledger.find_special(reward_id)
            if entry.status is SpecialRewardStatus.REDEEMED:
                return NO_CHANGE
            entry.redeem(when=now)
            return entry

        ledger, entry = self._mutate(child_id, "approve_redemption", change)
        if entry is NO_CHANGE:
            return RedemptionResult(entry=ledger.find_special(reward_id), applied=False, ledger=ledger)
        self._logger.log("redemption_approved", child=child_id, reward=reward_id)
        return RedemptionResult(entry=entry, applied=True, ledger=ledger)

    # ------------------------------------------------------------------
    # Interest
    # ------------------------------------------------------------------
    def set_interest_rate(self, child_id: str, rate: AmountLike) -> RewardLedger:
        value = to_rate(rate)
        ledger, _ = self._mutate(child_id, "set_interest_rate", lambda ledger, now: ledger.set_interest_rate(value))
        self._logger.log("interest_rate_set", child=child_id, rate=float(value))
        return ledger

    def apply_interest(self, child_id: str) -> InterestResult:
        """Credit one round of interest. Each call is an explicit event; nothing is time-gated."""

        ledger, interest = self._mutate(child_id, "apply_interest", lambda ledger, now: ledger.apply_interest(when=now))
        self._logger.log(
            "interest_applied",
            child=child_id,
            amount=float(interest),
            rate=float(ledger.money.interest_rate),
            balance=float(ledger.money.balance),
        )
        return InterestResult(amount=interest, ledger=ledger)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _mutate(
        self,
        child_id: str,
        operation: str,
        change: Callable[[RewardLedger, datetime], T],
        *,
        settlement_key: str | None = None,
    ) -> Optional[Tuple[RewardLedger, T]]:
        """Run ``change`` as a version-checked read-modify-write.

        Returns ``None`` when ``settlement_key`` has already been settled.
        """

        attempts = self._retry.max_attempts
        for attempt in range(1, attempts + 1):
            if settlement_key is not None and self._store.get_settlement(settlement_key) is not None:
                return None
            ledger = self._store.get_ledger(child_id)
            expected_version = ledger.version
            now = self._clock()
            outcome = change(ledger, now)
            if outcome is NO_CHANGE:
                return ledger, outcome
            ledger.updated_at = now
            record = None
            if settlement_key is not None:
                record = SettlementRecord(task_id=settlement_key, child_id=child_id, applied_at=now)
            try:
                committed = self._store.commit_ledger(ledger, expected_version=expected_version, settlement=record)
            except ConcurrencyConflictError:
                self._logger.log("ledger_conflict", child=child_id, operation=operation, attempt=attempt)
                if attempt < attempts:
                    self._sleep(self._retry.delay(attempt))
                continue
            self._changes.dispatch(
                {"event": "ledger_changed", "child": child_id, "operation": operation, "version": committed.version}
            )
            return committed, outcome
        raise ConcurrencyConflictError(
            f"Ledger for '{child_id}' kept changing during {operation}; gave up after {attempts} attempts.",
            attempts=attempts,
        )


__all__ = ["InterestResult", "NO_CHANGE", "RedemptionResult", "SettlementEngine", "SettlementResult"]

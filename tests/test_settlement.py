from decimal import Decimal

import pytest

from ribbit.api import ChangeFeed
from ribbit.config import RetryPolicy
from ribbit.exceptions import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from ribbit.ledger import SpecialRewardStatus
from ribbit.models import MoneyReward, PointsReward, SpecialReward
from ribbit.ops import StructuredLogger
from ribbit.settlement import SettlementEngine
from ribbit.store import MemoryStore


class RacingStore(MemoryStore):
    """Commits a rival +1.00 credit right before each of the next ``interference`` ledger commits."""

    def __init__(self) -> None:
        super().__init__()
        self.interference = 0

    def commit_ledger(self, ledger, *, expected_version, settlement=None):
        if self.interference:
            self.interference -= 1
            rival = self.get_ledger(ledger.child_id)
            rival.credit_money(1)
            super().commit_ledger(rival, expected_version=rival.version)
        return super().commit_ledger(ledger, expected_version=expected_version, settlement=settlement)


def make_engine(store=None, *, attempts: int = 5, sleeps=None):
    store = store or MemoryStore()
    logger = StructuredLogger()
    changes = ChangeFeed(logger=logger)
    engine = SettlementEngine(
        store,
        retry=RetryPolicy(max_attempts=attempts, base_delay=0.01, max_delay=0.05, jitter=False),
        logger=logger,
        changes=changes,
        sleep=(sleeps.append if sleeps is not None else (lambda seconds: None)),
    )
    engine.open_ledger("ava")
    return store, engine, logger, changes


def test_open_ledger_is_idempotent() -> None:
    _, engine, _, _ = make_engine()

    first = engine.get_ledger("ava")
    again = engine.open_ledger("ava")

    assert again.version == first.version == 1
    assert again.money.balance == Decimal("0.00")


def test_settle_credits_money_exactly_once() -> None:
    _, engine, logger, _ = make_engine()

    first = engine.settle("ava", "task-1", MoneyReward("5.00"))
    second = engine.settle("ava", "task-1", MoneyReward("5.00"))

    assert first.applied is True
    assert second.applied is False
    assert engine.get_ledger("ava").money.balance == Decimal("5.00")
    assert engine.is_settled("task-1")
    assert len(logger.events("settled")) == 1
    assert len(logger.events("settlement_skipped")) == 1


def test_settle_points_accepts_serialised_reward() -> None:
    _, engine, _, _ = make_engine()

    result = engine.settle("ava", "task-1", {"type": "points", "amount": 15})

    assert result.ledger.points.balance == 15
    assert result.entry is None


def test_settle_special_reward_is_keyed_by_task() -> None:
    _, engine, _, _ = make_engine()

    result = engine.settle("ava", "task-9", SpecialReward("Movie Night"))
    engine.settle("ava", "task-9", SpecialReward("Movie Night"))

    ledger = engine.get_ledger("ava")
    assert result.entry is not None
    assert result.entry.settlement_key == "task-9"
    assert result.entry.status is SpecialRewardStatus.AVAILABLE
    assert len(ledger.special_rewards) == 1


def test_settle_without_ledger_raises_not_found() -> None:
    _, engine, _, _ = make_engine()

    with pytest.raises(NotFoundError):
        engine.settle("ghost", "task-1", MoneyReward(1))
    assert not engine.is_settled("task-1")


def test_overdraw_leaves_ledger_untouched() -> None:
    _, engine, _, _ = make_engine()
    engine.settle("ava", "seed", MoneyReward(100))
    before = engine.get_ledger("ava")

    with pytest.raises(InsufficientBalanceError):
        engine.dispense_money("ava", "100.01")

    after = engine.get_ledger("ava")
    assert after.money.balance == Decimal("100.00")
    assert after.version == before.version


def test_dispense_validation() -> None:
    _, engine, _, _ = make_engine()
    engine.settle("ava", "seed", PointsReward(10))

    with pytest.raises(ValidationError):
        engine.dispense_money("ava", 0)
    with pytest.raises(ValidationError):
        engine.dispense_points("ava", 0)
    with pytest.raises(InsufficientBalanceError):
        engine.dispense_points("ava", 11)

    ledger = engine.dispense_points("ava", 4)
    assert ledger.points.balance == 6


def test_dispense_special_marks_entry_with_dispense_key() -> None:
    _, engine, logger, _ = make_engine()
    entry = engine.settle("ava", "task-1", SpecialReward("Movie Night")).entry

    dispensed = engine.dispense_special("ava", entry.id)

    assert dispensed.status is SpecialRewardStatus.PENDING_REDEMPTION
    assert dispensed.dispense_key.startswith("dispense:")
    assert logger.events("special_dispensed")[-1]["reward"] == entry.id
    with pytest.raises(InvalidStateTransitionError):
        engine.dispense_special("ava", entry.id)


def test_redemption_approval_is_idempotent() -> None:
    _, engine, _, _ = make_engine()
    entry = engine.grant_special("ava", "Ice cream trip")

    with pytest.raises(InvalidStateTransitionError):
        engine.approve_redemption("ava", entry.id)

    engine.request_redemption("ava", entry.id)
    redeemed = engine.approve_redemption("ava", entry.id)
    version = engine.get_ledger("ava").version
    again = engine.approve_redemption("ava", entry.id)

    assert redeemed.applied and not again.applied
    assert redeemed.entry.status is SpecialRewardStatus.REDEEMED
    assert again.entry.redeemed_at == redeemed.entry.redeemed_at
    assert engine.get_ledger("ava").version == version


def test_grant_special_with_key_grants_once() -> None:
    _, engine, logger, _ = make_engine()

    first = engine.grant_special("ava", "Stay up late", key="birthday-2025")
    second = engine.grant_special("ava", "Stay up late", key="birthday-2025")

    assert first.id == second.id
    assert first.settlement_key == "birthday-2025"
    assert len(engine.get_ledger("ava").special_rewards) == 1
    assert len(logger.events("special_granted")) == 1


def test_interest_rate_and_application() -> None:
    _, engine, _, _ = make_engine()
    engine.settle("ava", "seed", MoneyReward(100))

    engine.set_interest_rate("ava", "0.05")
    result = engine.apply_interest("ava")

    assert result.amount == Decimal("5.00")
    assert result.ledger.money.balance == Decimal("105.00")
    assert result.ledger.money.last_interest_applied is not None
    with pytest.raises(ValidationError):
        engine.set_interest_rate("ava", 2)


def test_lost_race_is_retried_against_fresh_state() -> None:
    store = RacingStore()
    sleeps: list[float] = []
    _, engine, logger, _ = make_engine(store, sleeps=sleeps)
    store.interference = 1

    result = engine.settle("ava", "task-1", MoneyReward(10))

    assert result.applied is True
    assert engine.get_ledger("ava").money.balance == Decimal("11.00")
    assert len(logger.events("ledger_conflict")) == 1
    assert sleeps == [0.01]


def test_retry_budget_is_bounded() -> None:
    store = RacingStore()
    sleeps: list[float] = []
    _, engine, _, _ = make_engine(store, attempts=3, sleeps=sleeps)
    engine.settle("ava", "seed", MoneyReward(10))
    store.interference = 100

    with pytest.raises(ConcurrencyConflictError) as excinfo:
        engine.dispense_money("ava", 1)

    assert excinfo.value.attempts == 3
    assert sleeps == [0.01, 0.02]


def test_committed_changes_reach_listeners() -> None:
    _, engine, _, changes = make_engine()
    events: list[dict] = []
    changes.register(events.append)

    engine.settle("ava", "task-1", MoneyReward(3))

    assert events[-1]["event"] == "ledger_changed"
    assert events[-1]["operation"] == "settle"
    assert events[-1]["version"] == 2

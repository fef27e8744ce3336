from datetime import date, datetime
from decimal import Decimal

import pytest

pytest.importorskip("sqlmodel")

from ribbit.config import RetryPolicy
from ribbit.exceptions import ConcurrencyConflictError, NotFoundError, RibbitError
from ribbit.ledger import RewardLedger, SpecialRewardStatus
from ribbit.models import (
    ChildProfile,
    Family,
    MoneyReward,
    Recurrence,
    SettlementRecord,
    SpecialReward,
    Task,
    TaskStatus,
)
from ribbit.ops import StructuredLogger
from ribbit.persistence import LedgerRow, SettlementRow, SqlStore, TaskRow, create_sql_engine
from ribbit.service import RibbitReserve


def make_store() -> SqlStore:
    store = SqlStore(create_sql_engine("sqlite://"))
    store.add_family(Family(id="fam", name="Frog Pond", member_ids=frozenset({"mom"})))
    store.add_child(ChildProfile(id="ava", family_id="fam", display_name="Ava"))
    store.add_ledger(RewardLedger(child_id="ava"))
    return store


def make_task(task_id: str, created_at: datetime, **overrides) -> Task:
    values = dict(
        id=task_id,
        family_id="fam",
        assigned_to="ava",
        reward=MoneyReward("5.00"),
        title="Dishes",
        created_at=created_at,
    )
    values.update(overrides)
    return Task(**values)


def test_families_and_children_round_trip() -> None:
    store = make_store()
    store.add_child(ChildProfile(id="ben", family_id="fam", display_name="Ben", created_at=datetime(2030, 1, 1)))

    family = store.get_family("fam")
    family.member_ids = family.member_ids | {"dad"}
    store.save_family(family)

    assert store.get_family("fam").member_ids == frozenset({"mom", "dad"})
    assert [child.id for child in store.list_children("fam")] == ["ava", "ben"]
    with pytest.raises(RibbitError):
        store.add_family(Family(id="fam", name="Again"))
    with pytest.raises(NotFoundError):
        store.get_child("nobody")


def test_task_round_trip_and_versioned_replace() -> None:
    store = make_store()
    stored = store.add_task(
        make_task(
            "t1",
            datetime(2025, 4, 1, 8),
            reward=SpecialReward("Movie Night", "Friday"),
            recurrence=Recurrence.WEEKLY,
            due_date=date(2025, 4, 1),
        )
    )

    assert stored.version == 1
    assert stored.reward == SpecialReward("Movie Night", "Friday")
    assert stored.due_date == date(2025, 4, 1)

    stored.mark_completed(when=datetime(2025, 4, 1, 9))
    updated = store.replace_task(stored, expected_version=1)
    assert updated.version == 2
    assert updated.status is TaskStatus.COMPLETED

    with pytest.raises(ConcurrencyConflictError):
        store.replace_task(stored, expected_version=1)
    with pytest.raises(ConcurrencyConflictError):
        store.delete_task("t1", expected_version=1)
    store.delete_task("t1", expected_version=2)
    with pytest.raises(NotFoundError):
        store.get_task("t1")
    with pytest.raises(NotFoundError):
        store.delete_task("t1")


def test_list_tasks_filters_newest_first() -> None:
    store = make_store()
    store.add_child(ChildProfile(id="ben", family_id="fam", display_name="Ben"))
    store.add_task(make_task("old", datetime(2025, 4, 1)))
    store.add_task(make_task("new", datetime(2025, 4, 2)))
    store.add_task(make_task("bens", datetime(2025, 4, 3), assigned_to="ben", status=TaskStatus.COMPLETED))

    assert [task.id for task in store.list_tasks("fam")] == ["bens", "new", "old"]
    assert [task.id for task in store.list_tasks("fam", assigned_to="ava")] == ["new", "old"]
    assert [task.id for task in store.list_tasks("fam", status=TaskStatus.COMPLETED)] == ["bens"]


def test_ledger_commit_is_version_checked_and_settles_once() -> None:
    store = make_store()
    ledger = store.get_ledger("ava")
    ledger.apply_reward(SpecialReward("Movie Night"), key="t1")
    ledger.credit_money("12.34")
    ledger.set_interest_rate("0.0525")
    record = SettlementRecord(task_id="t1", child_id="ava")

    committed = store.commit_ledger(ledger, expected_version=1, settlement=record)

    assert committed.version == 2
    assert committed.money.balance == Decimal("12.34")
    assert committed.money.interest_rate == Decimal("0.0525")
    assert committed.special_rewards[0].settlement_key == "t1"
    assert store.get_settlement("t1").child_id == "ava"

    with pytest.raises(ConcurrencyConflictError):
        store.commit_ledger(ledger, expected_version=1)
    with pytest.raises(ConcurrencyConflictError):
        store.commit_ledger(committed, expected_version=2, settlement=record)
    assert store.get_ledger("ava").version == 2


def test_special_reward_state_survives_round_trip() -> None:
    store = make_store()
    ledger = store.get_ledger("ava")
    first = ledger.add_special_reward("Zoo trip", key="grant:1")
    ledger.add_special_reward("Pizza", key="grant:2")
    first.request(when=datetime(2025, 4, 2), dispense_key="dispense:1")
    store.commit_ledger(ledger, expected_version=1)

    loaded = store.get_ledger("ava")

    assert [entry.title for entry in loaded.special_rewards] == ["Zoo trip", "Pizza"]
    assert loaded.special_rewards[0].status is SpecialRewardStatus.PENDING_REDEMPTION
    assert loaded.special_rewards[0].dispense_key == "dispense:1"

    loaded.special_rewards[0].redeem(when=datetime(2025, 4, 3))
    store.commit_ledger(loaded, expected_version=2)
    assert store.get_ledger("ava").rewards_with_status(SpecialRewardStatus.REDEEMED)[0].title == "Zoo trip"


def test_duplicate_ledger_and_child_removal() -> None:
    store = make_store()

    with pytest.raises(ConcurrencyConflictError):
        store.add_ledger(RewardLedger(child_id="ava"))

    store.remove_child("ava")
    with pytest.raises(NotFoundError):
        store.get_ledger("ava")
    with pytest.raises(NotFoundError):
        store.commit_ledger(RewardLedger(child_id="ava"), expected_version=1)


def test_service_runs_on_sql_store() -> None:
    reserve = RibbitReserve(
        SqlStore(create_sql_engine("sqlite://")),
        logger=StructuredLogger(),
        retry=RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, jitter=False),
    )
    _, parent = reserve.register_family("Frog Pond", "mom", family_id="fam")
    reserve.add_child(parent, "Ava", "1234", child_id="ava")
    ava = reserve.login_child("ava", "1234")
    task = reserve.create_task(parent, "ava", MoneyReward("5.00"), "weekly", date(2025, 4, 1), title="Trash")

    reserve.complete_task(ava, task.id)
    result = reserve.approve_task(parent, task.id)

    assert reserve.ledger(parent, "ava").money.balance == Decimal("5.00")
    assert result.next_task.due_date == date(2025, 4, 8)
    assert reserve.engine.is_settled(task.id)


def test_timestamps_are_stored_as_utc_and_read_back_naive() -> None:
    store = make_store()
    created = datetime(2025, 4, 1, 8, 30, 15)
    task = store.add_task(make_task("t1", created))
    task.mark_completed(when=datetime(2025, 4, 1, 9))
    completed = store.replace_task(task, expected_version=1)
    ledger = store.get_ledger("ava")
    ledger.credit_money("1.00")
    ledger.updated_at = datetime(2025, 4, 1, 10)
    store.commit_ledger(
        ledger,
        expected_version=1,
        settlement=SettlementRecord(task_id="t1", child_id="ava", applied_at=datetime(2025, 4, 1, 10)),
    )

    assert completed.created_at == created
    assert completed.completed_at == datetime(2025, 4, 1, 9)
    assert completed.completed_at.tzinfo is None
    assert store.get_ledger("ava").updated_at == datetime(2025, 4, 1, 10)
    assert store.get_settlement("t1").applied_at == datetime(2025, 4, 1, 10)
    for column in (TaskRow.__table__.c.created_at, LedgerRow.__table__.c.updated_at, SettlementRow.__table__.c.applied_at):
        assert column.type.timezone is True

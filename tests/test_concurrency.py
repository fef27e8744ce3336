import threading
from decimal import Decimal

import pytest

from ribbit.config import RetryPolicy
from ribbit.directory import FamilyDirectory
from ribbit.exceptions import InvalidStateTransitionError
from ribbit.models import Actor, MoneyReward
from ribbit.notifications import NotificationType
from ribbit.ops import StructuredLogger
from ribbit.service import RibbitReserve
from ribbit.settlement import SettlementEngine
from ribbit.store import MemoryStore
from ribbit.tasks import ApprovalResult, TaskLifecycleManager

PATIENT_RETRY = RetryPolicy(max_attempts=200, base_delay=0.0005, max_delay=0.005)


def run_together(*jobs):
    barrier = threading.Barrier(len(jobs))
    outcomes: list = [None] * len(jobs)

    def runner(index, job):
        barrier.wait()
        try:
            outcomes[index] = job()
        except Exception as exc:  # collected for assertions
            outcomes[index] = exc

    threads = [threading.Thread(target=runner, args=(index, job)) for index, job in enumerate(jobs)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


def drain_against_settlement(engine: SettlementEngine, logger: StructuredLogger) -> None:
    engine.open_ledger("ava")
    engine.settle("ava", "seed", MoneyReward(100))

    jobs = [lambda: engine.dispense_money("ava", 10) for _ in range(10)]
    jobs.append(lambda: engine.settle("ava", "task-50", MoneyReward(50)))
    outcomes = run_together(*jobs)

    assert not [outcome for outcome in outcomes if isinstance(outcome, Exception)]
    ledger = engine.get_ledger("ava")
    assert ledger.money.balance == Decimal("50.00")
    assert ledger.version == 2 + 11
    assert len(logger.events("money_dispensed")) == 10


def test_concurrent_dispenses_and_settlement_do_not_lose_updates() -> None:
    logger = StructuredLogger(max_entries=5000)
    engine = SettlementEngine(MemoryStore(io_delay=0.001), retry=PATIENT_RETRY, logger=logger)

    drain_against_settlement(engine, logger)


def test_default_retry_policy_survives_eleven_writers() -> None:
    for _ in range(5):
        logger = StructuredLogger(max_entries=5000)
        engine = SettlementEngine(MemoryStore(io_delay=0.001), logger=logger)

        drain_against_settlement(engine, logger)


def test_in_memory_sql_store_does_not_lose_updates() -> None:
    pytest.importorskip("sqlmodel")
    from ribbit.persistence import SqlStore, create_sql_engine

    for _ in range(5):
        logger = StructuredLogger(max_entries=5000)
        engine = SettlementEngine(SqlStore(create_sql_engine("sqlite://")), retry=PATIENT_RETRY, logger=logger)

        drain_against_settlement(engine, logger)


def test_concurrent_settlements_of_one_task_credit_once() -> None:
    store = MemoryStore(io_delay=0.001)
    engine = SettlementEngine(store, retry=PATIENT_RETRY, logger=StructuredLogger())
    engine.open_ledger("ava")

    outcomes = run_together(*[lambda: engine.settle("ava", "task-1", MoneyReward(5)) for _ in range(8)])

    assert sum(1 for outcome in outcomes if outcome.applied) == 1
    assert engine.get_ledger("ava").money.balance == Decimal("5.00")


def test_concurrent_approvals_credit_once() -> None:
    store = MemoryStore(io_delay=0.001)
    logger = StructuredLogger()
    directory = FamilyDirectory(store, logger=logger)
    directory.register_family("Frog Pond", "mom", family_id="fam")
    directory.add_parent("fam", "dad")
    directory.add_child("fam", "Ava", "1234", child_id="ava")
    engine = SettlementEngine(store, retry=PATIENT_RETRY, logger=logger)
    manager = TaskLifecycleManager(store, directory, engine, logger=logger, retry=PATIENT_RETRY)
    task = manager.create_task("fam", "ava", MoneyReward(5))
    manager.complete_task(task.id, Actor.child("ava", "fam"))

    outcomes = run_together(
        lambda: manager.approve_task(task.id, Actor.parent("mom", "fam")),
        lambda: manager.approve_task(task.id, Actor.parent("dad", "fam")),
    )

    approvals = [outcome for outcome in outcomes if isinstance(outcome, ApprovalResult)]
    rejections = [outcome for outcome in outcomes if isinstance(outcome, InvalidStateTransitionError)]
    assert len(approvals) == 1
    assert len(rejections) == 1
    assert engine.get_ledger("ava").money.balance == Decimal("5.00")


def test_concurrent_redemption_approvals_notify_once() -> None:
    reserve = RibbitReserve(MemoryStore(io_delay=0.001), logger=StructuredLogger(), retry=PATIENT_RETRY)
    _, mom = reserve.register_family("Frog Pond", "mom", family_id="fam")
    dad = reserve.add_parent(mom, "dad")
    reserve.add_child(mom, "Ava", "1234", child_id="ava")
    ava = reserve.login_child("ava", "1234")
    entry = reserve.grant_special(mom, "ava", "Movie Night")
    reserve.request_redemption(ava, entry.id)

    outcomes = run_together(
        lambda: reserve.approve_redemption(mom, "ava", entry.id),
        lambda: reserve.approve_redemption(dad, "ava", entry.id),
    )

    assert not [outcome for outcome in outcomes if isinstance(outcome, Exception)]
    approvals = reserve.notifications.for_user("ava")
    assert [note.type for note in approvals].count(NotificationType.SPECIAL_REDEMPTION_APPROVED) == 1

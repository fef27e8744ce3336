"""SQLModel persistence for Ribbit Reserve.

Money is stored in integer cents and interest rates in basis points. Ledger
and task writes are conditional ``UPDATE ... WHERE version = :expected``
statements; a zero row count means another writer got there first.

Timestamps are naive UTC in the domain model and timezone-aware UTC in the
database. In-memory SQLite shares a single connection between threads, so
:class:`SqlStore` runs one session at a time against such an engine.
"""
from __future__ import annotations

import json
import threading
from contextlib import contextmanager, nullcontext
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import DateTime, UniqueConstraint, delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, desc, select

from .config import DATABASE_URL
from .exceptions import ConcurrencyConflictError, NotFoundError, RibbitError
from .ledger import MoneyBalance, PointsBalance, RewardLedger, SpecialRewardEntry, SpecialRewardStatus
from .models import ChildProfile, Family, Recurrence, SettlementRecord, Task, TaskStatus, reward_from_dict
from .money import from_cents, to_cents
from .store import RibbitStore

RATE_SCALE = 10_000
UTC_DATETIME = DateTime(timezone=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class FamilyRow(SQLModel, table=True):
    __tablename__ = "family"

    id: str = Field(primary_key=True)
    name: str
    member_ids: str = "[]"
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTC_DATETIME)


class ChildRow(SQLModel, table=True):
    __tablename__ = "child"

    id: str = Field(primary_key=True)
    family_id: str = Field(index=True)
    display_name: str
    pin_hash: str = ""
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTC_DATETIME)


class TaskRow(SQLModel, table=True):
    __tablename__ = "task"

    id: str = Field(primary_key=True)
    family_id: str = Field(index=True)
    assigned_to: str = Field(index=True)
    title: str = ""
    description: str = ""
    status: str = TaskStatus.PENDING.value
    reward: str  # JSON: {"type": ..., ...}
    recurrence: str = Recurrence.NONE.value
    due_date: Optional[date] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTC_DATETIME)
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)
    approved_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)
    version: int = 1


class LedgerRow(SQLModel, table=True):
    __tablename__ = "reward_ledger"

    child_id: str = Field(primary_key=True)
    money_balance_cents: int = 0
    interest_rate_bps: int = 0
    last_interest_applied: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)
    points_balance: int = 0
    version: int = 1
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTC_DATETIME)
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)


class SpecialRewardRow(SQLModel, table=True):
    __tablename__ = "special_reward"
    __table_args__ = (UniqueConstraint("child_id", "settlement_key"),)

    id: str = Field(primary_key=True)
    child_id: str = Field(index=True)
    position: int = 0
    title: str
    description: str = ""
    status: str = SpecialRewardStatus.AVAILABLE.value
    settlement_key: str
    dispense_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTC_DATETIME)
    requested_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)
    redeemed_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)


class SettlementRow(SQLModel, table=True):
    __tablename__ = "settlement"

    task_id: str = Field(primary_key=True)
    child_id: str = Field(index=True)
    applied_at: datetime = Field(default_factory=utc_now, sa_type=UTC_DATETIME)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------
def create_sql_engine(url: str = DATABASE_URL, *, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""

    kwargs: dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


# ---------------------------------------------------------------------------
# Row <-> domain conversion
# ---------------------------------------------------------------------------
def _family_from_row(row: FamilyRow) -> Family:
    return Family(
        id=row.id,
        name=row.name,
        member_ids=frozenset(json.loads(row.member_ids or "[]")),
        created_at=_naive(row.created_at),
    )


def _child_from_row(row: ChildRow) -> ChildProfile:
    return ChildProfile(
        id=row.id,
        family_id=row.family_id,
        display_name=row.display_name,
        pin_hash=row.pin_hash,
        created_at=_naive(row.created_at),
    )


def _task_values(task: Task) -> dict[str, Any]:
    return {
        "family_id": task.family_id,
        "assigned_to": task.assigned_to,
        "title": task.title,
        "description": task.description,
        "status": task.status.value,
        "reward": json.dumps(task.reward.as_dict(), sort_keys=True),
        "recurrence": task.recurrence.value,
        "due_date": task.due_date,
        "created_by": task.created_by,
        "created_at": _aware(task.created_at),
        "updated_at": _aware(task.updated_at),
        "completed_at": _aware(task.completed_at),
        "approved_at": _aware(task.approved_at),
    }


def _task_from_row(row: TaskRow) -> Task:
    return Task(
        id=row.id,
        family_id=row.family_id,
        assigned_to=row.assigned_to,
        reward=reward_from_dict(json.loads(row.reward)),
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        recurrence=Recurrence(row.recurrence),
        due_date=row.due_date,
        created_by=row.created_by,
        created_at=_naive(row.created_at),
        updated_at=_naive(row.updated_at),
        completed_at=_naive(row.completed_at),
        approved_at=_naive(row.approved_at),
        version=row.version,
    )


def _ledger_values(ledger: RewardLedger) -> dict[str, Any]:
    return {
        "money_balance_cents": to_cents(ledger.money.balance),
        "interest_rate_bps": int(ledger.money.interest_rate * RATE_SCALE),
        "last_interest_applied": _aware(ledger.money.last_interest_applied),
        "points_balance": ledger.points.balance,
        "created_at": _aware(ledger.created_at),
        "updated_at": _aware(ledger.updated_at),
    }


def _special_rows(child_id: str, entries: Iterable[SpecialRewardEntry]) -> List[SpecialRewardRow]:
    return [
        SpecialRewardRow(
            id=entry.id,
            child_id=child_id,
            position=position,
            title=entry.title,
            description=entry.description,
            status=entry.status.value,
            settlement_key=entry.settlement_key,
            dispense_key=entry.dispense_key,
            created_at=_aware(entry.created_at),
            requested_at=_aware(entry.requested_at),
            redeemed_at=_aware(entry.redeemed_at),
        )
        for position, entry in enumerate(entries)
    ]


def _ledger_from_rows(row: LedgerRow, specials: Iterable[SpecialRewardRow]) -> RewardLedger:
    return RewardLedger(
        child_id=row.child_id,
        money=MoneyBalance(
            balance=from_cents(row.money_balance_cents),
            interest_rate=Decimal(row.interest_rate_bps) / RATE_SCALE,
            last_interest_applied=_naive(row.last_interest_applied),
        ),
        points=PointsBalance(balance=row.points_balance),
        special_rewards=[
            SpecialRewardEntry(
                id=special.id,
                title=special.title,
                description=special.description,
                settlement_key=special.settlement_key,
                status=SpecialRewardStatus(special.status),
                dispense_key=special.dispense_key,
                created_at=_naive(special.created_at),
                requested_at=_naive(special.requested_at),
                redeemed_at=_naive(special.redeemed_at),
            )
            for special in specials
        ],
        version=row.version,
        created_at=_naive(row.created_at),
        updated_at=_naive(row.updated_at),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class SqlStore(RibbitStore):
    """:class:`RibbitStore` on top of a SQLAlchemy engine."""

    def __init__(self, engine: Engine, *, create_tables: bool = True) -> None:
        self.engine = engine
        # StaticPool hands every session the same DBAPI connection.
        self._serial = threading.RLock() if isinstance(engine.pool, StaticPool) else nullcontext()
        if create_tables:
            create_db_and_tables(engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._serial, Session(self.engine, expire_on_commit=False) as session:
            yield session

    # Families ---------------------------------------------------------------
    def add_family(self, family: Family) -> Family:
        with self._session() as session:
            if session.get(FamilyRow, family.id) is not None:
                raise RibbitError(f"Family '{family.id}' already exists.")
            session.add(
                FamilyRow(
                    id=family.id,
                    name=family.name,
                    member_ids=json.dumps(sorted(family.member_ids)),
                    created_at=_aware(family.created_at),
                )
            )
            session.commit()
        return self.get_family(family.id)

    def get_family(self, family_id: str) -> Family:
        with self._session() as session:
            row = session.get(FamilyRow, family_id)
            if row is None:
                raise NotFoundError(f"Family '{family_id}' does not exist.")
            return _family_from_row(row)

    def save_family(self, family: Family) -> Family:
        with self._session() as session:
            row = session.get(FamilyRow, family.id)
            if row is None:
                raise NotFoundError(f"Family '{family.id}' does not exist.")
            row.name = family.name
            row.member_ids = json.dumps(sorted(family.member_ids))
            session.add(row)
            session.commit()
            return _family_from_row(row)

    # Children ---------------------------------------------------------------
    def add_child(self, child: ChildProfile) -> ChildProfile:
        with self._session() as session:
            if session.get(ChildRow, child.id) is not None:
                raise RibbitError(f"Child '{child.id}' already exists.")
            row = ChildRow(
                id=child.id,
                family_id=child.family_id,
                display_name=child.display_name,
                pin_hash=child.pin_hash,
                created_at=_aware(child.created_at),
            )
            session.add(row)
            session.commit()
            return _child_from_row(row)

    def get_child(self, child_id: str) -> ChildProfile:
        with self._session() as session:
            row = session.get(ChildRow, child_id)
            if row is None:
                raise NotFoundError(f"Child '{child_id}' does not exist.")
            return _child_from_row(row)

    def list_children(self, family_id: str) -> Tuple[ChildProfile, ...]:
        with self._session() as session:
            rows = session.exec(
                select(ChildRow).where(ChildRow.family_id == family_id).order_by(ChildRow.created_at, ChildRow.id)
            ).all()
            return tuple(_child_from_row(row) for row in rows)

    def remove_child(self, child_id: str) -> None:
        with self._session() as session:
            row = session.get(ChildRow, child_id)
            if row is None:
                raise NotFoundError(f"Child '{child_id}' does not exist.")
            connection = session.connection()
            connection.execute(delete(SpecialRewardRow).where(SpecialRewardRow.child_id == child_id))
            connection.execute(delete(LedgerRow).where(LedgerRow.child_id == child_id))
            session.delete(row)
            session.commit()

    # Tasks ------------------------------------------------------------------
    def add_task(self, task: Task) -> Task:
        with self._session() as session:
            if session.get(TaskRow, task.id) is not None:
                raise RibbitError(f"Task '{task.id}' already exists.")
            row = TaskRow(id=task.id, version=1, **_task_values(task))
            session.add(row)
            session.commit()
            return _task_from_row(row)

    def get_task(self, task_id: str) -> Task:
        with self._session() as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise NotFoundError(f"Task '{task_id}' does not exist.")
            return _task_from_row(row)

    def list_tasks(
        self,
        family_id: str,
        *,
        assigned_to: str | None = None,
        status: TaskStatus | None = None,
    ) -> Tuple[Task, ...]:
        query = select(TaskRow).where(TaskRow.family_id == family_id)
        if assigned_to is not None:
            query = query.where(TaskRow.assigned_to == assigned_to)
        if status is not None:
            query = query.where(TaskRow.status == status.value)
        with self._session() as session:
            rows = session.exec(query.order_by(desc(TaskRow.created_at))).all()
            return tuple(_task_from_row(row) for row in rows)

    def replace_task(self, task: Task, *, expected_version: int) -> Task:
        with self._session() as session:
            result = session.connection().execute(
                update(TaskRow)
                .where(TaskRow.id == task.id, TaskRow.version == expected_version)
                .values(version=expected_version + 1, **_task_values(task))
            )
            if result.rowcount != 1:
                session.rollback()
                self._raise_task_conflict(session, task.id, expected_version)
            session.commit()
        return self.get_task(task.id)

    def delete_task(self, task_id: str, *, expected_version: int | None = None) -> None:
        statement = delete(TaskRow).where(TaskRow.id == task_id)
        if expected_version is not None:
            statement = statement.where(TaskRow.version == expected_version)
        with self._session() as session:
            result = session.connection().execute(statement)
            if result.rowcount != 1:
                session.rollback()
                self._raise_task_conflict(session, task_id, expected_version)
            session.commit()

    def _raise_task_conflict(self, session: Session, task_id: str, expected_version: int | None) -> None:
        current = session.get(TaskRow, task_id)
        if current is None:
            raise NotFoundError(f"Task '{task_id}' does not exist.")
        raise ConcurrencyConflictError(f"Task '{task_id}' is at version {current.version}, expected {expected_version}.")

    # Ledgers ----------------------------------------------------------------
    def add_ledger(self, ledger: RewardLedger) -> RewardLedger:
        with self._session() as session:
            if session.get(LedgerRow, ledger.child_id) is not None:
                raise ConcurrencyConflictError(f"Ledger for '{ledger.child_id}' already exists.")
            session.add(LedgerRow(child_id=ledger.child_id, version=1, **_ledger_values(ledger)))
            session.add_all(_special_rows(ledger.child_id, ledger.special_rewards))
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConcurrencyConflictError(f"Ledger for '{ledger.child_id}' already exists.") from exc
        return self.get_ledger(ledger.child_id)

    def get_ledger(self, child_id: str) -> RewardLedger:
        with self._session() as session:
            row = session.get(LedgerRow, child_id)
            if row is None:
                raise NotFoundError(f"Reward ledger for '{child_id}' does not exist.")
            specials = session.exec(
                select(SpecialRewardRow)
                .where(SpecialRewardRow.child_id == child_id)
                .order_by(SpecialRewardRow.position)
            ).all()
            return _ledger_from_rows(row, specials)

    def commit_ledger(
        self,
        ledger: RewardLedger,
        *,
        expected_version: int,
        settlement: SettlementRecord | None = None,
    ) -> RewardLedger:
        with self._session() as session:
            connection = session.connection()
            result = connection.execute(
                update(LedgerRow)
                .where(LedgerRow.child_id == ledger.child_id, LedgerRow.version == expected_version)
                .values(version=expected_version + 1, **_ledger_values(ledger))
            )
            if result.rowcount != 1:
                session.rollback()
                current = session.get(LedgerRow, ledger.child_id)
                if current is None:
                    raise NotFoundError(f"Reward ledger for '{ledger.child_id}' does not exist.")
                raise ConcurrencyConflictError(
                    f"Ledger for '{ledger.child_id}' is at version {current.version}, expected {expected_version}."
                )
            connection.execute(delete(SpecialRewardRow).where(SpecialRewardRow.child_id == ledger.child_id))
            session.add_all(_special_rows(ledger.child_id, ledger.special_rewards))
            if settlement is not None:
                session.add(
                    SettlementRow(
                        task_id=settlement.task_id,
                        child_id=settlement.child_id,
                        applied_at=_aware(settlement.applied_at),
                    )
                )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConcurrencyConflictError(
                    f"Ledger for '{ledger.child_id}' was settled concurrently."
                ) from exc
        return self.get_ledger(ledger.child_id)

    def get_settlement(self, task_id: str) -> Optional[SettlementRecord]:
        with self._session() as session:
            row = session.get(SettlementRow, task_id)
            if row is None:
                return None
            return SettlementRecord(task_id=row.task_id, child_id=row.child_id, applied_at=_naive(row.applied_at))


def create_store(url: str = DATABASE_URL) -> SqlStore:
    """Build a :class:`SqlStore` for ``url`` and create missing tables."""

    return SqlStore(create_sql_engine(url))


__all__ = [
    "ChildRow",
    "FamilyRow",
    "LedgerRow",
    "SettlementRow",
    "SpecialRewardRow",
    "SqlStore",
    "TaskRow",
    "create_db_and_tables",
    "create_sql_engine",
    "create_store",
]

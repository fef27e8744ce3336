"""Recurrence scheduling: derive the next task instance when a recurring task is approved."""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import TYPE_CHECKING, Optional

from .models import Recurrence, Task

if TYPE_CHECKING:  # pragma: no cover
    from .tasks import TaskLifecycleManager


def add_months(moment: date, months: int) -> date:
    """Shift ``moment`` by whole calendar months, clamping to the month's last day."""

    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_due_date(due_date: Optional[date], recurrence: Recurrence | str) -> Optional[date]:
    """Advance ``due_date`` by exactly one period; tasks without a due date stay without one."""

    period = Recurrence.parse(recurrence)
    if due_date is None or period is Recurrence.NONE:
        return None
    if period is Recurrence.DAILY:
        return due_date + timedelta(days=1)
    if period is Recurrence.WEEKLY:
        return due_date + timedelta(days=7)
    return add_months(due_date, 1)


class RecurrenceScheduler:
    """Create the follow-up instance of an approved recurring task."""

    def __init__(self, manager: "TaskLifecycleManager") -> None:
        self._manager = manager

    def schedule_next(self, task: Task, *, created_by: str | None = None) -> Optional[Task]:
        """Create the next ``pending`` instance, or return ``None`` for one-off tasks.

        Goes through the regular task creation checks, so a child removed from
        the family makes this raise :class:`~ribbit.exceptions.NotFoundError`.
        """

        if not task.is_recurring:
            return None
        return self._manager.create_task(
            task.family_id,
            task.assigned_to,
            task.reward,
            task.recurrence,
            next_due_date(task.due_date, task.recurrence),
            title=task.title,
            description=task.description,
            created_by=created_by or task.created_by,
        )


__all__ = ["RecurrenceScheduler", "add_months", "next_due_date"]

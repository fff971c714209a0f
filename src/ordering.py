"""
Queue ordering for triage sessions

`order` is computed once when a session starts; the queue is never
re-sorted afterwards. `sort_by_value` backs the "next task" lookup.
"""

from datetime import date, datetime, time
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from models import PRIORITY_HIGH, PRIORITY_LOW, PRIORITY_MEDIUM, PRIORITY_NONE, Task


class TriageMode(Enum):
    SCHEDULE = 'schedule'
    OVERDUE = 'overdue'
    PRIORITIZE = 'prioritize'
    PROCESS = 'process'


def _due_key(task: Task) -> Tuple[date, bool, time]:
    # All-day tasks sort before timed tasks on the same day
    return (task.due.date, task.due.time is not None, task.due.time or time.min)


def order(tasks: Iterable[Task], mode: TriageMode, today: Optional[date] = None) -> List[Task]:
    """
    Order tasks for a triage session

    - schedule: undated tasks first (input order), then dated tasks by due date.
      When `today` is given, tasks due before it are left out (see OVERDUE).
    - overdue: only tasks due before `today`, oldest first
    - prioritize: tasks without a priority first, then lowest priority first;
      ties keep input order
    - process: input order untouched

    Input order is taken to be creation order as returned by Todoist.
    """
    tasks = list(tasks)

    if mode == TriageMode.PROCESS:
        return tasks

    if mode == TriageMode.SCHEDULE:
        undated = [t for t in tasks if t.due is None]
        dated = [t for t in tasks if t.due is not None and (today is None or t.due.date >= today)]
        return undated + sorted(dated, key=_due_key)

    if mode == TriageMode.OVERDUE:
        if today is None:
            raise ValueError("overdue ordering needs a reference day")
        overdue = [t for t in tasks if t.due is not None and t.due.date < today]
        return sorted(overdue, key=_due_key)

    if mode == TriageMode.PRIORITIZE:
        unprioritized = [t for t in tasks if not t.has_priority]
        prioritized = [t for t in tasks if t.has_priority]
        return unprioritized + sorted(prioritized, key=lambda t: t.priority)

    raise ValueError(f"Unknown triage mode: {mode}")


# ==================== Next-task value ====================

_PRIORITY_VALUE = {
    PRIORITY_NONE: 2,
    PRIORITY_LOW: 1,
    PRIORITY_MEDIUM: 3,
    PRIORITY_HIGH: 4,
}


def _date_value(task: Task, now: datetime) -> int:
    if task.due is None:
        return 80

    recurring_value = 0 if task.due.is_recurring else 50
    today = now.date()

    if task.due.all_day:
        today_value = 100 if task.due.date == today else 0
        overdue_value = 150 if task.due.date < today else 0
        return today_value + overdue_value + recurring_value

    minutes = (task.due.as_datetime() - now.replace(tzinfo=None)).total_seconds() / 60
    if -15 <= minutes <= 15:
        return 200 + recurring_value
    return recurring_value


def task_value(task: Task, now: datetime) -> int:
    """How urgently a task wants attention right now; higher comes first"""
    return _date_value(task, now) + _PRIORITY_VALUE.get(task.priority, 2)


def sort_by_value(tasks: Iterable[Task], now: datetime) -> List[Task]:
    return sorted(tasks, key=lambda t: task_value(t, now), reverse=True)


def filter_not_in_future(tasks: Iterable[Task], today: date) -> List[Task]:
    """Tasks that are undated, due today or overdue"""
    return [t for t in tasks if t.due is None or t.due.date <= today]

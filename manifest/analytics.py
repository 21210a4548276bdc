from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .models import HistoryEntry, RoutineItem, Task, Value
from .periods import add_months, local_date, month_label, to_local


class TimeRange(str, Enum):
    WEEK = "Week"
    MONTH = "Month"
    YEAR = "Year"
    ALL = "All Time"


@dataclass(frozen=True)
class ValueStat:
    value_name: str
    days_served: int


@dataclass(frozen=True)
class MonthGroup:
    label: str  # e.g. "March 2026"
    tasks: List[Tuple[Task, datetime]]  # completed task, day it was completed


def range_start(time_range: TimeRange, now: datetime) -> Optional[datetime]:
    if time_range == TimeRange.WEEK:
        return now - timedelta(days=7)
    if time_range == TimeRange.MONTH:
        return add_months(now, -1)
    if time_range == TimeRange.YEAR:
        return add_months(now, -12)
    return None


def filter_history(entries: Sequence[HistoryEntry], time_range: TimeRange, now: datetime) -> List[HistoryEntry]:
    start = range_start(time_range, now)
    if start is None:
        return list(entries)
    return [e for e in entries if e.date >= start]


def value_analytics(
    entries: Sequence[HistoryEntry],
    tasks: Sequence[Task],
    routines: Sequence[RoutineItem],
    get_value: Callable[[str], Optional[Value]],
) -> List[ValueStat]:
    """
    How many distinct days each value was served by a completed task or
    routine. Values, tasks or routines that no longer exist are skipped.
    """
    task_by_id = {t.id: t for t in tasks}
    routine_by_id = {r.id: r for r in routines}
    days_by_value: Dict[str, Set[date]] = {}

    for entry in entries:
        day = local_date(entry.date)
        for task_id in entry.completed_task_ids:
            task = task_by_id.get(task_id)
            if task:
                for vid in task.value_ids:
                    days_by_value.setdefault(vid, set()).add(day)
        for routine_id in entry.completed_routine_ids:
            routine = routine_by_id.get(routine_id)
            if routine:
                for vid in routine.value_ids:
                    days_by_value.setdefault(vid, set()).add(day)

    stats = []
    for vid, days in days_by_value.items():
        value = get_value(vid)
        if value is not None:
            stats.append(ValueStat(value_name=value.name, days_served=len(days)))
    return sorted(stats, key=lambda s: (-s.days_served, s.value_name))


def completed_tasks_by_month(entries: Sequence[HistoryEntry], tasks: Sequence[Task]) -> List[MonthGroup]:
    """Completed tasks grouped by the month they were completed in, most recent month first."""
    task_by_id = {t.id: t for t in tasks}
    groups: Dict[Tuple[int, int], List[Tuple[Task, datetime]]] = {}

    for entry in entries:
        if not entry.completed_task_ids:
            continue
        loc = to_local(entry.date)
        for task_id in entry.completed_task_ids:
            task = task_by_id.get(task_id)
            if task:
                groups.setdefault((loc.year, loc.month), []).append((task, entry.date))

    out = []
    for ym in sorted(groups, reverse=True):
        items = sorted(groups[ym], key=lambda pair: pair[1], reverse=True)
        out.append(MonthGroup(label=month_label(items[0][1]), tasks=items))
    return out

"""
Reconciliation of a local collection with the copy found in the cloud.

All functions are pure. The result holds every id from either side exactly
once: local records keep their order and remote-only records follow in
remote order. When an id exists on both sides a per-type rule picks one
whole record; fields are never mixed.
"""
from __future__ import annotations
from typing import Callable, Dict, List, Sequence, TypeVar

from .models import HistoryEntry, RoutineItem, Task, Value

T = TypeVar("T")


def _merge(local: Sequence[T], remote: Sequence[T], remote_wins: Callable[[T, T], bool]) -> List[T]:
    merged: Dict[str, T] = {}
    for item in local:
        merged.setdefault(item.id, item)
    for item in remote:
        current = merged.get(item.id)
        if current is None or remote_wins(current, item):
            merged[item.id] = item
    return list(merged.values())


def _never(_local, _remote) -> bool:
    return False


def merge_values(local: Sequence[Value], remote: Sequence[Value]) -> List[Value]:
    # Local is authoritative for toggles made on this device.
    return _merge(local, remote, _never)


def merge_routine_items(local: Sequence[RoutineItem], remote: Sequence[RoutineItem]) -> List[RoutineItem]:
    return _merge(local, remote, _never)


def merge_tasks(local: Sequence[Task], remote: Sequence[Task]) -> List[Task]:
    # Later of completed_date/created_date wins, ties stay local.
    # An edit to an already completed task does not move this proxy.
    return _merge(local, remote, lambda l, r: r.last_modified > l.last_modified)


def merge_history_entries(local: Sequence[HistoryEntry], remote: Sequence[HistoryEntry]) -> List[HistoryEntry]:
    # More completed items wins, ties stay local.
    return _merge(local, remote, lambda l, r: r.total_completed > l.total_completed)

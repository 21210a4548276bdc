"""
DataManager: the single owner of the four in-memory collections.

Every mutation updates memory synchronously, emits the matching
``*_changed`` signal and restarts a debounce timer. When the timer fires the
collections are snapshotted and encoded on a worker thread, then the bytes
come back to the manager's thread to be committed to the LocalStore and
mirrored to the cloud.
"""
from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from PySide6.QtCore import (
    QMetaObject, QObject, QRunnable, Qt, QThread, QThreadPool, QTimer, Signal, Slot,
)

from . import analytics, codec
from .analytics import MonthGroup, TimeRange, ValueStat, filter_history
from .cloud_sync import CloudSync
from .errors import DecodeError, RecoveryExhausted, SaveError
from .local_store import LocalStore
from .log import get_logger
from .merge import merge_history_entries, merge_routine_items, merge_tasks, merge_values
from .models import HistoryEntry, RecurringFrequency, RoutineItem, Task, Value
from .periods import add_days, add_months, is_same_day, now_utc, start_of_day
from .resources import values_library

logger = get_logger(__name__)

DEFAULT_SAVE_DEBOUNCE_MS = 2000

SAVE_FAILED_TITLE = "Save Failed"
SAVE_FAILED_MESSAGE = (
    "Unable to save your changes. They are still available in this session; "
    "make another change to try again."
)
RECOVERY_TITLE = "Data Recovery"


@dataclass(frozen=True)
class Snapshot:
    values: List[Value]
    routine_items: List[RoutineItem]
    tasks: List[Task]
    history_entries: List[HistoryEntry]


class _EncodeSignals(QObject):
    encoded = Signal(int, object)  # generation, {key: bytes}
    failed = Signal(int, str)


class _EncodeJob(QRunnable):
    def __init__(self, generation: int, snapshot: Snapshot, signals: _EncodeSignals):
        super().__init__()
        self.setAutoDelete(False)  # kept alive by DataManager._jobs
        self.generation = generation
        self.snapshot = snapshot
        self.signals = signals
        self.done = False

    def run(self) -> None:
        s = self.snapshot
        try:
            blobs = codec.encode_all(s.values, s.routine_items, s.tasks, s.history_entries)
        except SaveError as e:
            self.signals.failed.emit(self.generation, str(e))
        else:
            self.signals.encoded.emit(self.generation, blobs)
        finally:
            self.done = True


def _index_of(items: Sequence, item_id: str) -> Optional[int]:
    for i, item in enumerate(items):
        if item.id == item_id:
            return i
    return None


def _sorted_routines(items: Iterable[RoutineItem]) -> List[RoutineItem]:
    return sorted(items, key=lambda r: r.order)


class DataManager(QObject):
    values_changed = Signal()
    routine_items_changed = Signal()
    tasks_changed = Signal()
    history_changed = Signal()
    saved = Signal()
    error_raised = Signal(str, str)  # title, message

    def __init__(
        self,
        local: LocalStore,
        cloud: Optional[CloudSync] = None,
        save_debounce_ms: int = DEFAULT_SAVE_DEBOUNCE_MS,
        clock: Callable[[], datetime] = now_utc,
        thread_pool: Optional[QThreadPool] = None,
        parent: Optional[QObject] = None,
    ):
        super().__init__(parent)
        self._local = local
        self._cloud = cloud
        self._clock = clock
        self._pool = thread_pool or QThreadPool.globalInstance()

        self._lock = threading.RLock()
        self._values: List[Value] = []
        self._routine_items: List[RoutineItem] = []
        self._tasks: List[Task] = []
        self._history: List[HistoryEntry] = []
        self._value_index: Dict[str, Value] = {}

        self._save_timer = QTimer(self)
        self._save_timer.setSingleShot(True)
        self._save_timer.setInterval(save_debounce_ms)
        self._save_timer.timeout.connect(self._save_all_data)

        # Saves are numbered so a slow background encode can't overwrite a newer commit.
        self._generation = 0
        self._committed_generation = 0
        self._jobs: List[_EncodeJob] = []
        self._encode_signals = _EncodeSignals(self)
        self._encode_signals.encoded.connect(self._on_encoded, Qt.QueuedConnection)
        self._encode_signals.failed.connect(self._on_encode_failed, Qt.QueuedConnection)

        if cloud is not None:
            cloud.data_changed.connect(self.load_from_cloud)

    # ---------- Read access ----------
    @property
    def values(self) -> List[Value]:
        with self._lock:
            return list(self._values)

    @property
    def routine_items(self) -> List[RoutineItem]:
        with self._lock:
            return list(self._routine_items)

    @property
    def tasks(self) -> List[Task]:
        with self._lock:
            return list(self._tasks)

    @property
    def history_entries(self) -> List[HistoryEntry]:
        with self._lock:
            return list(self._history)

    @property
    def value_index(self) -> Dict[str, Value]:
        with self._lock:
            return dict(self._value_index)

    @property
    def save_pending(self) -> bool:
        return self._save_timer.isActive()

    def snapshot(self) -> Snapshot:
        with self._lock:
            return Snapshot(
                values=list(self._values),
                routine_items=list(self._routine_items),
                tasks=list(self._tasks),
                history_entries=list(self._history),
            )

    def replace_all(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._values = list(snapshot.values)
            self._routine_items = list(snapshot.routine_items)
            self._tasks = list(snapshot.tasks)
            self._history = list(snapshot.history_entries)
            self._rebuild_value_index()
        self.values_changed.emit()
        self.routine_items_changed.emit()
        self.tasks_changed.emit()
        self.history_changed.emit()

    # ---------- Loading ----------
    def load_all(self) -> None:
        self.load_values()
        self.load_routine()
        self.load_tasks()
        self.load_history()

    def load_values(self) -> None:
        records, persist = self._load_key(codec.VALUES_KEY, codec.decode_values, "values", values_library, True)
        if records is None:
            logger.info("No saved values found, loading default library")
            records, persist = values_library(), True
        with self._lock:
            self._values = records
            self._rebuild_value_index()
        logger.info("Loaded %d values", len(records))
        self.values_changed.emit()
        if persist:
            self._persist_key(codec.VALUES_KEY, codec.encode_values)

    def load_routine(self) -> None:
        records, persist = self._load_key(codec.ROUTINE_KEY, codec.decode_routine_items, "routines", list)
        with self._lock:
            self._routine_items = _sorted_routines(records or [])
        logger.info("Loaded %d routine items", len(self._routine_items))
        self.routine_items_changed.emit()
        if persist:
            self._persist_key(codec.ROUTINE_KEY, codec.encode_routine_items)
        self.migrate_routine_items()

    def load_tasks(self) -> None:
        records, persist = self._load_key(codec.TASKS_KEY, codec.decode_tasks, "tasks", list)
        with self._lock:
            self._tasks = records or []
        logger.info("Loaded %d tasks", len(self._tasks))
        self.tasks_changed.emit()
        if persist:
            self._persist_key(codec.TASKS_KEY, codec.encode_tasks)

    def load_history(self) -> None:
        records, persist = self._load_key(codec.HISTORY_KEY, codec.decode_history, "history", list)
        with self._lock:
            self._history = records or []
        logger.info("Loaded %d history entries", len(self._history))
        self.history_changed.emit()
        if persist:
            self._persist_key(codec.HISTORY_KEY, codec.encode_history)

    def _load_key(
        self,
        key: str,
        decode: Callable[[bytes], list],
        label: str,
        fallback: Callable[[], list],
        persist_fallback: bool = False,
    ) -> Tuple[Optional[list], bool]:
        """
        Returns (records, persist). records is None when nothing was ever stored
        under key; persist says the result should be written back right away.
        """
        try:
            data = self._local.read(key)
            if data is None:
                return None, False
            return decode(data), False
        except (DecodeError, sqlite3.Error) as e:
            logger.error("Stored %s are unreadable: %s", label, e)

        try:
            records = self._recover_from_cloud(key, decode)
        except RecoveryExhausted as e:
            logger.warning("Falling back to defaults for %s: %s", label, e)
            self._report_error(
                RECOVERY_TITLE,
                f"Your {label} could not be read and were reset. Please restore from a backup if available.",
            )
            return fallback(), persist_fallback

        logger.info("Recovered %d %s from the cloud copy", len(records), label)
        self._report_error(RECOVERY_TITLE, f"Your {label} were damaged on this device and have been restored from the cloud.")
        return records, True

    def _recover_from_cloud(self, key: str, decode: Callable[[bytes], list]) -> list:
        if self._cloud is None:
            raise RecoveryExhausted(f"no cloud copy of {key}: cloud sync is disabled")
        data = self._cloud.download_data(key)
        if data is None:
            raise RecoveryExhausted(f"no cloud copy of {key}")
        try:
            return decode(data)
        except DecodeError as e:
            raise RecoveryExhausted(f"cloud copy of {key} is unreadable: {e}") from e

    def _persist_key(self, key: str, encode: Callable[[list], bytes]) -> None:
        with self._lock:
            records = {
                codec.VALUES_KEY: self._values,
                codec.ROUTINE_KEY: self._routine_items,
                codec.TASKS_KEY: self._tasks,
                codec.HISTORY_KEY: self._history,
            }[key]
            records = list(records)
        try:
            self._commit({key: encode(records)})
        except SaveError as e:
            self._report_save_failure(e)

    # ---------- Cloud ----------
    @Slot(list)
    def load_from_cloud(self, keys: Optional[List[str]] = None) -> None:
        """Merge whatever the cloud holds into memory. Undecodable blobs are skipped."""
        if self._cloud is None:
            return
        wanted = set(keys or codec.COLLECTION_KEYS)
        changed = False

        if codec.VALUES_KEY in wanted:
            remote = self._download(codec.VALUES_KEY, codec.decode_values)
            if remote is not None:
                with self._lock:
                    merged = merge_values(self._values, remote)
                    fresh = merged != self._values
                    if fresh:
                        self._values = merged
                        self._rebuild_value_index()
                if fresh:
                    self.values_changed.emit()
                    changed = True

        if codec.ROUTINE_KEY in wanted:
            remote = self._download(codec.ROUTINE_KEY, codec.decode_routine_items)
            if remote is not None:
                with self._lock:
                    merged = _sorted_routines(merge_routine_items(self._routine_items, remote))
                    fresh = merged != self._routine_items
                    if fresh:
                        self._routine_items = merged
                if fresh:
                    self.routine_items_changed.emit()
                    self.migrate_routine_items()
                    changed = True

        if codec.TASKS_KEY in wanted:
            remote = self._download(codec.TASKS_KEY, codec.decode_tasks)
            if remote is not None:
                with self._lock:
                    merged = merge_tasks(self._tasks, remote)
                    fresh = merged != self._tasks
                    if fresh:
                        self._tasks = merged
                if fresh:
                    self.tasks_changed.emit()
                    changed = True

        if codec.HISTORY_KEY in wanted:
            remote = self._download(codec.HISTORY_KEY, codec.decode_history)
            if remote is not None:
                with self._lock:
                    merged = merge_history_entries(self._history, remote)
                    fresh = merged != self._history
                    if fresh:
                        self._history = merged
                if fresh:
                    self.history_changed.emit()
                    changed = True

        if changed:
            logger.info("Merged cloud changes for %s", sorted(wanted))
            self._schedule_save()

    def _download(self, key: str, decode: Callable[[bytes], list]) -> Optional[list]:
        data = self._cloud.download_data(key) if self._cloud else None
        if data is None:
            return None
        try:
            return decode(data)
        except DecodeError as e:
            logger.warning("Ignoring unreadable cloud copy of %s: %s", key, e)
            return None

    # ---------- Values ----------
    def _rebuild_value_index(self) -> None:
        self._value_index = {v.id: v for v in self._values}

    def get_value(self, value_id: str) -> Optional[Value]:
        with self._lock:
            return self._value_index.get(value_id)

    def value_names(self, value_ids: Iterable[str]) -> List[str]:
        # Deleted or unknown values are simply left out.
        with self._lock:
            return [self._value_index[i].name for i in value_ids if i in self._value_index]

    @property
    def active_values(self) -> List[Value]:
        with self._lock:
            return [v for v in self._values if v.is_active]

    def toggle_value_active(self, value_id: str) -> Optional[Value]:
        with self._lock:
            idx = _index_of(self._values, value_id)
            if idx is None:
                return None
            value = replace(self._values[idx], is_active=not self._values[idx].is_active)
            self._values[idx] = value
            self._value_index[value.id] = value
        self.values_changed.emit()
        self._schedule_save()
        return value

    def add_custom_value(self, name: str, definition: str) -> Value:
        value = Value(name=name, definition=definition, is_active=True)
        with self._lock:
            self._values.append(value)
            self._value_index[value.id] = value
        self.values_changed.emit()
        self._schedule_save()
        return value

    # ---------- Routine ----------
    def add_routine_item(self, item: RoutineItem) -> RoutineItem:
        with self._lock:
            item = replace(item, order=len(self._routine_items))
            self._routine_items.append(item)
        self.routine_items_changed.emit()
        self._schedule_save()
        return item

    def update_routine_item(self, item: RoutineItem) -> bool:
        with self._lock:
            idx = _index_of(self._routine_items, item.id)
            if idx is None:
                return False
            self._routine_items[idx] = item
        self.routine_items_changed.emit()
        self._schedule_save()
        return True

    def delete_routine_item(self, item_id: str) -> bool:
        with self._lock:
            before = len(self._routine_items)
            self._routine_items = [r for r in self._routine_items if r.id != item_id]
            removed = len(self._routine_items) != before
        if removed:
            self.routine_items_changed.emit()
            self._schedule_save()
        return removed

    def migrate_routine_items(self) -> int:
        """Empty active_days was written by an old bug; it means every day."""
        migrated = 0
        with self._lock:
            for i, item in enumerate(self._routine_items):
                if item.active_days is not None and len(item.active_days) == 0:
                    self._routine_items[i] = replace(item, active_days=None)
                    migrated += 1
                    logger.info("Migrated routine item %r to every day", item.title)
        if migrated:
            self.routine_items_changed.emit()
            self._schedule_save()
        return migrated

    def routines_for_weekday(self, weekday: int) -> List[RoutineItem]:
        # 0=Sun ... 6=Sat
        with self._lock:
            return [r for r in _sorted_routines(self._routine_items) if r.is_active_on(weekday)]

    def is_routine_completed(self, routine_id: str, day: datetime) -> bool:
        entry = self.history_entry_for(day, create=False)
        return entry is not None and routine_id in entry.completed_routine_ids

    def toggle_routine_completion(self, routine_id: str, day: datetime) -> bool:
        """Flip completion of a routine on the given day. Returns the new state."""
        with self._lock:
            entry = self.history_entry_for(day)
            ids = list(entry.completed_routine_ids)
            if routine_id in ids:
                ids.remove(routine_id)
                completed = False
            else:
                ids.append(routine_id)
                completed = True
            self.update_history_entry(replace(entry, completed_routine_ids=ids))
        return completed

    # ---------- Tasks ----------
    def add_task(self, task: Task) -> Task:
        with self._lock:
            self._tasks.append(task)
        self.tasks_changed.emit()
        self._schedule_save()
        return task

    def update_task(self, task: Task) -> bool:
        with self._lock:
            idx = _index_of(self._tasks, task.id)
            if idx is None:
                return False
            self._tasks[idx] = task
        self.tasks_changed.emit()
        self._schedule_save()
        return True

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            before = len(self._tasks)
            self._tasks = [t for t in self._tasks if t.id != task_id]
            removed = len(self._tasks) != before
        if removed:
            self.tasks_changed.emit()
            self._schedule_save()
        return removed

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            idx = _index_of(self._tasks, task_id)
            return None if idx is None else self._tasks[idx]

    def complete_task(self, task_id: str) -> Optional[Task]:
        """
        Mark a task done now and record it in today's history. For a recurring
        task the next occurrence is created and returned.
        """
        now = self._clock()
        with self._lock:
            idx = _index_of(self._tasks, task_id)
            if idx is None or self._tasks[idx].is_completed:
                return None
            done = replace(self._tasks[idx], is_completed=True, completed_date=now)
            self._tasks[idx] = done
            self.add_completed_task_to_history(task_id)
            spawned = self.generate_next_recurring_task(done) if done.is_recurring else None
        self.tasks_changed.emit()
        self._schedule_save()
        return spawned

    def uncomplete_task(self, task_id: str) -> bool:
        with self._lock:
            idx = _index_of(self._tasks, task_id)
            if idx is None:
                return False
            task = self._tasks[idx]
            day = task.completed_date or self._clock()
            self._tasks[idx] = replace(task, is_completed=False, completed_date=None)

            entry = self.history_entry_for(day, create=False)
            if entry is not None and task_id in entry.completed_task_ids:
                ids = [i for i in entry.completed_task_ids if i != task_id]
                self.update_history_entry(replace(entry, completed_task_ids=ids))
        self.tasks_changed.emit()
        self._schedule_save()
        return True

    def snooze_task(self, task_id: str, days: int) -> bool:
        with self._lock:
            idx = _index_of(self._tasks, task_id)
            if idx is None or self._tasks[idx].due_date is None:
                return False
            task = self._tasks[idx]
            self._tasks[idx] = replace(task, due_date=add_days(task.due_date, days))
        self.tasks_changed.emit()
        self._schedule_save()
        return True

    def generate_next_recurring_task(self, task: Task) -> Optional[Task]:
        if task.due_date is None:
            return None
        freq = task.recurring_frequency
        if freq == RecurringFrequency.DAILY:
            next_due = add_days(task.due_date, 1)
        elif freq == RecurringFrequency.WEEKLY:
            next_due = add_days(task.due_date, 7)
        elif freq == RecurringFrequency.MONTHLY:
            next_due = add_months(task.due_date, 1)
        else:
            return None

        new_task = Task(
            title=task.title,
            due_date=next_due,
            value_ids=list(task.value_ids),
            is_appointment=task.is_appointment,
            location=task.location,
            is_recurring=True,
            recurring_frequency=freq,
            recurring_days=list(task.recurring_days) if task.recurring_days is not None else None,
            visibility_window=task.visibility_window,
            reminders=list(task.reminders),
            created_date=self._clock(),
        )
        return self.add_task(new_task)

    def active_tasks(self, now: Optional[datetime] = None) -> List[Task]:
        """Open tasks, overdue first, then by due date; undated tasks last."""
        now = now or self._clock()
        with self._lock:
            pending = [t for t in self._tasks if not t.is_completed]

        def sort_key(t: Task):
            days = t.days_until_due(now)
            return (days is None, days or 0)

        return sorted(pending, key=sort_key)

    def overdue_tasks(self, now: Optional[datetime] = None) -> List[Task]:
        now = now or self._clock()
        return [t for t in self.active_tasks(now) if t.is_overdue(now)]

    def active_non_overdue_tasks(self, now: Optional[datetime] = None) -> List[Task]:
        now = now or self._clock()
        return [t for t in self.active_tasks(now) if not t.is_overdue(now)]

    # ---------- History ----------
    def history_entry_for(self, day: datetime, create: bool = True) -> Optional[HistoryEntry]:
        with self._lock:
            for entry in self._history:
                if is_same_day(entry.date, day):
                    return entry
            if not create:
                return None
            entry = HistoryEntry(date=start_of_day(day))
            self._history.append(entry)
        self.history_changed.emit()
        self._schedule_save()
        return entry

    def get_today_history_entry(self) -> HistoryEntry:
        return self.history_entry_for(self._clock())

    def add_completed_routine_to_history(self, routine_id: str) -> bool:
        with self._lock:
            entry = self.get_today_history_entry()
            if routine_id in entry.completed_routine_ids:
                return False
            return self.update_history_entry(
                replace(entry, completed_routine_ids=entry.completed_routine_ids + [routine_id])
            )

    def add_completed_task_to_history(self, task_id: str) -> bool:
        with self._lock:
            entry = self.get_today_history_entry()
            if task_id in entry.completed_task_ids:
                return False
            return self.update_history_entry(
                replace(entry, completed_task_ids=entry.completed_task_ids + [task_id])
            )

    def update_history_entry(self, entry: HistoryEntry) -> bool:
        with self._lock:
            idx = _index_of(self._history, entry.id)
            if idx is None:
                return False
            self._history[idx] = entry
        self.history_changed.emit()
        self._schedule_save()
        return True

    def delete_history_entry(self, entry_id: str) -> bool:
        with self._lock:
            before = len(self._history)
            self._history = [e for e in self._history if e.id != entry_id]
            removed = len(self._history) != before
        if removed:
            self.history_changed.emit()
            self._schedule_save()
        return removed

    def clear_history(self) -> bool:
        """Drop all history and write through at once. False if the write failed (already reported)."""
        with self._lock:
            self._history = []
        self.history_changed.emit()
        try:
            self.save_all_data_immediately()
        except SaveError:
            return False
        return True

    # ---------- Analytics ----------
    def value_analytics(self, time_range: TimeRange = TimeRange.ALL, now: Optional[datetime] = None) -> List[ValueStat]:
        s = self.snapshot()
        entries = filter_history(s.history_entries, time_range, now or self._clock())
        return analytics.value_analytics(entries, s.tasks, s.routine_items, self.get_value)

    def completed_tasks_by_month(self) -> List[MonthGroup]:
        s = self.snapshot()
        return analytics.completed_tasks_by_month(s.history_entries, s.tasks)

    # ---------- Persistence ----------
    def save_data(self) -> None:
        self._schedule_save()

    def cancel_pending_save(self) -> None:
        # Same rule as _schedule_save: the timer is only touched from its own thread.
        if QThread.currentThread() == self.thread():
            self._stop_save_timer()
        else:
            QMetaObject.invokeMethod(self, "_stop_save_timer", Qt.QueuedConnection)

    @Slot()
    def _stop_save_timer(self) -> None:
        self._save_timer.stop()

    def _schedule_save(self) -> None:
        # QTimer must be driven from the thread that owns it.
        if QThread.currentThread() == self.thread():
            self._restart_save_timer()
        else:
            QMetaObject.invokeMethod(self, "_restart_save_timer", Qt.QueuedConnection)

    @Slot()
    def _restart_save_timer(self) -> None:
        self._save_timer.start()

    @Slot()
    def _save_all_data(self) -> None:
        self._generation += 1
        job = _EncodeJob(self._generation, self.snapshot(), self._encode_signals)
        self._jobs = [j for j in self._jobs if not j.done]
        self._jobs.append(job)
        self._pool.start(job)

    @Slot(int, object)
    def _on_encoded(self, generation: int, blobs: Dict[str, bytes]) -> None:
        self._jobs = [j for j in self._jobs if not j.done]
        if generation < self._committed_generation:
            logger.debug("Dropping stale save #%d, #%d already committed", generation, self._committed_generation)
            return
        try:
            self._commit(blobs, generation)
        except SaveError as e:
            self._report_save_failure(e)
            return
        logger.debug("Debounced save #%d completed", generation)

    @Slot(int, str)
    def _on_encode_failed(self, generation: int, message: str) -> None:
        self._jobs = [j for j in self._jobs if not j.done]
        self._report_save_failure(SaveError(message))

    def save_all_data_immediately(self) -> None:
        """
        Flush all four collections now, bypassing the debounce. The local
        commit has happened when this returns; the cloud upload is best effort.
        Raises SaveError (after reporting it) if nothing could be committed.
        """
        self.cancel_pending_save()
        self._generation += 1
        generation = self._generation
        s = self.snapshot()
        try:
            blobs = codec.encode_all(s.values, s.routine_items, s.tasks, s.history_entries)
            self._commit(blobs, generation)
        except SaveError as e:
            self._report_save_failure(e)
            raise
        logger.debug("Immediate save #%d completed", generation)

    def _commit(self, blobs: Dict[str, bytes], generation: Optional[int] = None) -> None:
        try:
            self._local.write_many(blobs)
        except (sqlite3.Error, OSError) as e:
            raise SaveError(f"could not write local store: {e}") from e
        if generation is not None:
            self._committed_generation = max(self._committed_generation, generation)
        if self._cloud is not None:
            for key, data in blobs.items():
                self._cloud.upload_data(key, data)
        self.saved.emit()

    # ---------- Errors ----------
    def _report_save_failure(self, error: Exception) -> None:
        logger.error("Save failed: %s", error)
        self._report_error(SAVE_FAILED_TITLE, SAVE_FAILED_MESSAGE)

    def _report_error(self, title: str, message: str) -> None:
        self.error_raised.emit(title, message)

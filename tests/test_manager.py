import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest
from PySide6.QtTest import QTest

from manifest import codec
from manifest.analytics import TimeRange, ValueStat
from manifest.cloud_store import ChangeReason
from manifest.cloud_sync import CloudSync
from manifest.errors import SaveError
from manifest.manager import DataManager, Snapshot
from manifest.models import HistoryEntry, RecurringFrequency, RoutineItem, Task, Value
from manifest.periods import start_of_day

from conftest import DEBOUNCE_MS


def _utc(y, m, d, hh=0, mm=0):
    return datetime(y, m, d, hh, mm, tzinfo=timezone.utc)


# ---------- Loading ----------

def test_first_launch_seeds_value_library(manager, local, cloud_store):
    manager.load_all()

    assert len(manager.values) == 178
    assert all(not v.is_active for v in manager.values)
    assert len(codec.decode_values(local.read(codec.VALUES_KEY))) == 178
    assert codec.VALUES_KEY in cloud_store.blobs
    assert manager.routine_items == [] and manager.tasks == [] and manager.history_entries == []


def test_existing_data_is_loaded_as_is(manager, local):
    value = Value(name="Grit", definition="Keep going", is_active=True)
    task = Task(title="Pay rent", created_date=_utc(2026, 3, 1))
    local.write_many({
        codec.VALUES_KEY: codec.encode_values([value]),
        codec.TASKS_KEY: codec.encode_tasks([task]),
    })

    manager.load_all()

    assert manager.values == [value]
    assert manager.tasks == [task]
    assert manager.get_value(value.id) == value


def test_routines_are_sorted_by_order(manager, local):
    b = RoutineItem(title="B", order=1)
    a = RoutineItem(title="A", order=0)
    local.write(codec.ROUTINE_KEY, codec.encode_routine_items([b, a]))

    manager.load_routine()

    assert [r.title for r in manager.routine_items] == ["A", "B"]


def test_corrupt_local_is_recovered_from_cloud(manager, local, cloud_store, errors):
    task = Task(title="From the other device", created_date=_utc(2026, 3, 1))
    local.write(codec.TASKS_KEY, b"[{\"id\": \"broken")
    cloud_store.blobs[codec.TASKS_KEY] = codec.encode_tasks([task])

    manager.load_tasks()

    assert manager.tasks == [task]
    assert errors and errors[0][0] == "Data Recovery"
    assert codec.decode_tasks(local.read(codec.TASKS_KEY)) == [task]


def test_corrupt_local_and_cloud_falls_back_to_empty(manager, local, cloud_store, errors):
    local.write(codec.HISTORY_KEY, b"not json")
    cloud_store.blobs[codec.HISTORY_KEY] = b"also not json"

    manager.load_history()

    assert manager.history_entries == []
    assert len(errors) == 1
    # the empty fallback is not written over the damaged blob
    assert local.read(codec.HISTORY_KEY) == b"not json"


def test_corrupt_local_without_cloud(qapp, local, clock):
    m = DataManager(local, None, save_debounce_ms=DEBOUNCE_MS, clock=clock)
    seen = []
    m.error_raised.connect(lambda title, message: seen.append(title))
    local.write_many({codec.VALUES_KEY: b"{", codec.TASKS_KEY: b"["})

    m.load_all()

    assert len(m.values) == 178
    assert m.tasks == []
    assert seen.count("Data Recovery") == 2
    assert len(codec.decode_values(local.read(codec.VALUES_KEY))) == 178


def test_empty_active_days_are_migrated_to_every_day(manager, local):
    broken = RoutineItem(title="Meditate", active_days=[])
    fine = RoutineItem(title="Gym", active_days=[1, 3], order=1)
    local.write(codec.ROUTINE_KEY, codec.encode_routine_items([broken, fine]))

    manager.load_routine()

    items = {r.title: r for r in manager.routine_items}
    assert items["Meditate"].active_days is None
    assert all(items["Meditate"].is_active_on(d) for d in range(7))
    assert items["Gym"].active_days == [1, 3]
    assert manager.save_pending is True


def test_migrate_is_noop_when_nothing_to_fix(manager):
    manager.add_routine_item(RoutineItem(title="Walk", active_days=[0]))
    assert manager.migrate_routine_items() == 0


# ---------- Persistence ----------

def test_burst_of_mutations_is_one_write(manager, write_log, wait_until):
    for i in range(5):
        manager.add_task(Task(title=f"Task {i}"))

    wait_until(lambda: len(write_log) == 1)
    QTest.qWait(DEBOUNCE_MS * 3)

    assert write_log == [sorted(codec.COLLECTION_KEYS)]
    assert len(codec.decode_tasks(manager._local.read(codec.TASKS_KEY))) == 5


def test_mutations_separated_by_quiet_period_are_two_writes(manager, write_log, wait_until):
    manager.add_task(Task(title="First"))
    wait_until(lambda: len(write_log) == 1)

    manager.add_task(Task(title="Second"))
    wait_until(lambda: len(write_log) == 2)


def test_immediate_save_cancels_pending_debounce(manager, write_log):
    manager.add_task(Task(title="Now"))
    assert manager.save_pending is True

    manager.save_all_data_immediately()

    assert manager.save_pending is False
    assert len(write_log) == 1
    QTest.qWait(DEBOUNCE_MS * 3)
    assert len(write_log) == 1


def test_stale_background_encode_is_dropped(manager, local, write_log):
    manager.add_task(Task(title="Newest"))
    manager.save_all_data_immediately()
    stale = codec.encode_all([], [], [], [])

    manager._on_encoded(0, stale)

    assert len(write_log) == 1
    assert len(codec.decode_tasks(local.read(codec.TASKS_KEY))) == 1


def test_save_failure_reports_and_keeps_memory(manager, local, errors, monkeypatch, wait_until):
    def broken(blobs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(local, "write_many", broken)
    task = manager.add_task(Task(title="Unsaved"))

    wait_until(lambda: errors)

    assert errors[0][0] == "Save Failed"
    assert manager.get_task(task.id) == task


def test_immediate_save_failure_raises(manager, local, errors, monkeypatch):
    def broken(blobs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(local, "write_many", broken)
    with pytest.raises(SaveError):
        manager.save_all_data_immediately()
    assert errors[0][0] == "Save Failed"


def test_saved_signal_fires_after_commit(manager):
    fired = []
    manager.saved.connect(lambda: fired.append(True))
    manager.save_all_data_immediately()
    assert fired == [True]


def test_cancel_from_worker_thread_stops_timer(manager, write_log, wait_until):
    manager.add_task(Task(title="Call"))
    assert manager.save_pending is True

    worker = threading.Thread(target=manager.cancel_pending_save)
    worker.start()
    worker.join()

    wait_until(lambda: not manager.save_pending)
    QTest.qWait(DEBOUNCE_MS * 3)
    assert write_log == []


# ---------- Cloud ----------

def test_commit_mirrors_every_key(manager, cloud_store):
    manager.save_all_data_immediately()
    assert sorted(cloud_store.uploads) == sorted(codec.COLLECTION_KEYS)


def test_remote_change_is_merged(manager, cloud_store):
    manager.load_all()
    mine = manager.add_task(Task(title="Mine", created_date=_utc(2026, 3, 1)))
    theirs = Task(title="Theirs", created_date=_utc(2026, 3, 2))
    manager.save_all_data_immediately()

    cloud_store.push_remote(codec.TASKS_KEY, codec.encode_tasks([theirs]))

    assert [t.id for t in manager.tasks] == [mine.id, theirs.id]
    assert manager.save_pending is True


def test_remote_change_identical_to_local_does_not_save(manager, local, cloud_store):
    manager.load_all()
    assert manager.save_pending is False

    cloud_store.push_remote(codec.VALUES_KEY, local.read(codec.VALUES_KEY))

    assert manager.save_pending is False


def test_initial_sync_merges_remote_completion(manager, cloud_store):
    created = _utc(2026, 3, 1)
    task = manager.add_task(Task(title="Call mom", created_date=created))
    remote = Task(title="Call mom", id=task.id, created_date=created,
                  is_completed=True, completed_date=_utc(2026, 3, 17))

    cloud_store.push_remote(codec.TASKS_KEY, codec.encode_tasks([remote]), ChangeReason.INITIAL_SYNC_CHANGE)

    assert manager.get_task(task.id).is_completed is True


def test_unreadable_remote_blob_is_ignored(manager, cloud_store):
    task = manager.add_task(Task(title="Keep me"))
    cloud_store.push_remote(codec.TASKS_KEY, b"garbage")
    assert manager.tasks == [task]


def test_quota_violation_suspends_uploads(manager, cloud, cloud_store, local):
    notices = []
    cloud.error_raised.connect(lambda title, message: notices.append(title))

    cloud_store.changed_externally.emit(ChangeReason.QUOTA_VIOLATION_CHANGE, [codec.TASKS_KEY])
    manager.add_task(Task(title="Local only"))
    manager.save_all_data_immediately()

    assert notices == ["Cloud Storage Full"]
    assert cloud.uploads_suspended is True
    assert cloud_store.uploads == []
    assert len(codec.decode_tasks(local.read(codec.TASKS_KEY))) == 1

    cloud.resume_uploads()
    manager.save_all_data_immediately()
    assert codec.TASKS_KEY in cloud_store.uploads


def test_account_change_asks_for_restart(manager, cloud, cloud_store):
    notices = []
    cloud.error_raised.connect(lambda title, message: notices.append((title, message)))

    cloud_store.changed_externally.emit(ChangeReason.ACCOUNT_CHANGE, [])

    assert notices[0][0] == "Cloud Account Changed"
    assert "restart" in notices[0][1]


def test_upload_failure_does_not_fail_the_save(manager, cloud_store, local, errors):
    cloud_store.fail_uploads = True
    manager.add_task(Task(title="Offline"))

    manager.save_all_data_immediately()

    assert errors == []
    assert len(codec.decode_tasks(local.read(codec.TASKS_KEY))) == 1


def test_force_synchronize_stamps_last_sync(cloud_store, clock):
    cloud = CloudSync(cloud_store, clock=clock)
    assert cloud.force_synchronize() is True
    assert cloud.is_syncing is False
    assert cloud.last_sync_date == clock()


# ---------- Values ----------

def test_toggle_updates_index(manager):
    v = manager.add_custom_value("Grit", "Keep going")
    assert v.is_active is True

    toggled = manager.toggle_value_active(v.id)

    assert toggled.is_active is False
    assert manager.get_value(v.id).is_active is False
    assert manager.value_index[v.id] == toggled
    assert manager.active_values == []


def test_toggle_unknown_value(manager):
    assert manager.toggle_value_active("missing") is None


def test_value_names_skip_unknown_ids(manager):
    grit = manager.add_custom_value("Grit", "Keep going")
    calm = manager.add_custom_value("Calm", "Stay still")
    assert manager.value_names([calm.id, "deleted", grit.id]) == ["Calm", "Grit"]


# ---------- Routines ----------

def test_new_items_go_last(manager):
    a = manager.add_routine_item(RoutineItem(title="A"))
    b = manager.add_routine_item(RoutineItem(title="B", order=42))
    assert (a.order, b.order) == (0, 1)


def test_update_and_delete_routine_item(manager):
    item = manager.add_routine_item(RoutineItem(title="Read"))
    assert manager.update_routine_item(RoutineItem(title="Read more", id=item.id)) is True
    assert manager.routine_items[0].title == "Read more"
    assert manager.update_routine_item(RoutineItem(title="Ghost")) is False
    assert manager.delete_routine_item(item.id) is True
    assert manager.delete_routine_item(item.id) is False


def test_routines_for_weekday(manager):
    manager.add_routine_item(RoutineItem(title="Daily"))
    manager.add_routine_item(RoutineItem(title="Weekends", active_days=[0, 6]))
    assert [r.title for r in manager.routines_for_weekday(3)] == ["Daily"]
    assert [r.title for r in manager.routines_for_weekday(6)] == ["Daily", "Weekends"]


def test_toggle_routine_completion(manager, clock):
    item = manager.add_routine_item(RoutineItem(title="Stretch"))
    today = clock()

    assert manager.toggle_routine_completion(item.id, today) is True
    assert manager.is_routine_completed(item.id, today) is True
    assert manager.is_routine_completed(item.id, today - timedelta(days=1)) is False

    assert manager.toggle_routine_completion(item.id, today) is False
    assert manager.is_routine_completed(item.id, today) is False


# ---------- Tasks ----------

def test_complete_records_history(manager, clock):
    task = manager.add_task(Task(title="Call"))

    assert manager.complete_task(task.id) is None

    done = manager.get_task(task.id)
    assert done.is_completed is True
    assert done.completed_date == clock()
    assert task.id in manager.get_today_history_entry().completed_task_ids


def test_weekly_recurring_spawns_next_week(manager, clock):
    due = _utc(2026, 3, 18, 9)
    task = manager.add_task(Task(
        title="Trash", due_date=due, value_ids=["V"], is_recurring=True,
        recurring_frequency=RecurringFrequency.WEEKLY, visibility_window=2,
    ))

    spawned = manager.complete_task(task.id)

    assert spawned.due_date == _utc(2026, 3, 25, 9)
    assert spawned.id != task.id
    assert spawned.is_completed is False
    assert spawned.created_date == clock()
    assert (spawned.title, spawned.value_ids, spawned.visibility_window) == ("Trash", ["V"], 2)
    assert len(manager.tasks) == 2


def test_daily_recurring(manager):
    task = manager.add_task(Task(title="Water plants", due_date=_utc(2026, 3, 18, 8),
                                 is_recurring=True, recurring_frequency=RecurringFrequency.DAILY))
    assert manager.complete_task(task.id).due_date == _utc(2026, 3, 19, 8)


def test_monthly_recurring_clamps_to_month_end(manager):
    task = manager.add_task(Task(title="Invoice", due_date=_utc(2026, 1, 31, 10),
                                 is_recurring=True, recurring_frequency=RecurringFrequency.MONTHLY))
    assert manager.complete_task(task.id).due_date == _utc(2026, 2, 28, 10)


def test_recurring_without_due_date_spawns_nothing(manager):
    task = manager.add_task(Task(title="Someday", is_recurring=True,
                                 recurring_frequency=RecurringFrequency.WEEKLY))
    assert manager.complete_task(task.id) is None
    assert len(manager.tasks) == 1


def test_completing_twice_does_not_spawn_twice(manager):
    task = manager.add_task(Task(title="Trash", due_date=_utc(2026, 3, 18, 9), is_recurring=True,
                                 recurring_frequency=RecurringFrequency.WEEKLY))
    manager.complete_task(task.id)
    assert manager.complete_task(task.id) is None
    assert len(manager.tasks) == 2


def test_uncomplete_removes_history_mark(manager):
    task = manager.add_task(Task(title="Call"))
    manager.complete_task(task.id)

    assert manager.uncomplete_task(task.id) is True

    t = manager.get_task(task.id)
    assert t.is_completed is False and t.completed_date is None
    assert task.id not in manager.get_today_history_entry().completed_task_ids


def test_snooze(manager):
    dated = manager.add_task(Task(title="Dated", due_date=_utc(2026, 3, 18, 9)))
    undated = manager.add_task(Task(title="Undated"))

    assert manager.snooze_task(dated.id, 3) is True
    assert manager.get_task(dated.id).due_date == _utc(2026, 3, 21, 9)
    assert manager.snooze_task(undated.id, 1) is False


def test_active_and_overdue_ordering(manager):
    undated = manager.add_task(Task(title="Undated"))
    later = manager.add_task(Task(title="Later", due_date=_utc(2026, 3, 20, 9)))
    overdue = manager.add_task(Task(title="Overdue", due_date=_utc(2026, 3, 17, 9)))
    today = manager.add_task(Task(title="Today", due_date=_utc(2026, 3, 18, 23)))
    manager.add_task(Task(title="Done", is_completed=True, completed_date=_utc(2026, 3, 10)))

    assert [t.id for t in manager.active_tasks()] == [overdue.id, today.id, later.id, undated.id]
    assert [t.id for t in manager.overdue_tasks()] == [overdue.id]
    assert [t.id for t in manager.active_non_overdue_tasks()] == [today.id, later.id, undated.id]


def test_update_and_delete_task(manager):
    task = manager.add_task(Task(title="Old"))
    assert manager.update_task(Task(title="New", id=task.id, created_date=task.created_date)) is True
    assert manager.get_task(task.id).title == "New"
    assert manager.delete_task(task.id) is True
    assert manager.get_task(task.id) is None
    assert manager.delete_task(task.id) is False


# ---------- History ----------

def test_today_entry_is_get_or_create(manager, clock):
    first = manager.get_today_history_entry()
    second = manager.get_today_history_entry()

    assert first.id == second.id
    assert first.date == start_of_day(clock())
    assert len(manager.history_entries) == 1


def test_adding_completions_is_idempotent(manager):
    assert manager.add_completed_routine_to_history("R1") is True
    assert manager.add_completed_routine_to_history("R1") is False
    assert manager.add_completed_task_to_history("T1") is True
    assert manager.add_completed_task_to_history("T1") is False

    entry = manager.get_today_history_entry()
    assert entry.completed_routine_ids == ["R1"]
    assert entry.completed_task_ids == ["T1"]


def test_new_day_gets_new_entry(manager, clock):
    manager.add_completed_routine_to_history("R1")
    clock.advance(days=1)
    manager.add_completed_routine_to_history("R1")
    assert len(manager.history_entries) == 2


def test_delete_entry(manager):
    entry = manager.get_today_history_entry()
    assert manager.delete_history_entry(entry.id) is True
    assert manager.history_entries == []


def test_clear_history_writes_through(manager, local):
    manager.replace_all(Snapshot(
        values=[], routine_items=[], tasks=[],
        history_entries=[HistoryEntry(date=_utc(2026, 3, 1)), HistoryEntry(date=_utc(2026, 3, 2))],
    ))

    assert manager.clear_history() is True

    assert manager.history_entries == []
    assert local.read(codec.HISTORY_KEY) == b"[]"


# ---------- Analytics ----------

def test_value_analytics_reads_live_history(manager, clock):
    grit = manager.add_custom_value("Grit", "Keep going")
    calm = manager.add_custom_value("Calm", "Stay steady")
    routine = manager.add_routine_item(RoutineItem(title="Breathe", value_ids=[grit.id, calm.id]))
    task = manager.add_task(Task(title="Run", value_ids=[grit.id]))

    manager.toggle_routine_completion(routine.id, clock() - timedelta(days=40))
    manager.toggle_routine_completion(routine.id, clock() - timedelta(days=1))
    manager.complete_task(task.id)

    assert manager.value_analytics(TimeRange.WEEK) == [ValueStat("Grit", 2), ValueStat("Calm", 1)]
    assert manager.value_analytics() == [ValueStat("Grit", 3), ValueStat("Calm", 2)]


def test_completed_tasks_by_month(manager):
    task = manager.add_task(Task(title="Taxes"))
    manager.add_task(Task(title="Still open"))
    manager.complete_task(task.id)

    groups = manager.completed_tasks_by_month()

    assert [g.label for g in groups] == ["March 2026"]
    assert [t.title for t, _ in groups[0].tasks] == ["Taxes"]

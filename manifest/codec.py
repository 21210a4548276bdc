"""
JSON wire format for the persisted collections.

Each record type has a marshmallow schema. Absent keys take the field's
``load_default`` so older blobs (for example, ones written before
``schemaVersion`` existed) keep loading; ``null`` is treated as absent.
Instants are ISO-8601 strings in UTC with a ``Z`` suffix.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

from marshmallow import EXCLUDE, Schema, ValidationError, fields, post_dump, post_load, pre_load

from .errors import DecodeError, SaveError
from .models import HistoryEntry, RecurringFrequency, Reminder, RoutineItem, Task, Value
from .periods import now_utc

VALUES_KEY = "AppValues"
ROUTINE_KEY = "AppRoutine"
TASKS_KEY = "AppTasks"
HISTORY_KEY = "AppHistory"

COLLECTION_KEYS = (VALUES_KEY, ROUTINE_KEY, TASKS_KEY, HISTORY_KEY)


# ---------- Scalars ----------

def format_instant(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class Instant(fields.AwareDateTime):
    """ISO-8601 instant; naive input is read as UTC, output is UTC with a ``Z`` suffix."""

    def __init__(self, **kwargs):
        super().__init__(format="iso", default_timezone=timezone.utc, **kwargs)

    def _serialize(self, value, attr, obj, **kwargs):
        return None if value is None else format_instant(value)


class Frequency(fields.Field):
    """Unknown frequencies load as NONE instead of failing the record."""

    def _serialize(self, value, attr, obj, **kwargs):
        return None if value is None else value.value

    def _deserialize(self, value, attr, data, **kwargs):
        try:
            return RecurringFrequency(value)
        except ValueError:
            return RecurringFrequency.NONE


# ---------- Records ----------

class RecordSchema(Schema):
    """Base for record schemas: ignores unknown keys, drops nulls both ways."""

    record_class: type = dict

    class Meta:
        unknown = EXCLUDE

    @pre_load
    def _drop_nulls(self, data, **kwargs):
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    @post_load
    def _make_record(self, data, **kwargs):
        return self.record_class(**data)

    @post_dump
    def _omit_absent(self, data, **kwargs):
        # optionals are written only when present
        return {k: v for k, v in data.items() if v is not None}


class ValueSchema(RecordSchema):
    record_class = Value

    id = fields.String(required=True)
    name = fields.String(required=True)
    definition = fields.String(required=True)
    is_active = fields.Boolean(required=True, data_key="isActive")
    schema_version = fields.Integer(load_default=1, data_key="schemaVersion")


class RoutineItemSchema(RecordSchema):
    record_class = RoutineItem

    id = fields.String(required=True)
    title = fields.String(required=True)
    time = fields.String(load_default="")
    icon = fields.String(load_default="checkmark.circle")
    value_ids = fields.List(fields.String(), load_default=list, data_key="valueIds")
    notification_enabled = fields.Boolean(load_default=False, data_key="notificationEnabled")
    notification_hour = fields.Integer(load_default=None, data_key="notificationHour")
    notification_minute = fields.Integer(load_default=None, data_key="notificationMinute")
    order = fields.Integer(load_default=0)
    start_time = Instant(load_default=None, data_key="startTime")
    end_time = Instant(load_default=None, data_key="endTime")
    active_days = fields.List(fields.Integer(), load_default=None, data_key="activeDays")
    schema_version = fields.Integer(load_default=1, data_key="schemaVersion")


class ReminderSchema(RecordSchema):
    record_class = Reminder

    id = fields.String(required=True)
    minutes_before = fields.Integer(load_default=None, data_key="minutesBefore")
    custom_date = Instant(load_default=None, data_key="customDate")


class TaskSchema(RecordSchema):
    record_class = Task

    id = fields.String(required=True)
    created_date = Instant(load_default=now_utc, data_key="createdDate")
    title = fields.String(required=True)
    due_date = Instant(load_default=None, data_key="dueDate")
    value_ids = fields.List(fields.String(), required=True, data_key="valueIds")
    is_completed = fields.Boolean(required=True, data_key="isCompleted")
    completed_date = Instant(load_default=None, data_key="completedDate")
    is_appointment = fields.Boolean(required=True, data_key="isAppointment")
    location = fields.String(load_default=None)
    is_recurring = fields.Boolean(required=True, data_key="isRecurring")
    recurring_frequency = Frequency(load_default=RecurringFrequency.NONE, data_key="recurringFrequency")
    recurring_days = fields.List(fields.Integer(), load_default=None, data_key="recurringDays")
    visibility_window = fields.Integer(load_default=None, data_key="visibilityWindow")
    reminders = fields.List(fields.Nested(ReminderSchema), required=True)
    schema_version = fields.Integer(load_default=1, data_key="schemaVersion")


class HistoryEntrySchema(RecordSchema):
    record_class = HistoryEntry

    id = fields.String(required=True)
    date = Instant(required=True)
    completed_routine_ids = fields.List(fields.String(), required=True, data_key="completedRoutineIds")
    completed_task_ids = fields.List(fields.String(), required=True, data_key="completedTaskIds")
    schema_version = fields.Integer(load_default=1, data_key="schemaVersion")


VALUE_SCHEMA = ValueSchema(many=True)
ROUTINE_SCHEMA = RoutineItemSchema(many=True)
TASK_SCHEMA = TaskSchema(many=True)
HISTORY_SCHEMA = HistoryEntrySchema(many=True)


# ---------- Collections ----------

def loads_json(data: bytes) -> Any:
    if not data:
        raise DecodeError("empty blob")
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"malformed JSON: {e}") from e


def decode_collection(schema: Schema, data: bytes) -> list:
    obj = loads_json(data)
    if not isinstance(obj, list):
        raise DecodeError(f"expected a JSON list, got {type(obj).__name__}")
    try:
        # load() validates every record before building any, so a bad one fails the lot
        return schema.load(obj)
    except ValidationError as e:
        raise DecodeError(str(e.messages)) from e


def encode_collection(schema: Schema, records: Sequence) -> bytes:
    try:
        return json.dumps(schema.dump(records)).encode("utf-8")
    except (AttributeError, TypeError, ValueError) as e:
        raise SaveError(f"could not encode collection: {e}") from e


def decode_values(data: bytes) -> List[Value]:
    return decode_collection(VALUE_SCHEMA, data)


def decode_routine_items(data: bytes) -> List[RoutineItem]:
    return decode_collection(ROUTINE_SCHEMA, data)


def decode_tasks(data: bytes) -> List[Task]:
    return decode_collection(TASK_SCHEMA, data)


def decode_history(data: bytes) -> List[HistoryEntry]:
    return decode_collection(HISTORY_SCHEMA, data)


def encode_values(values: Sequence[Value]) -> bytes:
    return encode_collection(VALUE_SCHEMA, values)


def encode_routine_items(items: Sequence[RoutineItem]) -> bytes:
    return encode_collection(ROUTINE_SCHEMA, items)


def encode_tasks(tasks: Sequence[Task]) -> bytes:
    return encode_collection(TASK_SCHEMA, tasks)


def encode_history(entries: Sequence[HistoryEntry]) -> bytes:
    return encode_collection(HISTORY_SCHEMA, entries)


def encode_all(values, routine_items, tasks, history) -> Dict[str, bytes]:
    return {
        VALUES_KEY: encode_values(values),
        ROUTINE_KEY: encode_routine_items(routine_items),
        TASKS_KEY: encode_tasks(tasks),
        HISTORY_KEY: encode_history(history),
    }

from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List

from .periods import now_utc, days_between


def new_id() -> str:
    return str(uuid.uuid4()).upper()


class RecurringFrequency(str, Enum):
    NONE = "None"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"


@dataclass(frozen=True)
class Value:
    name: str
    definition: str
    is_active: bool = False
    id: str = field(default_factory=new_id)
    schema_version: int = 1


@dataclass(frozen=True)
class RoutineItem:
    title: str
    time: str = ""  # legacy display string, superseded by start_time/end_time
    icon: str = "checkmark.circle"
    value_ids: List[str] = field(default_factory=list)
    notification_enabled: bool = False
    notification_hour: Optional[int] = None
    notification_minute: Optional[int] = None
    order: int = 0

    # Only hour/minute are meaningful; the date part is a placeholder.
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    # 0=Sun ... 6=Sat, None means every day
    active_days: Optional[List[int]] = None

    id: str = field(default_factory=new_id)
    schema_version: int = 1

    @property
    def duration_minutes(self) -> Optional[int]:
        if self.start_time is None or self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() // 60)

    def is_active_on(self, weekday: int) -> bool:
        if self.active_days is None:
            return True
        return weekday in self.active_days


@dataclass(frozen=True)
class Reminder:
    # For tasks: minutes before 9 AM of the due day. For appointments: before the due instant.
    minutes_before: Optional[int] = None
    custom_date: Optional[datetime] = None
    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class Task:
    title: str
    due_date: Optional[datetime] = None
    value_ids: List[str] = field(default_factory=list)
    is_completed: bool = False
    completed_date: Optional[datetime] = None

    # Appointments carry an exact due instant and an optional place.
    is_appointment: bool = False
    location: Optional[str] = None

    is_recurring: bool = False
    recurring_frequency: RecurringFrequency = RecurringFrequency.NONE
    recurring_days: Optional[List[int]] = None
    visibility_window: Optional[int] = None  # days before due to show the task

    reminders: List[Reminder] = field(default_factory=list)

    id: str = field(default_factory=new_id)
    created_date: datetime = field(default_factory=now_utc)
    schema_version: int = 1

    def days_until_due(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.due_date is None:
            return None
        return days_between(now or now_utc(), self.due_date)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        days = self.days_until_due(now)
        return days is not None and days < 0

    @property
    def last_modified(self) -> datetime:
        # Recency proxy used by sync; edits that don't touch completion don't advance it.
        return self.completed_date or self.created_date


@dataclass(frozen=True)
class HistoryEntry:
    date: datetime  # start of the local calendar day
    completed_routine_ids: List[str] = field(default_factory=list)
    completed_task_ids: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    schema_version: int = 1

    @property
    def total_completed(self) -> int:
        return len(self.completed_routine_ids) + len(self.completed_task_ids)


@dataclass(frozen=True)
class AppSettings:
    save_debounce_ms: int  # quiet period before a save is written
    cloud_folder: str      # empty disables cloud sync
    cloud_quota_bytes: int

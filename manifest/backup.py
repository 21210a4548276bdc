from __future__ import annotations
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Union

from marshmallow import ValidationError, fields

from . import __version__
from .codec import (
    HistoryEntrySchema, Instant, RecordSchema, RoutineItemSchema, TaskSchema, ValueSchema, loads_json,
)
from .errors import DecodeError, InvalidBackup, SaveError, SaveFailed
from .log import get_logger
from .manager import DataManager, Snapshot
from .models import HistoryEntry, RoutineItem, Task, Value
from .periods import now_utc, timestamp_for_filename

logger = get_logger(__name__)

APP_NAME = "Manifest"


@dataclass(frozen=True)
class BackupData:
    app_version: str
    backup_date: datetime
    values: List[Value]
    routine_items: List[RoutineItem]
    tasks: List[Task]
    history: List[HistoryEntry]


class BackupSchema(RecordSchema):
    record_class = BackupData

    app_version = fields.String(required=True, data_key="appVersion")
    backup_date = Instant(required=True, data_key="backupDate")
    values = fields.List(fields.Nested(ValueSchema), required=True)
    routine_items = fields.List(fields.Nested(RoutineItemSchema), required=True, data_key="routineItems")
    tasks = fields.List(fields.Nested(TaskSchema), required=True)
    history = fields.List(fields.Nested(HistoryEntrySchema), required=True)


BACKUP_SCHEMA = BackupSchema()


def encode_backup(doc: BackupData) -> bytes:
    return json.dumps(BACKUP_SCHEMA.dump(doc), indent=2).encode("utf-8")


def decode_backup(data: bytes) -> BackupData:
    obj = loads_json(data)
    if not isinstance(obj, dict):
        raise DecodeError(f"expected a JSON object, got {type(obj).__name__}")
    try:
        return BACKUP_SCHEMA.load(obj)
    except ValidationError as e:
        raise DecodeError(str(e.messages)) from e


def backup_filename(when: datetime) -> str:
    return f"{APP_NAME}_Backup_{timestamp_for_filename(when)}.json"


def _is_valid_id(value_id: str) -> bool:
    if not value_id:
        return False
    try:
        uuid.UUID(value_id)
    except ValueError:
        return False
    return True


def check_backup(doc: BackupData) -> None:
    """Raise InvalidBackup when a decoded backup looks empty or corrupt."""
    if not (doc.values or doc.routine_items or doc.tasks):
        raise InvalidBackup("The backup contains no values, routines or tasks.")
    for value in doc.values:
        if not _is_valid_id(value.id):
            raise InvalidBackup(f"The backup contains a value with a malformed id: {value.id!r}")


class BackupManager:
    def __init__(
        self,
        manager: DataManager,
        app_version: str = __version__,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.manager = manager
        self.app_version = app_version
        self._clock = clock

    def create_backup(self) -> BackupData:
        s = self.manager.snapshot()
        return BackupData(
            app_version=self.app_version,
            backup_date=self._clock(),
            values=s.values,
            routine_items=s.routine_items,
            tasks=s.tasks,
            history=s.history_entries,
        )

    def export_backup(self, directory: Union[str, Path]) -> Path:
        doc = self.create_backup()
        target = Path(directory) / backup_filename(doc.backup_date)
        try:
            target.write_bytes(encode_backup(doc))
        except OSError as e:
            logger.error("Error writing backup file %s: %s", target, e)
            raise SaveError(f"could not write backup to {target}: {e}") from e
        logger.info("Exported backup to %s", target)
        return target

    def validate_backup(self, data: bytes) -> bool:
        try:
            check_backup(decode_backup(data))
        except (DecodeError, InvalidBackup) as e:
            logger.warning("Backup validation error: %s", e)
            return False
        return True

    def validate_backup_file(self, path: Union[str, Path]) -> bool:
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            logger.warning("Backup validation error: %s", e)
            return False
        return self.validate_backup(data)

    def import_backup(self, data: bytes) -> BackupData:
        """
        Replace all collections with the backup's. Either the backup is fully
        in place and committed locally, or the previous data is restored and
        InvalidBackup / SaveFailed is raised.
        """
        try:
            doc = decode_backup(data)
        except DecodeError as e:
            raise InvalidBackup() from e
        check_backup(doc)

        previous = self.manager.snapshot()
        had_pending_save = self.manager.save_pending
        self.manager.replace_all(Snapshot(
            values=doc.values,
            routine_items=doc.routine_items,
            tasks=doc.tasks,
            history_entries=doc.history,
        ))
        try:
            self.manager.save_all_data_immediately()
        except SaveError as e:
            logger.error("Restored backup could not be saved, rolling back: %s", e)
            self.manager.replace_all(previous)
            if had_pending_save:
                # the failed flush cancelled it; edits made before the import still need writing
                self.manager.save_data()
            raise SaveFailed() from e

        self.manager.migrate_routine_items()
        logger.info(
            "Imported backup from %s (app %s): %d values, %d routines, %d tasks, %d history entries",
            doc.backup_date.isoformat(), doc.app_version,
            len(doc.values), len(doc.routine_items), len(doc.tasks), len(doc.history),
        )
        return doc

    def import_backup_file(self, path: Union[str, Path]) -> BackupData:
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise InvalidBackup(f"The backup file could not be read: {e}") from e
        return self.import_backup(data)

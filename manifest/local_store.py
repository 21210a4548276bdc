from __future__ import annotations
import sqlite3
from typing import Mapping, Optional

from .db import DEFAULT_SETTINGS
from .models import AppSettings
from .periods import now_utc


class LocalStore:
    """
    Per-install blob storage, one row per collection key.

    Writes commit before returning. This is the durable copy of the user's
    data; the cloud copy is only a convenience.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ---------- Blobs ----------
    def read(self, key: str) -> Optional[bytes]:
        r = self.conn.execute("SELECT data FROM blobs WHERE key=?", (key,)).fetchone()
        if r is None:
            return None
        return bytes(r["data"])

    def write(self, key: str, data: bytes) -> None:
        self.write_many({key: data})

    def write_many(self, blobs: Mapping[str, bytes]) -> None:
        stamp = now_utc().isoformat()
        with self.conn:  # one transaction: all keys land or none do
            self.conn.executemany(
                "INSERT INTO blobs(key, data, updated_utc) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET data=excluded.data, updated_utc=excluded.updated_utc",
                [(k, sqlite3.Binary(v), stamp) for k, v in blobs.items()],
            )

    def delete(self, key: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM blobs WHERE key=?", (key,))

    # ---------- Settings ----------
    def get_settings(self) -> AppSettings:
        debounce = self._get_int("save_debounce_ms")
        folder = self._get_setting("cloud_folder", DEFAULT_SETTINGS["cloud_folder"])
        quota = self._get_int("cloud_quota_bytes")
        return AppSettings(save_debounce_ms=debounce, cloud_folder=folder, cloud_quota_bytes=quota)

    def set_save_debounce_ms(self, ms: int) -> None:
        self._set_setting("save_debounce_ms", str(int(ms)))

    def set_cloud_folder(self, path: str) -> None:
        self._set_setting("cloud_folder", path)

    def set_cloud_quota_bytes(self, n: int) -> None:
        self._set_setting("cloud_quota_bytes", str(int(n)))

    def _get_int(self, key: str) -> int:
        default = int(DEFAULT_SETTINGS[key])
        try:
            v = int(self._get_setting(key, str(default)))
        except ValueError:
            return default
        return v if v >= 0 else default

    def _get_setting(self, key: str, default: str) -> str:
        row = self.conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def _set_setting(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT INTO settings(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )
        self.conn.commit()

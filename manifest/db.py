from __future__ import annotations
import sqlite3
from pathlib import Path
from typing import Optional, Union

APP_NAME = "Manifest"
DB_NAME = "manifest.sqlite3"

DEFAULT_SETTINGS = {
    "save_debounce_ms": "2000",
    "cloud_folder": "",
    "cloud_quota_bytes": str(1024 * 1024),
}


def data_dir(app_name: str = APP_NAME) -> Path:
    # Cross-platform local app data dir, MANIFEST_DATA_DIR wins if set
    # macOS: ~/Library/Application Support/Manifest
    # Windows: %APPDATA%\Manifest
    override = _get_env("MANIFEST_DATA_DIR", "")
    if override:
        d = Path(override)
    else:
        home = Path.home()
        if _is_macos():
            base = home / "Library" / "Application Support"
        elif _is_windows():
            base = Path(_get_env("APPDATA", str(home)))
        else:
            base = home / ".local" / "share"
        d = base / app_name
    d.mkdir(parents=True, exist_ok=True)
    return d


def db_path() -> Path:
    return data_dir() / DB_NAME


def connect(path: Optional[Union[str, Path]] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path or db_path()))
    conn.row_factory = sqlite3.Row
    return conn


def migrate(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS blobs (
            key TEXT PRIMARY KEY,
            data BLOB NOT NULL,
            updated_utc TEXT NOT NULL
        );
        """
    )

    # Defaults if missing
    for key, value in DEFAULT_SETTINGS.items():
        conn.execute("INSERT OR IGNORE INTO settings(key,value) VALUES(?,?)", (key, value))

    conn.execute("INSERT OR IGNORE INTO meta(key,value) VALUES('schema','1')")
    conn.commit()


def _is_windows() -> bool:
    import sys
    return sys.platform.startswith("win")


def _is_macos() -> bool:
    import sys
    return sys.platform == "darwin"


def _get_env(k: str, default: str) -> str:
    import os
    return os.environ.get(k, default)

"""
Logging setup: console plus a rotating file under the app data dir.
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from .db import data_dir

LOG_FILE = "manifest.log"
MAX_BYTES = 1024 * 1024
BACKUP_COUNT = 5


def setup_logging(level: str = "INFO", logs_dir: Optional[Path] = None) -> Path:
    logs_dir = Path(logs_dir) if logs_dir else data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root.addHandler(console)

    log_file = logs_dir / LOG_FILE
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s")
    )
    root.addHandler(file_handler)
    return log_file


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)

from __future__ import annotations
import hashlib
import os
from enum import IntEnum
from pathlib import Path
from typing import Dict, List, Optional, Union

from PySide6.QtCore import QFileSystemWatcher, QObject, Signal, Slot

from .log import get_logger

logger = get_logger(__name__)

DEFAULT_QUOTA_BYTES = 1024 * 1024


class ChangeReason(IntEnum):
    SERVER_CHANGE = 0        # another device wrote
    INITIAL_SYNC_CHANGE = 1  # first look at the store after linking
    QUOTA_VIOLATION_CHANGE = 2
    ACCOUNT_CHANGE = 3


class CloudStore(QObject):
    """
    Eventually consistent key-value blob store shared by a user's devices.

    Backends emit changed_externally(reason, keys) for changes they did not
    make themselves.
    """

    changed_externally = Signal(object, list)  # ChangeReason, keys

    def set_data(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def data(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def synchronize(self) -> bool:
        return True


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FolderCloudStore(CloudStore):
    """
    Blob store over a directory that an external sync client replicates
    (Dropbox, Syncthing, a network share...). One ``<key>.json`` file per key,
    plus an ``account`` marker naming the account the folder belongs to.
    """

    SUFFIX = ".json"
    ACCOUNT_FILE = "account"

    def __init__(
        self,
        root: Union[str, Path],
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
        watch: bool = True,
        parent: Optional[QObject] = None,
    ):
        super().__init__(parent)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes

        # key -> digest of the content this process last wrote or read
        self._known: Dict[str, str] = {}
        self._account = self._read_account()
        self._scanned = False

        self._watcher: Optional[QFileSystemWatcher] = None
        if watch:
            self._watcher = QFileSystemWatcher([str(self.root)], self)
            self._watcher.directoryChanged.connect(self._on_directory_changed)

    def _path(self, key: str) -> Path:
        return self.root / f"{key}{self.SUFFIX}"

    def _read_account(self) -> str:
        p = self.root / self.ACCOUNT_FILE
        try:
            return p.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""

    def used_bytes(self, exclude: Optional[str] = None) -> int:
        total = 0
        for p in self.root.glob(f"*{self.SUFFIX}"):
            if p.stem == exclude:
                continue
            try:
                total += p.stat().st_size
            except FileNotFoundError:
                continue  # removed by the sync client mid-scan
        return total

    def set_data(self, key: str, data: bytes) -> None:
        if self.used_bytes(exclude=key) + len(data) > self.quota_bytes:
            logger.warning("Cloud quota of %d bytes exceeded writing %s", self.quota_bytes, key)
            self.changed_externally.emit(ChangeReason.QUOTA_VIOLATION_CHANGE, [key])
            return

        target = self._path(key)
        tmp = self.root / f".{key}{self.SUFFIX}.tmp"
        tmp.write_bytes(data)
        os.replace(tmp, target)
        self._known[key] = _digest(data)

    def data(self, key: str) -> Optional[bytes]:
        try:
            blob = self._path(key).read_bytes()
        except FileNotFoundError:
            return None
        self._known[key] = _digest(blob)
        return blob

    def synchronize(self) -> bool:
        self._scan()
        return True

    @Slot(str)
    def _on_directory_changed(self, _path: str) -> None:
        self._scan()

    def _scan(self) -> None:
        account = self._read_account()
        if account != self._account:
            logger.info("Cloud folder account changed from %r to %r", self._account, account)
            self._account = account
            self._known.clear()
            self.changed_externally.emit(ChangeReason.ACCOUNT_CHANGE, [])
            return

        changed: List[str] = []
        for p in sorted(self.root.glob(f"*{self.SUFFIX}")):
            try:
                digest = _digest(p.read_bytes())
            except FileNotFoundError:
                continue
            if self._known.get(p.stem) != digest:
                self._known[p.stem] = digest
                changed.append(p.stem)

        first = not self._scanned
        self._scanned = True
        if changed:
            reason = ChangeReason.INITIAL_SYNC_CHANGE if first else ChangeReason.SERVER_CHANGE
            logger.debug("Cloud folder change (%s): %s", reason.name, changed)
            self.changed_externally.emit(reason, changed)

from __future__ import annotations
from datetime import datetime
from typing import Callable, List, Optional

from PySide6.QtCore import QObject, Signal, Slot

from .cloud_store import ChangeReason, CloudStore
from .log import get_logger
from .periods import now_utc

logger = get_logger(__name__)

QUOTA_TITLE = "Cloud Storage Full"
QUOTA_MESSAGE = "Your cloud storage is full. Data sync paused. Free up space, then resume cloud uploads."
ACCOUNT_TITLE = "Cloud Account Changed"
ACCOUNT_MESSAGE = "Please restart the app to sync with your new cloud account."


class CloudSync(QObject):
    """
    Best-effort mirror of the local collections in a CloudStore.

    Uploads are fire-and-forget: failures are logged and dropped, since the
    local store already holds the data.
    """

    data_changed = Signal(list)      # keys changed by another device
    error_raised = Signal(str, str)  # title, message

    def __init__(
        self,
        store: CloudStore,
        clock: Callable[[], datetime] = now_utc,
        parent: Optional[QObject] = None,
    ):
        super().__init__(parent)
        self.store = store
        self._clock = clock
        self.is_syncing = False
        self.last_sync_date: Optional[datetime] = None
        self.uploads_suspended = False
        store.changed_externally.connect(self._on_store_changed)

    def upload_data(self, key: str, data: bytes) -> None:
        if self.uploads_suspended:
            logger.debug("Cloud uploads suspended, skipping %s", key)
            return
        try:
            self.store.set_data(key, data)
            if self.uploads_suspended:
                return  # the write tripped the quota
            self.store.synchronize()
        except OSError as e:
            logger.warning("Cloud upload of %s failed: %s", key, e)
            return
        self.last_sync_date = self._clock()

    def download_data(self, key: str) -> Optional[bytes]:
        try:
            return self.store.data(key)
        except OSError as e:
            logger.warning("Cloud download of %s failed: %s", key, e)
            return None

    def force_synchronize(self) -> bool:
        self.is_syncing = True
        try:
            ok = self.store.synchronize()
        except OSError as e:
            logger.warning("Cloud synchronize failed: %s", e)
            ok = False
        finally:
            self.is_syncing = False
        if ok:
            self.last_sync_date = self._clock()
        return ok

    def resume_uploads(self) -> None:
        if self.uploads_suspended:
            logger.info("Cloud uploads resumed")
        self.uploads_suspended = False

    @Slot(object, list)
    def _on_store_changed(self, reason: ChangeReason, keys: List[str]) -> None:
        if reason in (ChangeReason.SERVER_CHANGE, ChangeReason.INITIAL_SYNC_CHANGE):
            self.last_sync_date = self._clock()
            self.data_changed.emit(list(keys))
        elif reason == ChangeReason.QUOTA_VIOLATION_CHANGE:
            logger.warning("Cloud quota exceeded, suspending uploads")
            self.uploads_suspended = True
            self.error_raised.emit(QUOTA_TITLE, QUOTA_MESSAGE)
        elif reason == ChangeReason.ACCOUNT_CHANGE:
            logger.warning("Cloud account changed")
            self.error_raised.emit(ACCOUNT_TITLE, ACCOUNT_MESSAGE)

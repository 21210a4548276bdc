from __future__ import annotations
import signal
import sys
from pathlib import Path
from typing import Optional

from PySide6.QtCore import QTimer
from PySide6.QtGui import QAction, QCursor
from PySide6.QtWidgets import QApplication, QFileDialog, QMenu, QStyle, QSystemTrayIcon

from .backup import BackupManager
from .cloud_store import FolderCloudStore
from .cloud_sync import CloudSync
from .db import connect, data_dir, migrate
from .errors import InvalidBackup, SaveError
from .local_store import LocalStore
from .log import get_logger, setup_logging
from .manager import DataManager
from .notifications import Notifier

logger = get_logger(__name__)


def build_cloud(local: LocalStore) -> Optional[CloudSync]:
    settings = local.get_settings()
    if not settings.cloud_folder:
        logger.info("Cloud sync disabled (no cloud folder configured)")
        return None
    store = FolderCloudStore(Path(settings.cloud_folder).expanduser(), quota_bytes=settings.cloud_quota_bytes)
    return CloudSync(store)


def main() -> int:
    setup_logging()
    app = QApplication(sys.argv)
    app.setQuitOnLastWindowClosed(False)

    # Qt's event loop eats SIGINT unless we pump it. This makes Ctrl-C behave.
    signal.signal(signal.SIGINT, signal.SIG_DFL)
    _sig_timer = QTimer()
    _sig_timer.start(250)
    _sig_timer.timeout.connect(lambda: None)

    conn = connect()
    migrate(conn)
    local = LocalStore(conn)
    cloud = build_cloud(local)

    manager = DataManager(local, cloud, save_debounce_ms=local.get_settings().save_debounce_ms)
    backups = BackupManager(manager)

    tray = QSystemTrayIcon()
    tray.setIcon(app.style().standardIcon(QStyle.StandardPixmap.SP_DriveHDIcon))
    tray.setToolTip("Manifest")

    notifier = Notifier(tray)
    manager.error_raised.connect(notifier.show_error)
    if cloud is not None:
        cloud.error_raised.connect(notifier.show_error)
    tray.show()

    manager.load_all()
    if cloud is not None:
        cloud.force_synchronize()

    menu = QMenu()

    act_sync = QAction("Sync now")
    act_sync.triggered.connect(lambda: _sync_now(cloud, notifier))
    act_sync.setEnabled(cloud is not None)
    menu.addAction(act_sync)

    act_resume = QAction("Resume cloud uploads")
    act_resume.triggered.connect(lambda: _resume_uploads(cloud, manager))
    act_resume.setEnabled(cloud is not None)
    menu.addAction(act_resume)

    menu.addSeparator()

    act_export = QAction("Export backup…")
    act_export.triggered.connect(lambda: _export_backup(backups, notifier))
    menu.addAction(act_export)

    act_import = QAction("Import backup…")
    act_import.triggered.connect(lambda: _import_backup(backups, notifier))
    menu.addAction(act_import)

    menu.addSeparator()

    def quit_cleanly():
        tray.hide()
        app.quit()

    act_quit = QAction("Quit")
    act_quit.triggered.connect(quit_cleanly)
    menu.addAction(act_quit)

    tray.setContextMenu(menu)

    if sys.platform.startswith("win"):
        def _show_menu_on_left_click(reason: QSystemTrayIcon.ActivationReason):
            if reason == QSystemTrayIcon.ActivationReason.Trigger:
                cm = tray.contextMenu()
                if cm is not None:
                    cm.popup(QCursor.pos())

        tray.activated.connect(_show_menu_on_left_click)

    app.aboutToQuit.connect(lambda: _flush_before_exit(manager))

    return app.exec()


def _flush_before_exit(manager: DataManager) -> None:
    try:
        manager.save_all_data_immediately()
    except SaveError as e:
        # Already shown to the user; nothing more can be done on the way out.
        logger.error("Final save failed: %s", e)


def _sync_now(cloud: Optional[CloudSync], notifier: Notifier) -> None:
    if cloud is None:
        return
    if cloud.force_synchronize():
        notifier.show_info("Sync", "Cloud sync completed.")
    else:
        notifier.show_error("Sync", "Cloud sync failed. Your data is still saved on this device.")


def _resume_uploads(cloud: Optional[CloudSync], manager: DataManager) -> None:
    if cloud is None:
        return
    cloud.resume_uploads()
    manager.save_data()


def _export_backup(backups: BackupManager, notifier: Notifier) -> None:
    directory = QFileDialog.getExistingDirectory(None, "Export backup to", str(Path.home()))
    if not directory:
        return
    try:
        path = backups.export_backup(directory)
    except SaveError:
        notifier.show_error("Export Failed", "The backup file could not be written.")
        return
    notifier.show_info("Backup Exported", f"Saved {path.name}")


def _import_backup(backups: BackupManager, notifier: Notifier) -> None:
    path, _ = QFileDialog.getOpenFileName(None, "Import backup", str(data_dir()), "Backups (*.json)")
    if not path:
        return
    try:
        backups.import_backup_file(path)
    except (InvalidBackup, SaveError) as e:
        notifier.show_error("Import Failed", str(e))
        return
    notifier.show_info("Backup Restored", "Your data was restored from the backup.")


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations
from PySide6.QtCore import QObject, Slot
from PySide6.QtWidgets import QSystemTrayIcon


class Notifier(QObject):
    def __init__(self, tray: QSystemTrayIcon):
        super().__init__(tray)
        self.tray = tray

    @Slot(str, str)
    def show_error(self, title: str, message: str) -> None:
        self.tray.showMessage(title, message, QSystemTrayIcon.MessageIcon.Warning, 10_000)

    @Slot(str, str)
    def show_info(self, title: str, message: str) -> None:
        self.tray.showMessage(title, message, QSystemTrayIcon.MessageIcon.Information, 10_000)

import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import pytest  # noqa: E402
from PySide6.QtCore import QCoreApplication, QThreadPool  # noqa: E402
from PySide6.QtTest import QTest  # noqa: E402

import manifest.periods as periods  # noqa: E402
from manifest.cloud_store import ChangeReason, CloudStore  # noqa: E402
from manifest.cloud_sync import CloudSync  # noqa: E402
from manifest.db import connect, migrate  # noqa: E402
from manifest.local_store import LocalStore  # noqa: E402
from manifest.manager import DataManager  # noqa: E402

DEBOUNCE_MS = 100


class FakeCloudStore(CloudStore):
    def __init__(self):
        super().__init__()
        self.blobs = {}
        self.uploads = []
        self.fail_uploads = False

    def set_data(self, key, data):
        if self.fail_uploads:
            raise OSError("network unreachable")
        self.blobs[key] = data
        self.uploads.append(key)

    def data(self, key):
        return self.blobs.get(key)

    def push_remote(self, key, data, reason=ChangeReason.SERVER_CHANGE):
        """Simulate another device writing key."""
        self.blobs[key] = data
        self.changed_externally.emit(reason, [key])


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now = self.now + timedelta(**kw)


@pytest.fixture(scope="session")
def qapp():
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture(autouse=True)
def utc_local_time(monkeypatch):
    monkeypatch.setattr(periods, "local_tz", lambda: timezone.utc)


@pytest.fixture
def local(tmp_path):
    conn = connect(tmp_path / "manifest.sqlite3")
    migrate(conn)
    yield LocalStore(conn)
    conn.close()


@pytest.fixture
def cloud_store(qapp):
    return FakeCloudStore()


@pytest.fixture
def cloud(cloud_store):
    return CloudSync(cloud_store)


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc))  # a Wednesday


@pytest.fixture
def manager(qapp, local, cloud, clock):
    m = DataManager(local, cloud, save_debounce_ms=DEBOUNCE_MS, clock=clock)
    yield m
    m.cancel_pending_save()
    QThreadPool.globalInstance().waitForDone()
    QCoreApplication.processEvents()


@pytest.fixture
def errors(manager):
    seen = []
    manager.error_raised.connect(lambda title, message: seen.append((title, message)))
    return seen


@pytest.fixture
def write_log(local, monkeypatch):
    """Keys of every local commit, one list per transaction."""
    calls = []
    original = local.write_many

    def counting(blobs):
        calls.append(sorted(blobs))
        original(blobs)

    monkeypatch.setattr(local, "write_many", counting)
    return calls


@pytest.fixture
def wait_until(qapp):
    def wait(predicate, timeout_ms=3000):
        waited = 0
        while not predicate():
            if waited >= timeout_ms:
                raise AssertionError("condition not met in time")
            QTest.qWait(10)
            waited += 10
    return wait

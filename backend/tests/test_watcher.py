"""Tests for the watchdog-backed directory watcher."""
import asyncio

import pytest
import pytest_asyncio

from fileshare.services.file_storage import LocalFileStorage
from fileshare.services.watcher import StorageEventType
from tests.fakes import wait_for


class EventLog:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append((event.kind, event.filename))

    def of(self, kind):
        return [name for recorded, name in self.events if recorded is kind]


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def watched(upload_dir):
    """Started storage plus the log of everything its watcher emitted."""
    storage = LocalFileStorage(upload_dir, stability_seconds=0.1, poll_seconds=0.01)
    log = EventLog()
    storage.subscribe(log)
    await storage.start()
    yield storage, log
    await storage.close()


class TestDirectoryWatcher:
    """Tests for add/update/delete detection."""

    @pytest.mark.asyncio
    async def test_initial_scan_reports_existing_files(self, upload_dir):
        (upload_dir / "existing.txt").write_bytes(b"hi")
        (upload_dir / ".hidden").write_bytes(b"hi")
        storage = LocalFileStorage(upload_dir, stability_seconds=0.1, poll_seconds=0.01)
        log = EventLog()
        storage.subscribe(log)
        await storage.start()
        try:
            await wait_for(lambda: log.of(StorageEventType.ADDED))
            assert log.of(StorageEventType.ADDED) == ["existing.txt"]
        finally:
            await storage.close()

    @pytest.mark.asyncio
    async def test_external_drop_is_added(self, watched, upload_dir):
        storage, log = watched
        (upload_dir / "dropped.txt").write_bytes(b"dropped")

        await wait_for(lambda: "dropped.txt" in log.of(StorageEventType.ADDED))
        await asyncio.sleep(0.3)
        assert log.of(StorageEventType.ADDED) == ["dropped.txt"]

    @pytest.mark.asyncio
    async def test_own_save_is_added_once(self, watched):
        storage, log = watched
        filename = await storage.save("report.pdf", b"%PDF" * 100)

        await wait_for(lambda: filename in log.of(StorageEventType.ADDED))
        await asyncio.sleep(0.3)
        assert log.of(StorageEventType.ADDED) == [filename]
        assert all(not name.startswith(".") for _, name in log.events)

    @pytest.mark.asyncio
    async def test_delete_is_reported(self, watched):
        storage, log = watched
        filename = await storage.save("a.txt", b"a")
        await wait_for(lambda: filename in log.of(StorageEventType.ADDED))

        await storage.delete(filename)
        await wait_for(lambda: filename in log.of(StorageEventType.DELETED))

    @pytest.mark.asyncio
    async def test_modification_is_updated(self, watched, upload_dir):
        storage, log = watched
        path = upload_dir / "notes.txt"
        path.write_bytes(b"v1")
        await wait_for(lambda: "notes.txt" in log.of(StorageEventType.ADDED))

        with path.open("ab") as f:
            f.write(b" and v2")
        await wait_for(lambda: "notes.txt" in log.of(StorageEventType.UPDATED))

    @pytest.mark.asyncio
    async def test_no_added_while_file_is_still_written(self, watched, upload_dir):
        storage, log = watched
        path = upload_dir / "slow.bin"
        with path.open("wb") as f:
            for _ in range(6):
                f.write(b"x" * 1024)
                f.flush()
                await asyncio.sleep(0.04)
                assert log.of(StorageEventType.ADDED) == []

        await wait_for(lambda: log.of(StorageEventType.ADDED) == ["slow.bin"])

    @pytest.mark.asyncio
    async def test_file_removed_before_write_finished_is_never_reported(self, watched, upload_dir):
        storage, log = watched
        path = upload_dir / "flash.txt"
        path.write_bytes(b"x")
        path.unlink()

        await asyncio.sleep(0.3)
        assert log.events == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_dispatch(self, upload_dir):
        storage = LocalFileStorage(upload_dir, stability_seconds=0.05, poll_seconds=0.01)

        async def broken(event):
            raise RuntimeError("boom")

        log = EventLog()
        storage.subscribe(broken)
        storage.subscribe(log)
        await storage.start()
        try:
            (upload_dir / "one.txt").write_bytes(b"1")
            (upload_dir / "two.txt").write_bytes(b"2")
            await wait_for(lambda: sorted(log.of(StorageEventType.ADDED)) == ["one.txt", "two.txt"])
        finally:
            await storage.close()

    @pytest.mark.asyncio
    async def test_own_save_removed_before_announcement_is_reported_deleted(self, watched):
        storage, log = watched
        filename = await storage.save("short-lived.txt", b"x")
        await storage.delete(filename)

        await wait_for(lambda: filename in log.of(StorageEventType.DELETED))
        assert log.of(StorageEventType.ADDED) == []

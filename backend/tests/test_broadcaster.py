"""Tests for the WebSocket broadcaster."""
import pytest
import pytest_asyncio

from fileshare.services.broadcaster import FileBroadcaster
from fileshare.services.watcher import StorageEventType
from tests.fakes import RecordingSubscriber


@pytest_asyncio.fixture
async def broadcaster(file_service):
    return FileBroadcaster(file_service)


def _events(subscriber):
    return [message["event"] for message in subscriber.messages]


class TestFileBroadcaster:
    """Tests for snapshots and event relaying."""

    @pytest.mark.asyncio
    async def test_connect_sends_current_list(self, broadcaster, file_service):
        info = await file_service.upload(b"data", "a.txt")
        subscriber = RecordingSubscriber()

        await broadcaster.connect(subscriber)

        [message] = subscriber.messages
        assert message["event"] == "files-changed"
        [entry] = message["data"]
        assert entry["filename"] == info.filename
        assert entry["displayName"] == "a.txt"
        assert entry["deleteOnDownload"] is False
        assert set(entry) == {"filename", "displayName", "size", "mimeType", "createdAt", "deleteOnDownload", "url"}

    @pytest.mark.asyncio
    async def test_connect_with_empty_store_sends_empty_list(self, broadcaster):
        subscriber = RecordingSubscriber()
        await broadcaster.connect(subscriber)
        assert subscriber.messages == [{"event": "files-changed", "data": []}]
        assert broadcaster.subscriber_count == 1

    @pytest.mark.asyncio
    async def test_upload_is_broadcast_in_order(self, broadcaster, file_service):
        subscriber = RecordingSubscriber()
        await broadcaster.connect(subscriber)
        subscriber.messages.clear()

        info = await file_service.upload(b"data", "a.txt", delete_on_download=True)

        assert _events(subscriber) == [
            "file-processing-started",
            "files-changed",
            "file-processing-completed",
        ]
        started, changed, completed = subscriber.messages
        assert started["data"] == {"filename": "a.txt"}
        assert [f["filename"] for f in changed["data"]] == [info.filename]
        assert completed["data"]["fileInfo"]["deleteOnDownload"] is True

    @pytest.mark.asyncio
    async def test_one_snapshot_per_change(self, broadcaster, file_service, fake_storage):
        subscriber = RecordingSubscriber()
        await broadcaster.connect(subscriber)
        info = await file_service.upload(b"data", "a.txt")
        subscriber.messages.clear()

        await file_service.delete(info.filename)
        fake_storage.add_blob("dropped.txt", b"x")
        await fake_storage.emit(StorageEventType.ADDED, "dropped.txt")

        assert _events(subscriber) == ["files-changed", "files-changed"]
        assert subscriber.messages[0]["data"] == []
        assert [f["filename"] for f in subscriber.messages[1]["data"]] == ["dropped.txt"]

    @pytest.mark.asyncio
    async def test_error_payload_is_relayed(self, broadcaster, file_service):
        subscriber = RecordingSubscriber()
        await broadcaster.connect(subscriber)
        subscriber.messages.clear()

        with pytest.raises(Exception):
            await file_service.upload(None, "nothing.txt")

        assert subscriber.messages[-1] == {
            "event": "file-processing-error",
            "data": {"filename": "nothing.txt", "error": "No file uploaded"},
        }

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_dropped(self, broadcaster, file_service):
        healthy = RecordingSubscriber()
        await broadcaster.connect(healthy)
        broken = RecordingSubscriber()
        await broadcaster.connect(broken)
        broken.fail = True
        assert broadcaster.subscriber_count == 2

        await file_service.upload(b"data", "a.txt")

        assert broadcaster.subscriber_count == 1
        assert "file-processing-completed" in _events(healthy)

    @pytest.mark.asyncio
    async def test_subscriber_failing_on_connect_is_not_kept(self, broadcaster):
        await broadcaster.connect(RecordingSubscriber(fail=True))
        assert broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_disconnect_stops_delivery(self, broadcaster, file_service):
        subscriber = RecordingSubscriber()
        await broadcaster.connect(subscriber)
        broadcaster.disconnect(subscriber)
        subscriber.messages.clear()

        await file_service.upload(b"data", "a.txt")

        assert subscriber.messages == []

import pytest
import pytest_asyncio

from fileshare.config import Settings
from fileshare.database import build_engine, build_session_factory
from fileshare.services.file_service import FileService
from fileshare.services.metadata_store import SqlMetadataStore
from tests.fakes import EventRecorder, FakeBlobStorage


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'metadata' / 'metadata.db'}"


@pytest_asyncio.fixture
async def metadata_store(database_url):
    """SQLite-backed metadata store in a temp directory."""
    engine = build_engine(database_url)
    store = SqlMetadataStore(build_session_factory(engine), base_url="http://testserver")
    await store.init()
    yield store
    await engine.dispose()


@pytest.fixture
def fake_storage():
    return FakeBlobStorage()


@pytest_asyncio.fixture
async def file_service(fake_storage, metadata_store):
    """Coordinator over the in-memory storage and a real SQLite store."""
    service = FileService(fake_storage, metadata_store)
    yield service
    await service.close()


@pytest.fixture
def recorder(file_service):
    return EventRecorder(file_service.events)


@pytest.fixture
def app_settings(tmp_path):
    """Settings with short timings so watcher and scheduler react within a test."""
    return Settings(
        UPLOAD_DIR=str(tmp_path / "uploads"),
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'metadata' / 'metadata.db'}",
        PUBLIC_BASE_URL="http://testserver",
        WATCHER_STABILITY_SECONDS=0.05,
        WATCHER_POLL_SECONDS=0.01,
        SCHEDULER_SETTLE_SECONDS=0.01,
    )

"""Tests for the SQLAlchemy metadata store."""
from datetime import datetime, timezone

import pytest

from fileshare.database import build_engine, build_session_factory
from fileshare.models import FileRecord
from fileshare.schemas.file import DEFAULT_MIME_TYPE, FileInfo
from fileshare.services.metadata_store import SqlMetadataStore


def _info(filename="1700000000000-0123456789ab-report.pdf", **overrides):
    values = dict(
        filename=filename,
        display_name="report.pdf",
        size=1024,
        mime_type="application/pdf",
        created_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        delete_on_download=False,
    )
    values.update(overrides)
    return FileInfo(**values)


class TestSqlMetadataStore:
    """Tests for get/list/put/delete."""

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, metadata_store):
        assert await metadata_store.get("missing.txt") is None

    @pytest.mark.asyncio
    async def test_put_then_get(self, metadata_store):
        info = _info()
        await metadata_store.put(info.filename, info)

        stored = await metadata_store.get(info.filename)
        assert stored.display_name == "report.pdf"
        assert stored.size == 1024
        assert stored.mime_type == "application/pdf"
        assert stored.created_at == info.created_at
        assert stored.delete_on_download is False
        assert stored.url == f"http://testserver/download/{info.filename}"

    @pytest.mark.asyncio
    async def test_put_upserts(self, metadata_store):
        info = _info()
        await metadata_store.put(info.filename, info)
        await metadata_store.put(info.filename, info.model_copy(update={"delete_on_download": True}))

        assert (await metadata_store.get(info.filename)).delete_on_download is True
        assert len(await metadata_store.list()) == 1

    @pytest.mark.asyncio
    async def test_delete_and_delete_missing(self, metadata_store):
        info = _info()
        await metadata_store.put(info.filename, info)
        await metadata_store.delete(info.filename)
        await metadata_store.delete(info.filename)
        assert await metadata_store.get(info.filename) is None

    @pytest.mark.asyncio
    async def test_filenames(self, metadata_store):
        await metadata_store.put("a.txt", _info("a.txt"))
        await metadata_store.put("b.txt", _info("b.txt"))
        assert await metadata_store.filenames() == {"a.txt", "b.txt"}

    @pytest.mark.asyncio
    async def test_list_fills_defaults_for_partial_rows(self, metadata_store):
        async with metadata_store._session_factory() as session:
            session.add(FileRecord(filename="1700000000000-0123456789ab-notes.txt", delete_on_download=False))
            await session.commit()

        [info] = await metadata_store.list()
        assert info.display_name == "notes.txt"
        assert info.size == 0
        assert info.mime_type == DEFAULT_MIME_TYPE
        assert info.created_at.tzinfo is not None
        assert info.delete_on_download is False

    @pytest.mark.asyncio
    async def test_records_survive_restart(self, database_url):
        engine = build_engine(database_url)
        store = SqlMetadataStore(build_session_factory(engine))
        await store.init()
        await store.put("kept.txt", _info("kept.txt", delete_on_download=True))
        await engine.dispose()

        engine = build_engine(database_url)
        store = SqlMetadataStore(build_session_factory(engine))
        await store.init()
        try:
            stored = await store.get("kept.txt")
            assert stored is not None
            assert stored.delete_on_download is True
        finally:
            await engine.dispose()

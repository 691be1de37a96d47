"""Durable filename -> FileInfo mapping backed by async SQLAlchemy.

Every mutating call runs in its own committed transaction, so a crash between
calls leaves the last committed state authoritative on restart.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fileshare.models import Base, FileRecord
from fileshare.schemas.file import DEFAULT_MIME_TYPE, FileInfo
from fileshare.services.file_storage import display_name_from_filename

logger = logging.getLogger(__name__)


class MetadataStore(Protocol):
    """Capability the coordinator needs from a metadata backend."""

    async def get(self, filename: str) -> Optional[FileInfo]: ...

    async def list(self) -> List[FileInfo]: ...

    async def put(self, filename: str, info: FileInfo) -> None: ...

    async def delete(self, filename: str) -> None: ...

    async def filenames(self) -> set[str]: ...


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlMetadataStore:
    """MetadataStore over a SQLAlchemy async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], base_url: str = ""):
        self._session_factory = session_factory
        self._base_url = base_url.rstrip("/")

    async def init(self) -> None:
        """Create the files table if it does not exist yet."""
        async with self._session_factory() as session:
            conn = await session.connection()
            await conn.run_sync(Base.metadata.create_all)
            await session.commit()

    def url_for(self, filename: str) -> str:
        return f"{self._base_url}/download/{filename}"

    def _to_info(self, row: FileRecord) -> FileInfo:
        """Build a FileInfo, filling defaults for any missing column."""
        return FileInfo(
            filename=row.filename,
            display_name=row.display_name or display_name_from_filename(row.filename),
            size=row.size_bytes or 0,
            mime_type=row.mime_type or DEFAULT_MIME_TYPE,
            created_at=_as_utc(row.created_at),
            delete_on_download=bool(row.delete_on_download),
            url=self.url_for(row.filename),
        )

    async def get(self, filename: str) -> Optional[FileInfo]:
        async with self._session_factory() as session:
            row = await session.get(FileRecord, filename)
            if row is None:
                return None
            return self._to_info(row)

    async def list(self) -> List[FileInfo]:
        async with self._session_factory() as session:
            result = await session.execute(select(FileRecord).order_by(FileRecord.created_at))
            return [self._to_info(row) for row in result.scalars().all()]

    async def filenames(self) -> set[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(FileRecord.filename))
            return set(result.scalars().all())

    async def put(self, filename: str, info: FileInfo) -> None:
        """Upsert the record for filename and commit before returning."""
        async with self._session_factory() as session:
            await session.merge(FileRecord(
                filename=filename,
                display_name=info.display_name,
                size_bytes=info.size,
                mime_type=info.mime_type,
                created_at=info.created_at.astimezone(timezone.utc),
                delete_on_download=info.delete_on_download,
            ))
            await session.commit()
        logger.debug(f"Saved metadata for {filename}")

    async def delete(self, filename: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(delete(FileRecord).where(FileRecord.filename == filename))
            await session.commit()
        if result.rowcount:
            logger.debug(f"Deleted metadata for {filename}")

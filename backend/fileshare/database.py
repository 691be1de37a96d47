"""Async SQLAlchemy engine and session factory.

Built once per application in the lifespan and handed to the metadata store:
    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)
    store = SqlMetadataStore(session_factory, base_url)
"""
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def _ensure_sqlite_dir(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def build_engine(database_url: str) -> AsyncEngine:
    """Create the async engine, creating the SQLite directory if needed."""
    _ensure_sqlite_dir(database_url)
    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

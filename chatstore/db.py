from __future__ import annotations

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from chatstore.config import Settings


class Base(DeclarativeBase):
    pass


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def create_engine_for(settings: Settings) -> AsyncEngine:
    """Single-connection async engine over the profile's SQLite file."""
    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        settings.database_url,
        echo=settings.sqlite_echo,
        poolclass=StaticPool,
    )
    # Cascade deletes depend on this pragma, which SQLite scopes per connection.
    event.listen(engine.sync_engine, "connect", _enable_foreign_keys)
    return engine


def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)

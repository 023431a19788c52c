"""Database utilities for the WatchSync service."""

from __future__ import annotations

import logging

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

CACHE_TABLE = "cache_entries"

# (column, column DDL, backfill value) added to cache tables created by older releases.
CACHE_COLUMN_MIGRATIONS: tuple[tuple[str, str, str | None], ...] = (
    ("ttl_seconds", "INTEGER DEFAULT 86400", "86400"),
    ("item_count", "INTEGER DEFAULT 0", "0"),
)


class Base(DeclarativeBase):
    metadata = MetaData()


class Database:
    """Owns the async engine and hands out sessions to the cache tier."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    async def create_all(self) -> None:
        """Create the cache table and bring older copies up to date."""

        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(_migrate_cache_table)

    async def dispose(self) -> None:
        await self._engine.dispose()


def _migrate_cache_table(sync_connection) -> None:
    inspector = inspect(sync_connection)
    if CACHE_TABLE not in inspector.get_table_names():
        return

    present = {column["name"] for column in inspector.get_columns(CACHE_TABLE)}
    for name, ddl, backfill in CACHE_COLUMN_MIGRATIONS:
        if name in present:
            continue
        logger.info("Adding column %s to %s", name, CACHE_TABLE)
        sync_connection.execute(text(f"ALTER TABLE {CACHE_TABLE} ADD COLUMN {name} {ddl}"))
        if backfill is not None:
            sync_connection.execute(
                text(f"UPDATE {CACHE_TABLE} SET {name} = {backfill} WHERE {name} IS NULL")
            )

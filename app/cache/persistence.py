"""TTL-bounded, owner-scoped key-value tier backed by SQLAlchemy."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import CacheEntryRecord
from ..models import CacheEnvelope
from ..utils import utcnow

logger = logging.getLogger(__name__)


class SqlCacheTier:
    """Persistent mirror of the in-memory caches.

    Every entry is keyed by ``(cache_key, owner_key)`` so identities sharing
    one database never observe each other's data. Writes overwrite the whole
    envelope; reads past ``stored_at + ttl`` are misses.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        default_ttl_seconds: int = 86_400,
        clock: Callable[[], datetime] | None = None,
    ):
        self._session_factory = session_factory
        self._default_ttl_seconds = default_ttl_seconds
        self._clock = clock or utcnow

    async def get_envelope(self, key: str, owner_key: str) -> CacheEnvelope | None:
        """Return the stored envelope when present and still fresh."""

        try:
            async with self._session_factory() as session:
                record = await session.scalar(
                    select(CacheEntryRecord).where(
                        CacheEntryRecord.cache_key == key,
                        CacheEntryRecord.owner_key == owner_key,
                    )
                )
        except SQLAlchemyError as exc:
            logger.warning("Failed to read cache entry %s: %s", key, exc)
            return None

        if record is None:
            return None
        envelope = CacheEnvelope(
            data=record.payload,
            stored_at=record.stored_at,
            ttl_seconds=record.ttl_seconds,
            owner_key=record.owner_key,
        )
        if envelope.is_expired(self._clock()):
            logger.info("Cache entry %s for %s has expired", key, owner_key)
            return None
        return envelope

    async def get(self, key: str, owner_key: str) -> Any | None:
        envelope = await self.get_envelope(key, owner_key)
        if envelope is None:
            return None
        return envelope.data

    async def set(
        self,
        key: str,
        value: Any,
        owner_key: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Replace the stored value for ``key``; returns ``False`` on failure."""

        ttl = self._default_ttl_seconds if ttl_seconds is None else ttl_seconds
        item_count = len(value) if isinstance(value, (list, dict)) else 1
        now = self._clock()
        try:
            async with self._session_factory() as session:
                record = await session.scalar(
                    select(CacheEntryRecord).where(
                        CacheEntryRecord.cache_key == key,
                        CacheEntryRecord.owner_key == owner_key,
                    )
                )
                if record is None:
                    record = CacheEntryRecord(cache_key=key, owner_key=owner_key)
                    session.add(record)
                record.payload = value
                record.item_count = item_count
                record.ttl_seconds = ttl
                record.stored_at = now
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to store cache entry %s: %s", key, exc)
            return False

        logger.info(
            "Cached %s item(s) for %s (TTL: %ss)", item_count, key, ttl
        )
        return True

    async def clear(self, key: str, owner_key: str) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(CacheEntryRecord).where(
                        CacheEntryRecord.cache_key == key,
                        CacheEntryRecord.owner_key == owner_key,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to clear cache entry %s: %s", key, exc)
            return False
        logger.info("Cleared cache for %s", key)
        return True

    async def clear_all(self, owner_key: str) -> int:
        """Drop every entry belonging to ``owner_key``."""

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(CacheEntryRecord).where(
                        CacheEntryRecord.owner_key == owner_key
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to clear caches for %s: %s", owner_key, exc)
            return 0
        removed = result.rowcount or 0
        logger.info("Cleared all caches for %s: %s entries", owner_key, removed)
        return removed

    async def age_seconds(self, key: str, owner_key: str) -> float | None:
        envelope = await self.get_envelope(key, owner_key)
        if envelope is None:
            return None
        return (self._clock() - envelope.stored_at).total_seconds()

    async def cache_names(self, owner_key: str) -> list[str]:
        try:
            async with self._session_factory() as session:
                result = await session.scalars(
                    select(CacheEntryRecord.cache_key)
                    .where(CacheEntryRecord.owner_key == owner_key)
                    .order_by(CacheEntryRecord.cache_key)
                )
                return list(result)
        except SQLAlchemyError as exc:
            logger.warning("Failed to list caches for %s: %s", owner_key, exc)
            return []

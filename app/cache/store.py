"""Canonical in-memory arrays mirrored to the persistent tier."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Generic, Iterable, TypeVar

from pydantic import ValidationError

from ..errors import TransportError
from ..models import MediaModel
from ..utils import page_count
from .persistence import SqlCacheTier

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=MediaModel)


class CacheStore(Generic[RecordT]):
    """Owns the canonical array for one cache class.

    ``load`` resolves memory first, then the persistent tier, then the
    remote source. At most one population runs at a time; callers arriving
    while it is in flight get the data currently in memory unless they ask
    to wait. Mutations bump ``version`` so projections can tell when their
    derived views are stale.
    """

    def __init__(
        self,
        name: str,
        *,
        tier: SqlCacheTier,
        source: Callable[[], Awaitable[list[RecordT]]],
        key: Callable[[RecordT], str],
        restore: Callable[[object], RecordT],
        owner_key: str,
        ttl_seconds: int,
        page_size: int = 20,
        key_prefix: str = "",
    ):
        self.name = name
        self.cache_key = f"{key_prefix}{name}"
        self.page_size = page_size
        self.owner_key = owner_key
        self.ttl_seconds = ttl_seconds
        self.fully_loaded = False
        self.version = 0
        self.total_pages = 0
        self._tier = tier
        self._source = source
        self._key = key
        self._restore = restore
        self._data: list[RecordT] = []
        self._inflight: asyncio.Task[list[RecordT]] | None = None
        self._batch_depth = 0
        self._dirty = False

    @property
    def data(self) -> list[RecordT]:
        """The canonical array. Callers must not mutate it directly."""

        return self._data

    @property
    def is_fetching(self) -> bool:
        return self._inflight is not None

    def __len__(self) -> int:
        return len(self._data)

    def key_of(self, record: RecordT) -> str:
        return self._key(record)

    def get(self, key: str) -> RecordT | None:
        for record in self._data:
            if self._key(record) == key:
                return record
        return None

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    async def load(self, use_cache: bool = True, *, wait: bool = False) -> list[RecordT]:
        """Return the canonical array, populating it when cold."""

        if self._inflight is not None:
            if wait:
                return await asyncio.shield(self._inflight)
            logger.info("%s fetch already in progress, skipping duplicate call", self.name)
            return self._data

        if use_cache and self.fully_loaded:
            logger.info("Using in-memory %s cache", self.name)
            return self._data

        self._inflight = asyncio.create_task(self._populate(use_cache))
        # Shielded so a caller going away does not cancel the population.
        return await asyncio.shield(self._inflight)

    async def hydrate(self) -> bool:
        """Adopt the persistent copy when memory is cold, without going remote."""

        if self.fully_loaded:
            return True
        if self._inflight is not None:
            return False
        return await self._adopt_persisted()

    async def _populate(self, use_cache: bool) -> list[RecordT]:
        try:
            if use_cache and await self._adopt_persisted():
                return self._data

            logger.info("Starting %s fetch...", self.name)
            try:
                records = await self._source()
            except TransportError as exc:
                logger.warning("Failed to fetch %s: %s", self.name, exc)
                return self._data

            self.replace(records)
            await self.persist()
            logger.info(
                "%s loaded: %s items, %s pages",
                self.name,
                len(self._data),
                self.total_pages,
            )
            return self._data
        finally:
            self._inflight = None

    async def _adopt_persisted(self) -> bool:
        cached = await self._tier.get(self.cache_key, self.owner_key)
        if not isinstance(cached, list):
            return False
        self.replace(self._restore_all(cached))
        logger.info("Using persisted cache for %s (%s items)", self.name, len(self._data))
        return True

    def _restore_all(self, payload: Iterable[object]) -> list[RecordT]:
        restored: list[RecordT] = []
        for entry in payload:
            try:
                restored.append(self._restore(entry))
            except ValidationError as exc:
                logger.warning("Dropping unreadable %s cache entry: %s", self.name, exc)
        return restored

    def replace(self, records: Iterable[RecordT]) -> None:
        """Adopt ``records`` as the complete canonical array."""

        self._data = list(records)
        self.fully_loaded = True
        self._changed()

    def upsert_one(self, record: RecordT, *, front: bool = False) -> None:
        """Insert or replace one record by key."""

        key = self._key(record)
        for index, existing in enumerate(self._data):
            if self._key(existing) == key:
                self._data[index] = record
                break
        else:
            if front:
                self._data.insert(0, record)
            else:
                self._data.append(record)
        self._changed()

    def remove_one(self, key: str) -> RecordT | None:
        for index, existing in enumerate(self._data):
            if self._key(existing) == key:
                removed = self._data.pop(index)
                self._changed()
                return removed
        return None

    def touch(self) -> None:
        """Record that a cached record was mutated in place."""

        self._changed()

    def _changed(self) -> None:
        self.version += 1
        self.total_pages = page_count(len(self._data), self.page_size)

    async def persist(self) -> bool:
        """Write the pruned canonical array to the persistent tier.

        Inside ``batch()`` the write is deferred to the end of the batch.
        Only a fully loaded array is written; a partially populated one
        would otherwise overwrite a complete persisted copy.
        """

        if self._batch_depth > 0:
            self._dirty = True
            return True
        if not self.fully_loaded:
            logger.info("%s cache not fully loaded, skipping persist", self.name)
            return False
        payload = [record.to_storage() for record in self._data]
        return await self._tier.set(
            self.cache_key, payload, self.owner_key, self.ttl_seconds
        )

    @asynccontextmanager
    async def batch(self) -> AsyncIterator["CacheStore[RecordT]"]:
        """Coalesce every ``persist`` inside the block into a single write."""

        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self._dirty = False
                await self.persist()

    async def clear(self) -> None:
        """Drop both the in-memory and the persisted copy."""

        self._data = []
        self.fully_loaded = False
        self._changed()
        await self._tier.clear(self.cache_key, self.owner_key)

"""Facade wiring the cache stores, projections and reconciliation together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ..cache.persistence import SqlCacheTier
from ..cache.projection import (
    MOVIE_SORT_OPTIONS,
    PROGRESS_SORT_OPTIONS,
    WATCHLIST_SORT_OPTIONS,
    Direction,
    Projector,
    match_movie,
    match_series,
    match_watchlist,
)
from ..cache.render_guard import RenderSkipGuard
from ..cache.store import CacheStore
from ..config import Settings
from ..errors import NotFoundError, TransportError
from ..models import (
    TYPE_BY_CATEGORY,
    WATCHLIST_CATEGORIES,
    Episode,
    MovieHistoryEntry,
    PageResult,
    SeriesMeta,
    SeriesProgress,
    ToggleResult,
    WatchlistEntry,
    WatchStatistics,
)
from ..scheduling import ActiveContexts
from ..utils import EPOCH
from .invalidator import Invalidator
from .jellyfin import JellyfinClient
from .progress import build_series_progress, restore_progress
from .reconciliation import ReconciliationEngine
from .statistics import compute_statistics
from .watchlist_io import (
    ImportReport,
    WatchlistDocument,
    export_watchlist,
    import_watchlist,
    parse_document,
)

logger = logging.getLogger(__name__)

PROGRESS = "progress"
MOVIES = "movies"
WATCHLIST_PREFIX = "watchlist-"
WATCHLIST_TAB = "watchlist"
SERIES_FETCH_CONCURRENCY = 5


def watchlist_class(category: str) -> str:
    return f"{WATCHLIST_PREFIX}{category}"


CACHE_CLASSES: tuple[str, ...] = (PROGRESS, MOVIES) + tuple(
    watchlist_class(category) for category in WATCHLIST_CATEGORIES
)
TAB_CACHE_CLASSES: dict[str, tuple[str, ...]] = {
    PROGRESS: (PROGRESS,),
    MOVIES: (MOVIES,),
    WATCHLIST_TAB: tuple(watchlist_class(category) for category in WATCHLIST_CATEGORIES),
}


def _release_key(record: WatchlistEntry) -> float:
    if record.premiere_date is not None:
        return record.premiere_date.timestamp()
    return float(record.production_year or 0)


class WatchSyncService:
    """Owns one user's caches and exposes the operations the UI needs."""

    def __init__(self, settings: Settings, client: JellyfinClient, tier: SqlCacheTier):
        self._settings = settings
        self._client = client
        self._tier = tier
        self.owner_key = settings.owner_key

        self.progress = self._store(
            "progress",
            source=self._load_progress,
            key=lambda record: record.series_id,
            restore=restore_progress,
            ttl_seconds=settings.progress_cache_ttl_seconds,
        )
        self.movies = self._store(
            "movies",
            source=self._load_movies,
            key=lambda record: record.id,
            restore=MovieHistoryEntry.model_validate,
            ttl_seconds=settings.movie_cache_ttl_seconds,
        )
        self.watchlist: dict[str, CacheStore[WatchlistEntry]] = {
            category: self._store(
                f"watchlist_{category}",
                source=self._watchlist_source(category),
                key=lambda record: record.id,
                restore=WatchlistEntry.model_validate,
                ttl_seconds=settings.watchlist_cache_ttl_seconds,
            )
            for category in WATCHLIST_CATEGORIES
        }

        self._stores: dict[str, CacheStore[Any]] = {
            PROGRESS: self.progress,
            MOVIES: self.movies,
        }
        self._projectors: dict[str, Projector[Any]] = {
            PROGRESS: Projector(
                self.progress,
                sort_options=PROGRESS_SORT_OPTIONS,
                default_sort="lastWatched",
                matcher=match_series,
            ),
            MOVIES: Projector(
                self.movies,
                sort_options=MOVIE_SORT_OPTIONS,
                default_sort="lastWatched",
                matcher=match_movie,
            ),
        }
        for category, store in self.watchlist.items():
            name = watchlist_class(category)
            self._stores[name] = store
            self._projectors[name] = Projector(
                store,
                sort_options=WATCHLIST_SORT_OPTIONS,
                default_sort="premiereDate",
                matcher=match_watchlist,
            )

        self.guard = RenderSkipGuard()
        # Store version each cache class was last rendered at.
        self._rendered_versions: dict[str, int] = {}
        self.engine = ReconciliationEngine(
            client,
            progress=self.progress,
            movies=self.movies,
            watchlist=self.watchlist,
        )
        self.invalidator = Invalidator(client, self.engine)
        self.contexts = ActiveContexts()

    def _store(
        self,
        name: str,
        *,
        source: Callable[[], Awaitable[list[Any]]],
        key: Callable[[Any], str],
        restore: Callable[[object], Any],
        ttl_seconds: int,
    ) -> CacheStore[Any]:
        return CacheStore(
            name,
            tier=self._tier,
            source=source,
            key=key,
            restore=restore,
            owner_key=self.owner_key,
            ttl_seconds=ttl_seconds,
            page_size=self._settings.page_size,
            key_prefix=self._settings.cache_key_prefix,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Launch the notification consumer."""

        await self.invalidator.start()

    async def stop(self) -> None:
        """Cancel every poll loop and the notification consumer."""

        await self.contexts.close()
        await self.invalidator.stop()

    # ------------------------------------------------------------------
    # Remote sources
    # ------------------------------------------------------------------
    async def _load_progress(self) -> list[SeriesProgress]:
        series_list = await self._client.fetch_series_list(started_only=True)
        semaphore = asyncio.Semaphore(SERIES_FETCH_CONCURRENCY)

        async def _build(series: SeriesMeta) -> SeriesProgress | None:
            async with semaphore:
                try:
                    episodes = await self._client.fetch_episodes(series.id)
                except NotFoundError:
                    logger.warning("Series %s disappeared while loading", series.name)
                    return None
                except TransportError as exc:
                    logger.warning("Skipping series %s: %s", series.name, exc)
                    return None
            return build_series_progress(series, episodes)

        built = await asyncio.gather(*(_build(series) for series in series_list))
        progress = [entry for entry in built if entry is not None]
        progress.sort(
            key=lambda entry: (entry.last_watched_at or EPOCH).timestamp(),
            reverse=True,
        )
        return progress

    async def _load_movies(self) -> list[MovieHistoryEntry]:
        movies = await self._client.fetch_watched_movies()
        seen: set[str] = set()
        unique: list[MovieHistoryEntry] = []
        for movie in movies:
            imdb_id = movie.imdb_id
            if imdb_id:
                if imdb_id in seen:
                    continue
                seen.add(imdb_id)
            unique.append(movie)
        unique.sort(
            key=lambda movie: (movie.user_data.last_played_date or EPOCH).timestamp(),
            reverse=True,
        )
        if len(unique) != len(movies):
            logger.info("Collapsed %s duplicate movie(s)", len(movies) - len(unique))
        return unique

    def _watchlist_source(
        self, category: str
    ) -> Callable[[], Awaitable[list[WatchlistEntry]]]:
        item_type = TYPE_BY_CATEGORY[category]

        async def _load() -> list[WatchlistEntry]:
            items = await self._client.fetch_watchlist_items(item_type)
            kept: list[WatchlistEntry] = []
            for item in items:
                if not item.user_data.played:
                    kept.append(item)
                    continue
                logger.info("Removing played %s from watchlist", item.name)
                try:
                    await self._client.set_watchlist_membership(item.id, False)
                except (NotFoundError, TransportError) as exc:
                    logger.warning("Failed to unlist played item %s: %s", item.id, exc)
            kept.sort(key=_release_key, reverse=True)
            return kept

        return _load

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------
    def _projector(self, cache_class: str) -> Projector[Any]:
        try:
            return self._projectors[cache_class]
        except KeyError:
            raise KeyError(f"Unknown cache class {cache_class}") from None

    def projection_state(self, cache_class: str):
        return self._projector(cache_class).state

    def total_pages(self, cache_class: str) -> int:
        return self._projector(cache_class).total_pages()

    async def get_page(
        self, cache_class: str, page: int | None = None, *, mark_rendered: bool = True
    ) -> PageResult:
        """Project one page, flagging it when re-rendering would be a no-op."""

        projector = self._projector(cache_class)
        store = self._stores[cache_class]
        await store.load()
        if self._rendered_versions.get(cache_class) != store.version:
            self.guard.clear(cache_class)
        result = projector.project(page)
        state = projector.state
        result.skip_render = self.guard.should_skip(
            cache_class,
            page=result.page,
            search=state.search_term,
            item_count=len(result.items),
            sort_key=state.sort_key,
            direction=state.sort_direction,
        )
        if mark_rendered and not result.skip_render:
            self.mark_rendered(cache_class, result.page, len(result.items))
        return result

    def mark_rendered(self, cache_class: str, page: int, count: int) -> None:
        state = self._projector(cache_class).state
        self._rendered_versions[cache_class] = self._stores[cache_class].version
        self.guard.mark_rendered(
            cache_class,
            page=page,
            search=state.search_term,
            item_count=count,
            sort_key=state.sort_key,
            direction=state.sort_direction,
        )

    def set_sort(
        self, cache_class: str, sort_key: str, direction: Direction | None = None
    ) -> bool:
        return self._projector(cache_class).set_sort(sort_key, direction)

    async def set_search(self, cache_class: str, term: str) -> int:
        await self._stores[cache_class].load()
        return self._projector(cache_class).set_search(term)

    async def refresh(self, cache_class: str) -> int:
        """Force a remote reload of one cache class."""

        store = self._stores.get(cache_class)
        if store is None:
            raise KeyError(f"Unknown cache class {cache_class}")
        self.guard.clear(cache_class)
        await store.load(use_cache=False, wait=True)
        return len(store)

    async def clear_cache(self) -> int:
        """Drop every in-memory and persisted cache for this user."""

        removed = await self._tier.clear_all(self.owner_key)
        for store in self._stores.values():
            await store.clear()
        self.guard.clear_all()
        logger.info("Cleared all caches for %s", self.owner_key)
        return removed

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def toggle_watched(self, item_id: str, watched: bool) -> ToggleResult:
        return await self.engine.toggle_watched(item_id, watched)

    async def toggle_watchlist(
        self, item_id: str, member: bool, item_type: str | None = None
    ) -> ToggleResult:
        return await self.engine.toggle_watchlist(item_id, member, item_type)

    async def mark_all_watched(self, series_id: str) -> int:
        marked = await self.engine.mark_all_watched(series_id)
        if marked:
            self.guard.clear(PROGRESS)
        return marked

    async def unwatched_episodes(self, series_id: str) -> list[Episode]:
        return await self.engine.unwatched_episodes(series_id)

    def submit_notification(self, message: object) -> None:
        self.invalidator.submit(message)

    # ------------------------------------------------------------------
    # Derived data
    # ------------------------------------------------------------------
    async def statistics(self) -> WatchStatistics:
        progress = await self.progress.load()
        movies = await self.movies.load()
        return compute_statistics(progress, movies)

    async def export_watchlist(self) -> WatchlistDocument:
        entries: list[WatchlistEntry] = []
        for store in self.watchlist.values():
            entries.extend(await store.load())
        return export_watchlist(entries)

    async def import_watchlist(self, data: Any) -> ImportReport:
        """Validate and import a document; raises ``pydantic.ValidationError``."""

        document = parse_document(data)
        report = await import_watchlist(document, self._client, self.engine)
        for category in WATCHLIST_CATEGORIES:
            self.guard.clear(watchlist_class(category))
        return report

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------
    async def activate_tab(self, tab: str) -> bool:
        if tab not in TAB_CACHE_CLASSES:
            raise KeyError(f"Unknown tab {tab}")
        if not self.contexts.activate(tab):
            return False
        if tab == WATCHLIST_TAB:
            self.contexts.poll(
                tab,
                "watchlist-refresh",
                self._refresh_watchlist,
                self._settings.watchlist_poll_seconds,
            )
        return True

    async def deactivate_tab(self, tab: str) -> bool:
        if tab not in TAB_CACHE_CLASSES:
            raise KeyError(f"Unknown tab {tab}")
        for cache_class in TAB_CACHE_CLASSES[tab]:
            self.guard.clear(cache_class)
        return await self.contexts.deactivate(tab)

    async def _refresh_watchlist(self) -> None:
        for store in self.watchlist.values():
            await store.load(use_cache=False, wait=True)

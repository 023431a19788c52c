"""Apply single watched-state transitions to the caches without a refetch."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from ..cache import codec
from ..cache.store import CacheStore
from ..errors import ErrorKind, NotFoundError, TransportError
from ..models import (
    CATEGORY_BY_TYPE,
    Episode,
    EpisodeSummary,
    MovieHistoryEntry,
    SeriesProgress,
    ToggleResult,
    WatchlistEntry,
)
from .jellyfin import JellyfinClient
from .progress import build_series_progress, normalise_episodes, recalculate

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationEngine:
    """Mutates the progress, movie and watchlist stores in place.

    Every transition sets per-item state and then re-derives the aggregates
    from it, so applying the same change twice, or two changes out of
    order, converges on the same result.
    """

    def __init__(
        self,
        client: JellyfinClient,
        *,
        progress: CacheStore[SeriesProgress],
        movies: CacheStore[MovieHistoryEntry],
        watchlist: Mapping[str, CacheStore[WatchlistEntry]],
        clock: Callable[[], datetime] | None = None,
    ):
        self._client = client
        self.progress = progress
        self.movies = movies
        self.watchlist = dict(watchlist)
        self._clock = clock or _utc_now

    # ------------------------------------------------------------------
    # Series progress
    # ------------------------------------------------------------------
    async def _backfill(self, series_id: str) -> SeriesProgress | None:
        """Build progress for a series the cache has not seen yet."""

        logger.info("No cached progress for series %s, fetching it", series_id)
        try:
            series = await self._client.fetch_series(series_id)
            episodes = await self._client.fetch_episodes(series_id)
        except (NotFoundError, TransportError) as exc:
            logger.warning("Failed to backfill series %s: %s", series_id, exc)
            return None
        return build_series_progress(series, episodes, require_started=False)

    async def ensure_episodes(self, series_id: str) -> list[Episode] | None:
        """Load the per-episode array for a cached series when it is absent."""

        await self.progress.hydrate()
        progress = self.progress.get(series_id)
        if progress is None:
            return None
        if progress.episodes is not None:
            return progress.episodes
        try:
            episodes = await self._client.fetch_episodes(series_id)
        except (NotFoundError, TransportError) as exc:
            logger.warning("Failed to load episodes for %s: %s", series_id, exc)
            return None
        progress.episodes = normalise_episodes(episodes)
        recalculate(progress)
        self.progress.touch()
        await self.progress.persist()
        logger.info(
            "Loaded %s episodes for series %s", len(progress.episodes), progress.series.name
        )
        return progress.episodes

    async def unwatched_episodes(self, series_id: str) -> list[Episode]:
        """Aired, unwatched episodes of a cached series in playback order."""

        episodes = await self.ensure_episodes(series_id)
        if not episodes:
            return []
        return sorted(
            (episode for episode in codec.aired_episodes(episodes) if not episode.played),
            key=lambda episode: (
                episode.parent_index_number or 0,
                episode.index_number or 0,
            ),
        )

    async def set_episode_watched(
        self,
        series_id: str,
        episode_id: str | None,
        watched: bool,
        *,
        episode: Episode | None = None,
        persist: bool = True,
    ) -> SeriesProgress | None:
        """Set one episode's watched flag and re-derive the series aggregates.

        ``episode`` is the caller's copy of the record; it locates the bit
        to flip when the series' episode array is not in memory. That
        fallback flips the single bit at ``IndexNumber - 1`` even for
        multi-part records, while the in-memory path rebuilds every
        bitstring from the episodes.
        """

        await self.progress.hydrate()
        progress = self.progress.get(series_id)
        is_new = progress is None
        if progress is None:
            progress = await self._backfill(series_id)
            if progress is None:
                return None

        target: Episode | None = None
        if episode_id is not None and progress.episodes is not None:
            target = next(
                (entry for entry in progress.episodes if entry.id == episode_id), None
            )
            if target is None:
                logger.warning(
                    "Episode %s not found in series %s", episode_id, progress.series.name
                )
            else:
                target.user_data.played = watched
                target.user_data.last_played_date = self._clock() if watched else None
        elif episode_id is not None:
            target = episode
            if target is None or target.parent_index_number is None:
                logger.warning(
                    "Cannot locate episode %s in series %s without its record",
                    episode_id,
                    progress.series.name,
                )
            elif not codec.flip(
                progress.binary_progress,
                target.parent_index_number,
                (target.index_number or 0) - 1,
                watched,
            ):
                logger.info(
                    "Episode %s has no aired slot in series %s",
                    episode_id,
                    progress.series.name,
                )
            elif watched:
                progress.last_watched_episode = _summary_with_played_date(
                    target, self._clock()
                )

        recalculate(progress)

        if not is_new:
            self.progress.touch()
        elif progress.watched_count > 0:
            self.progress.upsert_one(progress, front=True)
            logger.info("Added series %s to progress cache", progress.series.name)

        if persist:
            await self.progress.persist()

        logger.info(
            "Series %s now %s/%s (%s%%)",
            progress.series.name,
            progress.watched_count,
            progress.total_episodes,
            progress.percentage,
        )

        if watched:
            await self._cascade_completed(progress, target)
        return progress

    async def _cascade_completed(
        self, progress: SeriesProgress, episode: Episode | None
    ) -> None:
        """Drop the owning season and series from the watchlist once fully played."""

        if episode is not None and episode.season_id and episode.parent_index_number:
            if codec.season_complete(progress.binary_progress, episode.parent_index_number):
                await self.remove_from_watchlist(episode.season_id, "seasons")
        if progress.total_episodes > 0 and progress.remaining_count == 0:
            await self.remove_from_watchlist(progress.series_id, "series")

    async def mark_all_watched(self, series_id: str) -> int:
        """Mark every aired, unwatched episode watched with one persist."""

        pending = await self.unwatched_episodes(series_id)
        if not pending:
            return 0
        marked = 0
        async with self.progress.batch():
            for episode in pending:
                try:
                    await self._client.set_played_state(episode.id, True)
                except (NotFoundError, TransportError) as exc:
                    logger.warning("Failed to mark episode %s watched: %s", episode.id, exc)
                    continue
                await self.set_episode_watched(series_id, episode.id, True)
                marked += 1
        logger.info("Marked %s episode(s) watched for series %s", marked, series_id)
        return marked

    # ------------------------------------------------------------------
    # Movies
    # ------------------------------------------------------------------
    async def set_movie_watched(
        self, movie: MovieHistoryEntry, *, persist: bool = True
    ) -> MovieHistoryEntry:
        """Insert or update a played movie, collapsing provider-id duplicates."""

        await self.movies.hydrate()
        movie.user_data.played = True
        if movie.user_data.last_played_date is None:
            movie.user_data.last_played_date = self._clock()

        imdb_id = movie.imdb_id
        if imdb_id and movie.id not in self.movies:
            for existing in list(self.movies.data):
                if existing.id != movie.id and existing.imdb_id == imdb_id:
                    self.movies.remove_one(existing.id)
        self.movies.upsert_one(movie, front=True)
        if persist:
            await self.movies.persist()
        logger.info("Movie %s added to history", movie.name)

        await self.remove_from_watchlist(movie.id, "movies")
        return movie

    async def set_movie_unwatched(self, movie_id: str, *, persist: bool = True) -> bool:
        await self.movies.hydrate()
        removed = self.movies.remove_one(movie_id)
        if removed is None:
            logger.info("Movie %s not in history cache", movie_id)
            return False
        if persist:
            await self.movies.persist()
        logger.info("Movie %s removed from history", removed.name)
        return True

    # ------------------------------------------------------------------
    # Watchlist
    # ------------------------------------------------------------------
    async def _is_watchlisted(self, item_id: str, category: str) -> bool:
        store = self.watchlist[category]
        await store.hydrate()
        if store.fully_loaded:
            return item_id in store
        try:
            data = await self._client.fetch_item(item_id)
        except (NotFoundError, TransportError) as exc:
            logger.warning("Could not check watchlist state of %s: %s", item_id, exc)
            return False
        user_data = data.get("UserData") or {}
        return bool(user_data.get("Likes"))

    async def remove_from_watchlist(
        self, item_id: str, category: str | None = None, *, check: bool = True
    ) -> bool:
        """Remove a played item from the watchlist, remotely then locally.

        A failed remote call leaves the cache untouched.
        """

        categories = [category] if category else list(self.watchlist)
        for name in categories:
            if check and not await self._is_watchlisted(item_id, name):
                continue
            try:
                await self._client.set_watchlist_membership(item_id, False)
            except (NotFoundError, TransportError) as exc:
                logger.warning("Failed to remove %s from watchlist: %s", item_id, exc)
                return False
            store = self.watchlist[name]
            if store.remove_one(item_id) is not None:
                await store.persist()
            logger.info("Removed %s from %s watchlist", item_id, name)
            return True
        return False

    def add_to_watchlist_cache(self, entry: WatchlistEntry) -> bool:
        category = entry.category
        if category is None:
            logger.warning("Unsupported watchlist item type: %s", entry.type)
            return False
        self.watchlist[category].upsert_one(entry, front=True)
        return True

    def remove_from_watchlist_cache(self, item_id: str) -> WatchlistEntry | None:
        for store in self.watchlist.values():
            removed = store.remove_one(item_id)
            if removed is not None:
                return removed
        return None

    # ------------------------------------------------------------------
    # Optimistic toggles
    # ------------------------------------------------------------------
    async def _apply_played(self, item: dict[str, Any], watched: bool) -> bool:
        item_type = item.get("Type")
        try:
            if item_type == "Episode":
                episode = Episode.model_validate(item)
                if not episode.series_id:
                    return False
                result = await self.set_episode_watched(
                    episode.series_id, episode.id, watched, episode=episode
                )
                return result is not None
            if item_type == "Movie":
                if watched:
                    await self.set_movie_watched(MovieHistoryEntry.model_validate(item))
                else:
                    await self.set_movie_unwatched(str(item["Id"]))
                return True
        except ValidationError as exc:
            logger.warning("Unreadable %s payload: %s", item_type, exc)
        return False

    async def toggle_watched(self, item_id: str, watched: bool) -> ToggleResult:
        """Apply the played state locally, then remotely; revert on failure.

        The revert restores the state the server reported before the toggle.
        When that state already matches, the cache is only brought in line
        once the remote write succeeds.
        """

        try:
            item = await self._client.fetch_item(item_id)
        except (NotFoundError, TransportError) as exc:
            return ToggleResult.failed(exc.kind)

        if item.get("Type") not in ("Episode", "Movie"):
            return ToggleResult.failed(ErrorKind.UNSUPPORTED)

        previous = bool((item.get("UserData") or {}).get("Played"))
        changed = previous != watched
        if changed:
            await self._apply_played(item, watched)
        try:
            await self._client.set_played_state(item_id, watched)
        except (NotFoundError, TransportError) as exc:
            logger.warning("Watched toggle for %s failed: %s", item_id, exc)
            if changed:
                await self._apply_played(item, previous)
            return ToggleResult.failed(exc.kind)
        if not changed:
            await self._apply_played(item, watched)
        return ToggleResult.ok()

    async def toggle_watchlist(
        self, item_id: str, member: bool, item_type: str | None = None
    ) -> ToggleResult:
        """Add to or remove from the watchlist; the cache changes first."""

        if item_type is not None and item_type not in CATEGORY_BY_TYPE:
            return ToggleResult.failed(ErrorKind.UNSUPPORTED)

        added: WatchlistEntry | None = None
        removed: WatchlistEntry | None = None
        if member:
            try:
                added = WatchlistEntry.model_validate(await self._client.fetch_item(item_id))
            except (NotFoundError, TransportError) as exc:
                return ToggleResult.failed(exc.kind)
            except ValidationError:
                return ToggleResult.failed(ErrorKind.UNSUPPORTED)
            added.user_data.likes = True
            if not self.add_to_watchlist_cache(added):
                return ToggleResult.failed(ErrorKind.UNSUPPORTED)
        else:
            removed = self.remove_from_watchlist_cache(item_id)

        try:
            await self._client.set_watchlist_membership(item_id, member)
        except (NotFoundError, TransportError) as exc:
            logger.warning("Reverting watchlist toggle for %s: %s", item_id, exc)
            if added is not None:
                self.remove_from_watchlist_cache(item_id)
            if removed is not None:
                self.add_to_watchlist_cache(removed)
            return ToggleResult.failed(exc.kind)

        entry = added or removed
        if entry is not None and entry.category is not None:
            await self.watchlist[entry.category].persist()
        return ToggleResult.ok()


def _summary_with_played_date(episode: Episode, played_at: datetime) -> EpisodeSummary:
    summary = EpisodeSummary.from_episode(episode)
    summary.user_data.played = True
    summary.user_data.last_played_date = played_at
    return summary


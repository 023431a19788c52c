"""Sorted, searched and paginated views over a cache store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Generic, Literal, Mapping, Sequence, TypeVar

from ..errors import StaleProjectionError
from ..models import MovieHistoryEntry, PageResult, SeriesProgress, WatchlistEntry
from ..utils import EPOCH, page_count, ticks_to_seconds
from .store import CacheStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
Direction = Literal["asc", "desc"]


@dataclass(slots=True, frozen=True)
class SortOption(Generic[T]):
    """A named ordering with its default direction."""

    label: str
    default_direction: Direction
    apply: Callable[[Sequence[T], Direction], list[T]]


def _by_key(key: Callable[[T], object]) -> Callable[[Sequence[T], Direction], list[T]]:
    def _apply(records: Sequence[T], direction: Direction) -> list[T]:
        return sorted(records, key=key, reverse=direction == "desc")  # type: ignore[arg-type]

    return _apply


def _timestamp(value: datetime | None) -> float:
    return (value or EPOCH).timestamp()


def _year_timestamp(year: int | None) -> float:
    if not year:
        return EPOCH.timestamp()
    try:
        return datetime(year, 1, 1, tzinfo=timezone.utc).timestamp()
    except ValueError:
        return EPOCH.timestamp()


def _progress_last_watched(progress: SeriesProgress) -> float:
    return _timestamp(progress.last_watched_at)


def _sort_by_progress(
    records: Sequence[SeriesProgress], direction: Direction
) -> list[SeriesProgress]:
    # Equal percentages always put the most recently watched first.
    sign = 1 if direction == "asc" else -1
    return sorted(
        records,
        key=lambda progress: (
            sign * progress.percentage,
            -_progress_last_watched(progress),
        ),
    )


def _release_timestamp(record: MovieHistoryEntry | WatchlistEntry) -> float:
    if record.premiere_date is not None:
        return record.premiere_date.timestamp()
    return _year_timestamp(record.production_year)


PROGRESS_SORT_OPTIONS: dict[str, SortOption[SeriesProgress]] = {
    "lastWatched": SortOption("Last Watched", "desc", _by_key(_progress_last_watched)),
    "name": SortOption(
        "Name", "asc", _by_key(lambda progress: progress.series.name.casefold())
    ),
    "progress": SortOption("Progress", "desc", _sort_by_progress),
    "episodeCount": SortOption(
        "Episode Count", "desc", _by_key(lambda progress: progress.total_episodes)
    ),
    "releaseDate": SortOption(
        "Release Date",
        "desc",
        _by_key(lambda progress: progress.series.production_year or 0),
    ),
}

MOVIE_SORT_OPTIONS: dict[str, SortOption[MovieHistoryEntry]] = {
    "lastWatched": SortOption(
        "Last Watched",
        "desc",
        _by_key(lambda movie: _timestamp(movie.user_data.last_played_date)),
    ),
    "name": SortOption("Name", "asc", _by_key(lambda movie: movie.name.casefold())),
    "premiereDate": SortOption("Premiere Date", "desc", _by_key(_release_timestamp)),
    "runtime": SortOption(
        "Runtime", "desc", _by_key(lambda movie: ticks_to_seconds(movie.run_time_ticks))
    ),
}

WATCHLIST_SORT_OPTIONS: dict[str, SortOption[WatchlistEntry]] = {
    "premiereDate": SortOption("Release Date", "desc", _by_key(_release_timestamp)),
    "name": SortOption("Name", "asc", _by_key(lambda entry: entry.name.casefold())),
}


def match_series(progress: SeriesProgress, term: str) -> bool:
    return term in progress.series.name.lower()


def match_movie(movie: MovieHistoryEntry, term: str) -> bool:
    year = str(movie.production_year or "")
    genres = " ".join(movie.genres).lower()
    return term in movie.name.lower() or term in year or term in genres


def match_watchlist(entry: WatchlistEntry, term: str) -> bool:
    return term in entry.name.lower() or term in (entry.series_name or "").lower()


@dataclass(slots=True)
class ProjectionState:
    """Session-local view parameters for one cache class."""

    sort_key: str
    sort_direction: Direction
    page_size: int
    search_term: str = ""
    current_page: int = 1
    filtered_data: list = field(default_factory=list)
    filtered_page_count: int = 0


class Projector(Generic[T]):
    """Derives pages from a store without mutating its canonical array.

    The sorted view is memoised on the store version plus the search and
    sort parameters, so repeated page requests reuse one derivation.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        sort_options: Mapping[str, SortOption[T]],
        default_sort: str,
        matcher: Callable[[T, str], bool],
    ):
        self._store = store
        self._sort_options = dict(sort_options)
        self._matcher = matcher
        default = self._sort_options[default_sort]
        self.state = ProjectionState(
            sort_key=default_sort,
            sort_direction=default.default_direction,
            page_size=store.page_size,
        )
        self._filter_key: tuple[object, ...] | None = None
        self._view_key: tuple[object, ...] | None = None
        self._view: list[T] = []

    @property
    def sort_options(self) -> Mapping[str, SortOption[T]]:
        return self._sort_options

    def set_sort(self, sort_key: str, direction: Direction | None = None) -> bool:
        """Change the ordering; returns ``False`` for unknown keys."""

        option = self._sort_options.get(sort_key)
        if option is None:
            logger.warning("Invalid %s sort key: %s", self._store.name, sort_key)
            return False
        if direction not in (None, "asc", "desc"):
            logger.warning("Invalid %s sort direction: %s", self._store.name, direction)
            return False
        self.state.sort_key = sort_key
        self.state.sort_direction = direction or option.default_direction
        self.state.current_page = 1
        logger.info(
            "Applied %s sorting: %s (%s)",
            self._store.name,
            option.label,
            self.state.sort_direction,
        )
        return True

    def set_search(self, term: str) -> int:
        """Apply a search term and return the page that stays valid."""

        self.state.search_term = (term or "").strip()
        self._refresh_filter()
        total_pages = self.total_pages()
        if self.state.current_page > total_pages and total_pages > 0:
            logger.info(
                "Current page %s exceeds total pages %s after search, resetting to page 1",
                self.state.current_page,
                total_pages,
            )
            self.state.current_page = 1
        return self.state.current_page

    def _refresh_filter(self) -> None:
        key = (self._store.version, id(self._store.data), self.state.search_term)
        if key == self._filter_key:
            return
        term = self.state.search_term.lower()
        if term:
            self.state.filtered_data = [
                record for record in self._store.data if self._matcher(record, term)
            ]
        else:
            self.state.filtered_data = []
        self.state.filtered_page_count = page_count(
            len(self.state.filtered_data), self.state.page_size
        )
        self._filter_key = key

    def active_view(self) -> list[T]:
        """The filtered (or full) array in the current sort order."""

        self._refresh_filter()
        key = (
            self._store.version,
            id(self._store.data),
            self.state.search_term,
            self.state.sort_key,
            self.state.sort_direction,
        )
        if key != self._view_key:
            source = (
                self.state.filtered_data if self.state.search_term else self._store.data
            )
            option = self._sort_options[self.state.sort_key]
            self._view = option.apply(source, self.state.sort_direction)
            self._view_key = key
        return self._view

    def total_pages(self) -> int:
        self._refresh_filter()
        if self.state.search_term:
            return self.state.filtered_page_count
        return page_count(len(self._store.data), self.state.page_size)

    def _resolve_page(self, page: int, total_pages: int) -> int:
        if page < 1 or (total_pages > 0 and page > total_pages):
            raise StaleProjectionError(page, total_pages)
        return page

    def project(self, page: int | None = None) -> PageResult:
        """Return one page of the active view."""

        view = self.active_view()
        total_pages = self.total_pages()
        requested = self.state.current_page if page is None else page
        try:
            resolved = self._resolve_page(requested, total_pages)
        except StaleProjectionError as exc:
            logger.info("%s; clamping %s to page 1", exc, self._store.name)
            resolved = 1
        self.state.current_page = resolved

        size = self.state.page_size
        start = (resolved - 1) * size
        items = view[start : start + size]
        return PageResult(
            items=items,
            total_pages=total_pages,
            page=resolved,
            total_items=len(view),
        )

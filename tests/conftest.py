"""Pytest configuration and test helpers."""

from __future__ import annotations

import copy
import sys
from pathlib import Path
from typing import Any, cast

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.cache.persistence import SqlCacheTier  # noqa: E402
from app.config import Settings  # noqa: E402
from app.database import Database  # noqa: E402
from app.errors import NotFoundError, TransportError  # noqa: E402
from app.models import Episode, MovieHistoryEntry, SeriesMeta, WatchlistEntry  # noqa: E402
from app.services.jellyfin import JellyfinClient  # noqa: E402
from app.services.sync_service import WatchSyncService  # noqa: E402

TICKS_PER_MINUTE = 60 * 10_000_000


class FakeJellyfin:
    """In-memory media server standing in for ``JellyfinClient``."""

    def __init__(self) -> None:
        self.items: dict[str, dict[str, Any]] = {}
        self.series_episodes: dict[str, list[str]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.fail_writes = False
        self.unreachable = False

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def _check(self) -> None:
        if self.unreachable:
            raise TransportError("server unreachable")

    # -- catalogue builders -------------------------------------------------
    def add_series(
        self, series_id: str, name: str = "Show", *, year: int = 2020, likes: bool = False
    ) -> dict[str, Any]:
        item = {
            "Id": series_id,
            "Name": name,
            "Type": "Series",
            "ProductionYear": year,
            "ProviderIds": {"Tvdb": f"tvdb-{series_id}"},
            "UserData": {"Played": False, "Likes": likes, "PlayedPercentage": 0},
        }
        self.items[series_id] = item
        self.series_episodes.setdefault(series_id, [])
        return item

    def add_season(
        self, season_id: str, series_id: str, index: int, *, likes: bool = False
    ) -> dict[str, Any]:
        item = {
            "Id": season_id,
            "Name": f"Season {index}",
            "Type": "Season",
            "SeriesId": series_id,
            "IndexNumber": index,
            "UserData": {"Played": False, "Likes": likes},
        }
        self.items[season_id] = item
        return item

    def add_episode(
        self,
        series_id: str,
        episode_id: str,
        season: int,
        index: int,
        *,
        played: bool = False,
        index_end: int | None = None,
        premiere: str | None = "2020-01-01T00:00:00.0000000Z",
        last_played: str | None = None,
        season_id: str | None = None,
        likes: bool = False,
        runtime_minutes: int = 30,
    ) -> dict[str, Any]:
        item = {
            "Id": episode_id,
            "Name": f"Episode {season}x{index}",
            "Type": "Episode",
            "SeriesId": series_id,
            "SeasonId": season_id or f"{series_id}-season-{season}",
            "ParentIndexNumber": season,
            "IndexNumber": index,
            "IndexNumberEnd": index_end,
            "PremiereDate": premiere,
            "RunTimeTicks": runtime_minutes * TICKS_PER_MINUTE,
            "UserData": {
                "Played": played,
                "LastPlayedDate": last_played,
                "Likes": likes,
            },
        }
        self.items[episode_id] = item
        self.series_episodes.setdefault(series_id, []).append(episode_id)
        return item

    def add_movie(
        self,
        movie_id: str,
        name: str,
        *,
        played: bool = False,
        imdb: str | None = None,
        last_played: str | None = None,
        likes: bool = False,
        year: int = 2010,
        genres: list[str] | None = None,
    ) -> dict[str, Any]:
        item = {
            "Id": movie_id,
            "Name": name,
            "Type": "Movie",
            "ProductionYear": year,
            "PremiereDate": f"{year}-06-01T00:00:00.0000000Z",
            "RunTimeTicks": 120 * TICKS_PER_MINUTE,
            "Genres": genres or [],
            "ProviderIds": {"Imdb": imdb} if imdb else {},
            "UserData": {"Played": played, "LastPlayedDate": last_played, "Likes": likes},
        }
        self.items[movie_id] = item
        return item

    def _series_started(self, series_id: str) -> bool:
        return any(
            self.items[episode_id]["UserData"]["Played"]
            for episode_id in self.series_episodes.get(series_id, [])
        )

    # -- JellyfinClient surface ---------------------------------------------
    async def fetch_series_list(self, *, started_only: bool = True) -> list[SeriesMeta]:
        self._check()
        self.calls.append(("series_list",))
        return [
            SeriesMeta.model_validate(item)
            for item in self.items.values()
            if item["Type"] == "Series"
            and (not started_only or self._series_started(item["Id"]))
        ]

    async def fetch_series(self, series_id: str) -> SeriesMeta:
        self._check()
        self.calls.append(("series", series_id))
        if series_id not in self.items:
            raise NotFoundError(series_id)
        return SeriesMeta.model_validate(self.items[series_id])

    async def fetch_episodes(self, series_id: str) -> list[Episode]:
        self._check()
        self.calls.append(("episodes", series_id))
        return [
            Episode.model_validate(self.items[episode_id])
            for episode_id in self.series_episodes.get(series_id, [])
        ]

    async def fetch_watched_movies(self) -> list[MovieHistoryEntry]:
        self._check()
        self.calls.append(("movies",))
        return [
            MovieHistoryEntry.model_validate(item)
            for item in self.items.values()
            if item["Type"] == "Movie" and item["UserData"]["Played"]
        ]

    async def fetch_watchlist_items(self, item_type: str) -> list[WatchlistEntry]:
        self._check()
        self.calls.append(("watchlist_items", item_type))
        return [
            WatchlistEntry.model_validate(item)
            for item in self.items.values()
            if item["Type"] == item_type and item["UserData"].get("Likes")
        ]

    async def fetch_item(self, item_id: str) -> dict[str, Any]:
        self._check()
        self.calls.append(("item", item_id))
        if item_id not in self.items:
            raise NotFoundError(item_id)
        return copy.deepcopy(self.items[item_id])

    async def fetch_library_items(self, item_types: list[str]) -> list[dict[str, Any]]:
        self._check()
        self.calls.append(("library", tuple(item_types)))
        return [
            copy.deepcopy(item)
            for item in self.items.values()
            if item["Type"] in item_types
        ]

    async def set_played_state(self, item_id: str, played: bool) -> bool:
        self.calls.append(("played", item_id, played))
        if self.fail_writes or self.unreachable:
            raise TransportError("write rejected")
        if item_id not in self.items:
            raise NotFoundError(item_id)
        self.items[item_id]["UserData"]["Played"] = played
        return True

    async def set_watchlist_membership(self, item_id: str, member: bool) -> bool:
        self.calls.append(("watchlist", item_id, member))
        if self.fail_writes or self.unreachable:
            raise TransportError("write rejected")
        if item_id not in self.items:
            raise NotFoundError(item_id)
        self.items[item_id]["UserData"]["Likes"] = member
        return True


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base: dict[str, Any] = {
        "JELLYFIN_URL": "http://jellyfin.local:8096",
        "JELLYFIN_TOKEN": "token",
        "JELLYFIN_USER_ID": "user-1",
        "PAGE_SIZE": 2,
    }
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def fake_jellyfin() -> FakeJellyfin:
    return FakeJellyfin()


@pytest.fixture
async def database(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    await database.create_all()
    try:
        yield database
    finally:
        await database.dispose()


@pytest.fixture
def tier(database: Database) -> SqlCacheTier:
    return SqlCacheTier(database.session_factory)


@pytest.fixture
def sync_service(fake_jellyfin: FakeJellyfin, tier: SqlCacheTier) -> WatchSyncService:
    return WatchSyncService(
        build_settings(), cast(JellyfinClient, fake_jellyfin), tier
    )


@pytest.fixture
def make_settings():
    return build_settings

from __future__ import annotations

import pytest

from app.models import MovieHistoryEntry
from app.services.progress import restore_progress
from app.services.statistics import compute_statistics


def progress(series_id: str, watched: int, total: int, pct: int):
    return restore_progress(
        {
            "series": {"Id": series_id, "Name": series_id.upper()},
            "watchedCount": watched,
            "totalEpisodes": total,
            "remainingCount": total - watched,
            "percentage": pct,
        }
    )


def test_statistics_aggregate_progress_and_movies() -> None:
    shows = [
        progress("a", 10, 10, 100),
        progress("b", 3, 12, 25),
        progress("c", 20, 20, 100),
        progress("d", 1, 2, 50),
    ]
    movies = [MovieHistoryEntry.model_validate({"Id": f"m{i}"}) for i in range(3)]

    stats = compute_statistics(shows, movies, top_limit=3)

    assert stats.series_started == 4
    assert stats.series_watched == 2
    assert stats.episodes_watched == 34
    assert stats.movies_watched == 3
    assert [show.series_id for show in stats.top_shows] == ["c", "a", "d"]


def test_statistics_for_empty_caches() -> None:
    stats = compute_statistics([], [])

    assert stats.model_dump() == {
        "series_started": 0,
        "series_watched": 0,
        "episodes_watched": 0,
        "movies_watched": 0,
        "top_shows": [],
    }


def test_series_reset_to_nothing_watched_is_not_started() -> None:
    stats = compute_statistics([progress("a", 2, 4, 50), progress("b", 0, 6, 0)], [])

    assert stats.series_started == 1
    assert stats.episodes_watched == 2


@pytest.mark.anyio("asyncio")
async def test_service_statistics_load_both_caches(fake_jellyfin, sync_service) -> None:
    fake_jellyfin.add_series("s1", "Dark")
    fake_jellyfin.add_episode("s1", "e1", 1, 1, played=True)
    fake_jellyfin.add_episode("s1", "e2", 1, 2)
    fake_jellyfin.add_movie("m1", "Heat", played=True)

    stats = await sync_service.statistics()

    assert (stats.series_started, stats.episodes_watched, stats.movies_watched) == (1, 1, 1)
    assert stats.top_shows[0].percentage == 50

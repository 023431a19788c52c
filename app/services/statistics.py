"""Aggregate watch statistics computed from the cached data."""

from __future__ import annotations

from typing import Iterable

from ..models import MovieHistoryEntry, SeriesProgress, TopShow, WatchStatistics

TOP_SHOW_LIMIT = 5


def compute_statistics(
    progress: Iterable[SeriesProgress],
    movies: Iterable[MovieHistoryEntry],
    *,
    top_limit: int = TOP_SHOW_LIMIT,
) -> WatchStatistics:
    series = list(progress)
    ranked = sorted(
        series,
        key=lambda entry: (-entry.percentage, -entry.total_episodes),
    )
    return WatchStatistics(
        series_started=sum(1 for entry in series if entry.watched_count > 0),
        series_watched=sum(1 for entry in series if entry.percentage == 100),
        episodes_watched=sum(entry.watched_count for entry in series),
        movies_watched=sum(1 for _ in movies),
        top_shows=[
            TopShow(
                name=entry.series.name,
                series_id=entry.series_id,
                episodes_watched=entry.watched_count,
                total_episodes=entry.total_episodes,
                percentage=entry.percentage,
            )
            for entry in ranked[:top_limit]
        ],
    )

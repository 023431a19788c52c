"""Build and re-derive series progress summaries from episode records."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from ..cache import codec
from ..models import Episode, EpisodeSummary, SeriesMeta, SeriesProgress
from ..utils import EPOCH

logger = logging.getLogger(__name__)


def percentage(watched: int, total: int) -> int:
    """Integer percentage rounded half up; ``0`` when nothing has aired."""

    if total <= 0:
        return 0
    return (200 * watched + total) // (2 * total)


def normalise_episodes(episodes: Iterable[Episode]) -> list[Episode]:
    """Drop specials and keep the first record for each (season, index)."""

    seen: set[tuple[int | None, int | None]] = set()
    normalised: list[Episode] = []
    for episode in episodes:
        if episode.parent_index_number == 0:
            continue
        key = (episode.parent_index_number, episode.index_number)
        if key in seen:
            continue
        seen.add(key)
        normalised.append(episode)
    return normalised


def last_watched(episodes: Iterable[Episode]) -> Episode | None:
    """Return the watched episode with the latest last-played timestamp."""

    watched = [episode for episode in episodes if episode.played]
    if not watched:
        return None
    return max(
        watched,
        key=lambda episode: episode.user_data.last_played_date or EPOCH,
    )


def _apply_counts(progress: SeriesProgress, watched: int, total: int) -> None:
    progress.total_episodes = total
    progress.watched_count = watched
    progress.remaining_count = total - watched
    progress.percentage = percentage(watched, total)


def recalculate(progress: SeriesProgress, *, now: datetime | None = None) -> SeriesProgress:
    """Re-derive every aggregate of ``progress`` from authoritative state.

    With the episode array in memory the counts, runtimes, last watched
    episode and bitstrings are rebuilt from it. Without it the counts are
    re-read from the bitstrings, which the caller has already updated.
    """

    if progress.episodes is None:
        watched, total = codec.count_slots(progress.binary_progress)
        _apply_counts(progress, watched, total)
        return progress

    aired = codec.aired_episodes(progress.episodes, now=now)
    total = sum(codec.slot_count(episode) for episode in aired)
    watched = sum(codec.slot_count(episode) for episode in aired if episode.played)
    _apply_counts(progress, watched, total)

    progress.total_runtime = sum(episode.runtime_seconds for episode in aired)
    progress.watched_runtime = sum(
        episode.runtime_seconds for episode in aired if episode.played
    )
    progress.remaining_runtime = progress.total_runtime - progress.watched_runtime

    latest = last_watched(aired)
    progress.last_watched_episode = (
        EpisodeSummary.from_episode(latest) if latest is not None else None
    )
    progress.binary_progress = codec.encode(progress.episodes, now=now)
    return progress


def build_series_progress(
    series: SeriesMeta,
    episodes: Iterable[Episode],
    *,
    now: datetime | None = None,
    require_started: bool = True,
) -> SeriesProgress | None:
    """Summarise one series.

    Returns ``None`` when nothing has aired, or when nothing was watched and
    ``require_started`` is set.
    """

    progress = SeriesProgress(series=series, episodes=normalise_episodes(episodes))
    recalculate(progress, now=now)
    logger.debug(
        "Series: %s, aired: %s, watched: %s, remaining: %s",
        series.name,
        progress.total_episodes,
        progress.watched_count,
        progress.remaining_count,
    )
    if progress.total_episodes == 0:
        return None
    if require_started and progress.watched_count == 0:
        return None
    return progress


def restore_progress(payload: object) -> SeriesProgress:
    """Rebuild a pruned persisted record; episode detail stays unloaded."""

    return SeriesProgress.model_validate(payload)

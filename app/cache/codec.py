"""Compact per-season watched-state encoding for series progress.

Each season maps to a string with one character per aired episode slot,
``"1"`` for watched and ``"0"`` for not watched. Multi-part episodes (a
single record covering ``IndexNumber..IndexNumberEnd``) occupy one slot per
episode number, all sharing the record's watched flag.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping

from ..models import Episode
from ..utils import end_of_day

WATCHED = "1"
UNWATCHED = "0"


@dataclass(slots=True, frozen=True)
class EpisodeSlot:
    """One logical episode number contributed by an episode record."""

    episode: Episode
    season: int
    index: int

    @property
    def watched(self) -> bool:
        return self.episode.played


def expand(episode: Episode) -> list[EpisodeSlot]:
    """Expand an episode record into its logical slots."""

    season = episode.parent_index_number or 0
    start = episode.index_number or 0
    end = episode.index_number_end
    if end is None or end <= start:
        return [EpisodeSlot(episode=episode, season=season, index=start)]
    return [
        EpisodeSlot(episode=episode, season=season, index=number)
        for number in range(start, end + 1)
    ]


def slot_count(episode: Episode) -> int:
    return len(expand(episode))


def is_aired(episode: Episode, cutoff: datetime) -> bool:
    return episode.premiere_date is not None and episode.premiere_date <= cutoff


def aired_episodes(
    episodes: Iterable[Episode], *, now: datetime | None = None
) -> list[Episode]:
    """Filter to numbered-season episodes that premiered by the end of today."""

    cutoff = end_of_day(now)
    return [
        episode
        for episode in episodes
        if is_aired(episode, cutoff) and episode.parent_index_number
    ]


def encode(
    episodes: Iterable[Episode], *, now: datetime | None = None
) -> dict[str, str]:
    """Encode aired episodes as ``season -> bitstring``."""

    by_season: dict[int, list[EpisodeSlot]] = {}
    for episode in aired_episodes(episodes, now=now):
        for slot in expand(episode):
            by_season.setdefault(slot.season, []).append(slot)

    encoded: dict[str, str] = {}
    for season in sorted(by_season):
        slots = sorted(by_season[season], key=lambda slot: slot.index)
        encoded[str(season)] = "".join(
            WATCHED if slot.watched else UNWATCHED for slot in slots
        )
    return encoded


def is_watched(binary_progress: Mapping[str, str], season: int | str, slot_index: int) -> bool:
    """Return whether the ``slot_index``-th (0-based) aired slot is watched."""

    bits = binary_progress.get(str(season), "")
    return 0 <= slot_index < len(bits) and bits[slot_index] == WATCHED


def flip(
    binary_progress: dict[str, str],
    season: int | str,
    slot_index: int,
    watched: bool,
) -> bool:
    """Set one slot in place; returns ``False`` when the slot does not exist."""

    key = str(season)
    bits = binary_progress.get(key)
    if bits is None or not 0 <= slot_index < len(bits):
        return False
    bit = WATCHED if watched else UNWATCHED
    binary_progress[key] = bits[:slot_index] + bit + bits[slot_index + 1 :]
    return True


def count_slots(binary_progress: Mapping[str, str]) -> tuple[int, int]:
    """Return ``(watched, total)`` slot counts across all seasons."""

    watched = 0
    total = 0
    for season, bits in binary_progress.items():
        if season == "0":
            continue
        watched += bits.count(WATCHED)
        total += len(bits)
    return watched, total


def season_complete(binary_progress: Mapping[str, str], season: int | str) -> bool:
    bits = binary_progress.get(str(season), "")
    return bool(bits) and UNWATCHED not in bits

"""Pydantic models describing cached media records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ErrorKind
from .utils import parse_timestamp, ticks_to_seconds

ItemType = Literal["Movie", "Series", "Season", "Episode"]
WatchlistCategory = Literal["movies", "series", "seasons", "episodes"]

WATCHLIST_CATEGORIES: tuple[WatchlistCategory, ...] = (
    "movies",
    "series",
    "seasons",
    "episodes",
)
CATEGORY_BY_TYPE: dict[str, WatchlistCategory] = {
    "Movie": "movies",
    "Series": "series",
    "Season": "seasons",
    "Episode": "episodes",
}
TYPE_BY_CATEGORY: dict[str, str] = {
    category: item_type for item_type, category in CATEGORY_BY_TYPE.items()
}


class MediaModel(BaseModel):
    """Base for records that mirror the media server's PascalCase payloads."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_storage(self) -> dict[str, Any]:
        """Return the field-pruned payload written to the persistent tier."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UserData(MediaModel):
    """Per-user playback state attached to an item."""

    played: bool = Field(default=False, alias="Played")
    is_favorite: bool = Field(default=False, alias="IsFavorite")
    last_played_date: datetime | None = Field(default=None, alias="LastPlayedDate")
    play_count: int = Field(default=0, alias="PlayCount")
    played_percentage: float | None = Field(default=None, alias="PlayedPercentage")
    likes: bool | None = Field(default=None, alias="Likes")

    @field_validator("last_played_date", mode="before")
    @classmethod
    def _parse_date(cls, value: object) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("played", "is_favorite", mode="before")
    @classmethod
    def _none_is_false(cls, value: object) -> object:
        return False if value is None else value

    @field_validator("play_count", mode="before")
    @classmethod
    def _none_is_zero(cls, value: object) -> object:
        return 0 if value is None else value


class Episode(MediaModel):
    """Full per-episode record, kept in memory only."""

    id: str = Field(alias="Id")
    name: str | None = Field(default=None, alias="Name")
    type: str = Field(default="Episode", alias="Type")
    series_id: str | None = Field(default=None, alias="SeriesId")
    season_id: str | None = Field(default=None, alias="SeasonId")
    index_number: int | None = Field(default=None, alias="IndexNumber")
    index_number_end: int | None = Field(default=None, alias="IndexNumberEnd")
    parent_index_number: int | None = Field(default=None, alias="ParentIndexNumber")
    premiere_date: datetime | None = Field(default=None, alias="PremiereDate")
    run_time_ticks: int | None = Field(default=None, alias="RunTimeTicks")
    image_tags: dict[str, str] = Field(default_factory=dict, alias="ImageTags")
    user_data: UserData = Field(default_factory=UserData, alias="UserData")

    @field_validator("premiere_date", mode="before")
    @classmethod
    def _parse_premiere(cls, value: object) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("user_data", mode="before")
    @classmethod
    def _default_user_data(cls, value: object) -> object:
        return {} if value is None else value

    @property
    def played(self) -> bool:
        return self.user_data.played

    @property
    def runtime_seconds(self) -> int:
        return ticks_to_seconds(self.run_time_ticks)


class SeriesMeta(MediaModel):
    """Minimal series projection shown on progress cards."""

    id: str = Field(alias="Id")
    name: str = Field(default="", alias="Name")
    image_tags: dict[str, str] = Field(default_factory=dict, alias="ImageTags")
    status: str | None = Field(default=None, alias="Status")
    production_year: int | None = Field(default=None, alias="ProductionYear")
    premiere_date: datetime | None = Field(default=None, alias="PremiereDate")
    end_date: datetime | None = Field(default=None, alias="EndDate")
    user_data: UserData | None = Field(default=None, alias="UserData")

    @field_validator("premiere_date", "end_date", mode="before")
    @classmethod
    def _parse_dates(cls, value: object) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("name", mode="before")
    @classmethod
    def _none_is_blank(cls, value: object) -> object:
        return "" if value is None else value


class EpisodeSummary(MediaModel):
    """Minimal projection of the most recently watched episode."""

    id: str = Field(alias="Id")
    name: str | None = Field(default=None, alias="Name")
    index_number: int | None = Field(default=None, alias="IndexNumber")
    parent_index_number: int | None = Field(default=None, alias="ParentIndexNumber")
    image_tags: dict[str, str] = Field(default_factory=dict, alias="ImageTags")
    user_data: UserData = Field(default_factory=UserData, alias="UserData")

    @classmethod
    def from_episode(cls, episode: Episode) -> "EpisodeSummary":
        return cls(
            id=episode.id,
            name=episode.name,
            index_number=episode.index_number,
            parent_index_number=episode.parent_index_number,
            image_tags=dict(episode.image_tags),
            user_data=episode.user_data.model_copy(),
        )

    @property
    def last_played_date(self) -> datetime | None:
        return self.user_data.last_played_date


class SeriesProgress(MediaModel):
    """Progress summary for one started series."""

    series: SeriesMeta
    watched_count: int = Field(default=0, alias="watchedCount")
    total_episodes: int = Field(default=0, alias="totalEpisodes")
    remaining_count: int = Field(default=0, alias="remainingCount")
    percentage: int = 0
    total_runtime: int = Field(default=0, alias="totalRuntime")
    watched_runtime: int = Field(default=0, alias="watchedRuntime")
    remaining_runtime: int = Field(default=0, alias="remainingRuntime")
    last_watched_episode: EpisodeSummary | None = Field(
        default=None, alias="lastWatchedEpisode"
    )
    binary_progress: dict[str, str] = Field(
        default_factory=dict, alias="binaryProgress"
    )
    # Memory only; excluded from every dump.
    episodes: list[Episode] | None = Field(default=None, exclude=True)

    @property
    def series_id(self) -> str:
        return self.series.id

    @property
    def last_watched_at(self) -> datetime | None:
        if self.last_watched_episode is None:
            return None
        return self.last_watched_episode.last_played_date

    def to_storage(self) -> dict[str, Any]:
        series = self.series.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            include={"id", "name", "image_tags", "status", "production_year"},
        )
        payload: dict[str, Any] = {
            "series": series,
            "watchedCount": self.watched_count,
            "totalEpisodes": self.total_episodes,
            "remainingCount": self.remaining_count,
            "percentage": self.percentage,
            "totalRuntime": self.total_runtime,
            "watchedRuntime": self.watched_runtime,
            "remainingRuntime": self.remaining_runtime,
            "lastWatchedEpisode": (
                self.last_watched_episode.to_storage()
                if self.last_watched_episode
                else None
            ),
            "binaryProgress": dict(self.binary_progress),
        }
        return payload


class MovieHistoryEntry(MediaModel):
    """A watched movie in the history cache."""

    id: str = Field(alias="Id")
    name: str = Field(default="", alias="Name")
    type: str = Field(default="Movie", alias="Type")
    image_tags: dict[str, str] = Field(default_factory=dict, alias="ImageTags")
    backdrop_image_tags: list[str] = Field(
        default_factory=list, alias="BackdropImageTags"
    )
    premiere_date: datetime | None = Field(default=None, alias="PremiereDate")
    production_year: int | None = Field(default=None, alias="ProductionYear")
    run_time_ticks: int | None = Field(default=None, alias="RunTimeTicks")
    genres: list[str] = Field(default_factory=list, alias="Genres")
    provider_ids: dict[str, str] = Field(default_factory=dict, alias="ProviderIds")
    user_data: UserData = Field(default_factory=UserData, alias="UserData")

    @field_validator("premiere_date", mode="before")
    @classmethod
    def _parse_premiere(cls, value: object) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("name", mode="before")
    @classmethod
    def _none_is_blank(cls, value: object) -> object:
        return "" if value is None else value

    @property
    def imdb_id(self) -> str | None:
        for key, value in self.provider_ids.items():
            if key.lower() == "imdb" and value:
                return value
        return None

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            include={
                "id",
                "name",
                "type",
                "image_tags",
                "backdrop_image_tags",
                "premiere_date",
                "production_year",
                "run_time_ticks",
                "genres",
                "provider_ids",
                "user_data",
            },
        )


class WatchlistEntry(MediaModel):
    """An item the user marked as want-to-watch."""

    id: str = Field(alias="Id")
    type: str = Field(alias="Type")
    media_type: str | None = Field(default=None, alias="MediaType")
    name: str = Field(default="", alias="Name")
    series_id: str | None = Field(default=None, alias="SeriesId")
    series_name: str | None = Field(default=None, alias="SeriesName")
    season_id: str | None = Field(default=None, alias="SeasonId")
    index_number: int | None = Field(default=None, alias="IndexNumber")
    parent_index_number: int | None = Field(default=None, alias="ParentIndexNumber")
    image_tags: dict[str, str] = Field(default_factory=dict, alias="ImageTags")
    backdrop_image_tags: list[str] = Field(
        default_factory=list, alias="BackdropImageTags"
    )
    premiere_date: datetime | None = Field(default=None, alias="PremiereDate")
    production_year: int | None = Field(default=None, alias="ProductionYear")
    provider_ids: dict[str, str] = Field(default_factory=dict, alias="ProviderIds")
    user_data: UserData = Field(default_factory=UserData, alias="UserData")

    @field_validator("premiere_date", mode="before")
    @classmethod
    def _parse_premiere(cls, value: object) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("name", mode="before")
    @classmethod
    def _none_is_blank(cls, value: object) -> object:
        return "" if value is None else value

    @property
    def category(self) -> WatchlistCategory | None:
        return CATEGORY_BY_TYPE.get(self.type)


class CacheEnvelope(BaseModel):
    """Persisted payload plus the metadata that bounds its lifetime."""

    data: Any
    stored_at: datetime
    ttl_seconds: int
    owner_key: str

    def is_expired(self, now: datetime) -> bool:
        return now - self.stored_at >= timedelta(seconds=self.ttl_seconds)


class PageResult(BaseModel):
    """A projected page of cached records."""

    model_config = ConfigDict(populate_by_name=True)

    items: list[Any] = Field(default_factory=list)
    total_pages: int = Field(default=0, serialization_alias="totalPages")
    page: int = 1
    total_items: int = Field(default=0, serialization_alias="totalItems")
    skip_render: bool = Field(default=False, serialization_alias="skipRender")


class ToggleResult(BaseModel):
    """Outcome of an optimistic toggle."""

    applied: bool
    reason: ErrorKind | None = None

    @classmethod
    def ok(cls) -> "ToggleResult":
        return cls(applied=True)

    @classmethod
    def failed(cls, reason: ErrorKind) -> "ToggleResult":
        return cls(applied=False, reason=reason)


class TopShow(BaseModel):
    name: str
    series_id: str
    episodes_watched: int
    total_episodes: int
    percentage: int


class WatchStatistics(BaseModel):
    """Aggregate counters derived from the progress and movie caches."""

    series_started: int = 0
    series_watched: int = 0
    episodes_watched: int = 0
    movies_watched: int = 0
    top_shows: list[TopShow] = Field(default_factory=list)


@dataclass(slots=True, frozen=True)
class WatchStateChange:
    """Normalised real-time notification about one item's played state."""

    kind: Literal["watched", "unwatched"]
    item_id: str
    is_watchlisted: bool = False
    item_type: str | None = None

    @property
    def played(self) -> bool:
        return self.kind == "watched"

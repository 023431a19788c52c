"""Export and import of the watchlist as a portable JSON document."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from ..errors import NotFoundError, TransportError
from ..models import CATEGORY_BY_TYPE, WatchlistEntry
from .jellyfin import JellyfinClient
from .reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

EXPORT_VERSION = 1
PROVIDERS = ("Imdb", "Tmdb", "Tvdb")


class WatchlistExportItem(BaseModel):
    """One watchlisted item identified by its external provider ids."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: bool = True
    name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("Name", "name"),
        serialization_alias="Name",
    )
    type: str = Field(
        validation_alias=AliasChoices("Type", "type"),
        serialization_alias="Type",
    )
    imdb: str | None = Field(
        default=None,
        validation_alias=AliasChoices("Imdb", "imdb"),
        serialization_alias="Imdb",
    )
    tmdb: str | None = Field(
        default=None,
        validation_alias=AliasChoices("Tmdb", "tmdb"),
        serialization_alias="Tmdb",
    )
    tvdb: str | None = Field(
        default=None,
        validation_alias=AliasChoices("Tvdb", "tvdb"),
        serialization_alias="Tvdb",
    )
    series_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SeriesName", "seriesName"),
        serialization_alias="SeriesName",
    )

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in CATEGORY_BY_TYPE:
            raise ValueError("Type must be one of: Movie, Series, Season, Episode")
        return value

    @field_validator("imdb", "tmdb", "tvdb", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> object:
        if value is None or value == "":
            return None
        return str(value)

    @model_validator(mode="after")
    def _has_provider_id(self) -> "WatchlistExportItem":
        if not self.provider_keys():
            raise ValueError("Must have at least one provider ID (Imdb, Tmdb, or Tvdb)")
        return self

    def provider_keys(self) -> list[str]:
        keys: list[str] = []
        for provider, value in zip(PROVIDERS, (self.imdb, self.tmdb, self.tvdb)):
            if value:
                keys.append(f"{provider}:{value}:{self.type}")
        return keys

    @classmethod
    def from_entry(cls, entry: WatchlistEntry) -> "WatchlistExportItem | None":
        ids = {key.lower(): value for key, value in entry.provider_ids.items() if value}
        try:
            return cls(
                name=entry.name,
                type=entry.type,
                imdb=ids.get("imdb"),
                tmdb=ids.get("tmdb"),
                tvdb=ids.get("tvdb"),
                series_name=entry.series_name,
            )
        except ValidationError:
            return None


class WatchlistDocument(BaseModel):
    """Versioned export of every watchlist category."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = EXPORT_VERSION
    exported_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("exportedAt", "exported_at"),
        serialization_alias="exportedAt",
    )
    items: list[WatchlistExportItem]

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"version": EXPORT_VERSION, "items": data}
        return data

    @field_validator("version")
    @classmethod
    def _supported_version(cls, value: int) -> int:
        if value != EXPORT_VERSION:
            raise ValueError(f"Unsupported export version {value}")
        return value

    @field_validator("items")
    @classmethod
    def _unique_items(cls, items: list[WatchlistExportItem]) -> list[WatchlistExportItem]:
        if not items:
            raise ValueError("No items to import")
        seen: dict[str, int] = {}
        for number, item in enumerate(items, start=1):
            for key in item.provider_keys():
                if key in seen:
                    raise ValueError(
                        f"Item {number}: duplicate provider ID '{key}' (also in item {seen[key]})"
                    )
                seen[key] = number
        return items


class ImportReport(BaseModel):
    added: int = 0
    skipped: int = 0
    not_found: int = Field(default=0, serialization_alias="notFound")
    failed: int = 0


def export_watchlist(entries: Iterable[WatchlistEntry]) -> WatchlistDocument:
    """Build the export document; items without provider ids are left out."""

    items = []
    for entry in entries:
        item = WatchlistExportItem.from_entry(entry)
        if item is None:
            logger.info("Skipping %s in export: no provider ids", entry.name)
            continue
        items.append(item)
    return WatchlistDocument.model_construct(
        version=EXPORT_VERSION,
        exported_at=datetime.now(timezone.utc),
        items=items,
    )


def parse_document(data: Any) -> WatchlistDocument:
    """Validate an import payload; raises ``pydantic.ValidationError``."""

    return WatchlistDocument.model_validate(data)


def _provider_keys(item: Mapping[str, Any]) -> list[str]:
    ids = item.get("ProviderIds") or {}
    lowered = {str(key).lower(): value for key, value in ids.items() if value}
    keys = []
    for provider in PROVIDERS:
        value = lowered.get(provider.lower())
        if value:
            keys.append(f"{provider}:{value}:{item.get('Type')}")
    return keys


async def import_watchlist(
    document: WatchlistDocument,
    client: JellyfinClient,
    engine: ReconciliationEngine,
) -> ImportReport:
    """Add every item of ``document`` that the library holds to the watchlist."""

    report = ImportReport()
    item_types = sorted({item.type for item in document.items})
    try:
        library = await client.fetch_library_items(item_types)
    except (NotFoundError, TransportError) as exc:
        logger.warning("Failed to fetch library items for import: %s", exc)
        report.failed = len(document.items)
        return report

    by_key: dict[str, dict[str, Any]] = {}
    for item in library:
        for key in _provider_keys(item):
            by_key[key] = item

    current: set[str] = set()
    for store in engine.watchlist.values():
        await store.load()
        for entry in store.data:
            current.update(_provider_keys(entry.model_dump(by_alias=True)))

    touched: set[str] = set()
    for item in document.items:
        keys = item.provider_keys()
        found = next((by_key[key] for key in keys if key in by_key), None)
        if found is None:
            report.not_found += 1
            continue
        if any(key in current for key in keys):
            report.skipped += 1
            continue
        try:
            await client.set_watchlist_membership(str(found["Id"]), True)
        except (NotFoundError, TransportError) as exc:
            logger.warning("Failed to import %s: %s", item.name, exc)
            report.failed += 1
            continue
        report.added += 1
        current.update(_provider_keys(found))
        try:
            entry = WatchlistEntry.model_validate(found)
        except ValidationError as exc:
            logger.warning("Imported %s but could not cache it: %s", item.name, exc)
            continue
        entry.user_data.likes = True
        if engine.add_to_watchlist_cache(entry) and entry.category is not None:
            touched.add(entry.category)

    for category in touched:
        await engine.watchlist[category].persist()
    logger.info(
        "Watchlist import: %s added, %s skipped, %s not found, %s failed",
        report.added,
        report.skipped,
        report.not_found,
        report.failed,
    )
    return report

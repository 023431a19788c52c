"""Utilities for communicating with the Jellyfin HTTP API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import NotFoundError, TransportError
from ..models import Episode, MovieHistoryEntry, SeriesMeta, WatchlistEntry

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


class JellyfinClient:
    """Thin wrapper around the Jellyfin endpoints the caches depend on."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._max_retries = settings.request_retry_limit

    @property
    def user_id(self) -> str | None:
        return self._settings.jellyfin_user_id

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": f"{self._settings.app_name} (watchsync)",
        }
        if self._settings.jellyfin_token:
            headers["Authorization"] = (
                f'MediaBrowser Token="{self._settings.jellyfin_token}"'
            )
        return headers

    def _require_user(self) -> str:
        if not (self._settings.jellyfin_token and self._settings.jellyfin_user_id):
            raise TransportError("Jellyfin credentials missing")
        return self._settings.jellyfin_user_id

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send a request, retrying transient failures with capped backoff."""

        attempt = 0
        while True:
            try:
                response = await self._client.request(
                    method, path, headers=self._headers(), params=params
                )
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error talking to Jellyfin (%s). Retrying %s in %.1fs",
                        exc.__class__.__name__,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise TransportError(f"{method} {path} failed: {exc}") from exc

            if 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Jellyfin %s during %s. Retrying in %.1fs",
                        response.status_code,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise TransportError(
                    f"{method} {path} failed with {response.status_code}"
                )
            if response.status_code == 404:
                raise NotFoundError(f"{path} not found")
            if response.status_code >= 400:
                raise TransportError(
                    f"{method} {path} failed with {response.status_code}: {response.text}"
                )
            return response

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request("GET", path, params=params)
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"Unexpected non-JSON response for {path}") from exc

    async def _get_items(
        self, path: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        data = await self._get_json(path, params)
        if isinstance(data, dict):
            items = data.get("Items")
        else:
            items = data
        if not isinstance(items, list):
            raise TransportError(f"Unexpected response structure for {path}")
        return [item for item in items if isinstance(item, dict)]

    @staticmethod
    def _parse_all(
        items: list[dict[str, Any]], parser: Callable[[dict[str, Any]], ModelT]
    ) -> list[ModelT]:
        parsed: list[ModelT] = []
        for item in items:
            try:
                parsed.append(parser(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed item %s: %s", item.get("Id"), exc)
        return parsed

    async def fetch_series_list(self, *, started_only: bool = True) -> list[SeriesMeta]:
        """Fetch the user's series; optionally only those with any playback."""

        user_id = self._require_user()
        items = await self._get_items(
            "/Items",
            {
                "IncludeItemTypes": "Series",
                "UserId": user_id,
                "Recursive": "true",
                "Fields": "UserData,RecursiveItemCount,PremiereDate,EndDate",
                "EnableImageTypes": "Primary,Banner",
            },
        )
        series = self._parse_all(items, SeriesMeta.model_validate)
        if started_only:
            series = [
                entry
                for entry in series
                if entry.user_data is not None
                and (entry.user_data.played_percentage or 0) > 0
            ]
        logger.info("Found %s series (started_only=%s)", len(series), started_only)
        return series

    async def fetch_series(self, series_id: str) -> SeriesMeta:
        data = await self.fetch_item(series_id)
        try:
            return SeriesMeta.model_validate(data)
        except ValidationError as exc:
            raise NotFoundError(f"Series {series_id} has an unreadable payload") from exc

    async def fetch_episodes(self, series_id: str) -> list[Episode]:
        user_id = self._require_user()
        items = await self._get_items(
            f"/Shows/{series_id}/Episodes",
            {
                "UserId": user_id,
                "Fields": "UserData,PremiereDate",
                "EnableImageTypes": "Primary",
            },
        )
        return self._parse_all(items, Episode.model_validate)

    async def fetch_watched_movies(self) -> list[MovieHistoryEntry]:
        user_id = self._require_user()
        items = await self._get_items(
            "/Items",
            {
                "IncludeItemTypes": "Movie",
                "UserId": user_id,
                "Recursive": "true",
                "Filters": "IsPlayed",
                "Fields": "UserData,ProviderIds,Genres,PremiereDate",
                "EnableImageTypes": "Primary,Backdrop,Thumb",
                "ImageTypeLimit": 1,
                "SortBy": "DatePlayed",
                "SortOrder": "Descending",
            },
        )
        return self._parse_all(items, MovieHistoryEntry.model_validate)

    async def fetch_watchlist_items(self, item_type: str) -> list[WatchlistEntry]:
        """Fetch liked (watchlisted) items of one type."""

        user_id = self._require_user()
        items = await self._get_items(
            "/Items",
            {
                "IncludeItemTypes": item_type,
                "UserId": user_id,
                "Recursive": "true",
                "Filters": "Likes",
                "Fields": "UserData,PremiereDate,ProductionYear,ProviderIds,SeriesName",
                "EnableImageTypes": "Primary,Backdrop,Thumb",
            },
        )
        return self._parse_all(items, WatchlistEntry.model_validate)

    async def fetch_item(self, item_id: str) -> dict[str, Any]:
        """Return one item with the user's data attached."""

        user_id = self._require_user()
        data = await self._get_json(
            f"/Users/{user_id}/Items/{item_id}",
            {"Fields": "UserData,ProviderIds,Genres,PremiereDate"},
        )
        if not isinstance(data, dict) or not data.get("Id"):
            raise NotFoundError(f"Item {item_id} not found")
        return data

    async def set_played_state(self, item_id: str, played: bool) -> bool:
        user_id = self._require_user()
        await self._request(
            "POST" if played else "DELETE",
            f"/Users/{user_id}/PlayedItems/{item_id}",
        )
        return True

    async def set_watchlist_membership(self, item_id: str, member: bool) -> bool:
        """Watchlist membership is stored as the user's ``Likes`` rating."""

        user_id = self._require_user()
        await self._request(
            "POST",
            f"/Users/{user_id}/Items/{item_id}/Rating",
            params={"Likes": "true" if member else "false"},
        )
        return True

    async def fetch_library_items(self, item_types: list[str]) -> list[dict[str, Any]]:
        """Fetch every library item of the given types with provider ids."""

        user_id = self._require_user()
        return await self._get_items(
            "/Items",
            {
                "IncludeItemTypes": ",".join(item_types),
                "UserId": user_id,
                "Recursive": "true",
                "Fields": "ProviderIds,UserData,PremiereDate,ProductionYear,SeriesName",
            },
        )

"""Keeps the caches consistent with watched-state changes made elsewhere."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ..errors import MalformedNotification, NotFoundError, TransportError
from ..models import CATEGORY_BY_TYPE, Episode, MovieHistoryEntry, WatchStateChange
from .jellyfin import JellyfinClient
from .reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

USER_DATA_CHANGED = "UserDataChanged"


class UserDataNotification(BaseModel):
    """One entry of a ``UserDataChanged`` message."""

    model_config = ConfigDict(extra="ignore")

    item_id: str = Field(validation_alias=AliasChoices("ItemId", "itemId"), min_length=1)
    played: bool = Field(validation_alias=AliasChoices("Played", "played"))
    likes: bool | None = Field(
        default=None, validation_alias=AliasChoices("Likes", "likes", "isWatchlisted")
    )
    item_type: str | None = Field(
        default=None, validation_alias=AliasChoices("ItemType", "itemType", "Type")
    )

    def to_change(self) -> WatchStateChange:
        return WatchStateChange(
            kind="watched" if self.played else "unwatched",
            item_id=self.item_id,
            is_watchlisted=bool(self.likes),
            item_type=self.item_type,
        )


def normalize_entry(entry: object) -> WatchStateChange:
    """Validate one raw entry; raises ``MalformedNotification``."""

    if not isinstance(entry, Mapping):
        raise MalformedNotification(f"Expected an object, got {type(entry).__name__}")
    try:
        return UserDataNotification.model_validate(entry).to_change()
    except ValidationError as exc:
        raise MalformedNotification(str(exc)) from exc


def message_entries(message: object) -> list[object]:
    """Unwrap a transport message into its raw per-item entries.

    Accepts the ``{"MessageType": ..., "Data": {"UserDataList": [...]}}``
    envelope (JSON text or decoded) as well as a bare entry. Other message
    types yield no entries.
    """

    if isinstance(message, (str, bytes)):
        try:
            message = json.loads(message)
        except ValueError as exc:
            raise MalformedNotification("Notification is not valid JSON") from exc
    if not isinstance(message, Mapping):
        raise MalformedNotification("Notification must be an object")

    if "MessageType" not in message:
        return [message]
    if message["MessageType"] != USER_DATA_CHANGED:
        return []

    data = message.get("Data")
    if not isinstance(data, Mapping):
        raise MalformedNotification("UserDataChanged without Data")
    entries = data.get("UserDataList")
    if not isinstance(entries, list):
        raise MalformedNotification("UserDataChanged without UserDataList")
    return list(entries)


class Invalidator:
    """Consumes real-time notifications and reconciles the caches."""

    def __init__(self, client: JellyfinClient, engine: ReconciliationEngine):
        self._client = client
        self._engine = engine
        self._items: dict[str, dict[str, Any]] = {}
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def resolve_item(self, item_id: str) -> dict[str, Any]:
        """Return the item's type and parent linkage, memoised by id.

        Per-user state is dropped so later transitions stamp their own
        played date.
        """

        cached = self._items.get(item_id)
        if cached is None:
            item = await self._client.fetch_item(item_id)
            cached = {key: value for key, value in item.items() if key != "UserData"}
            self._items[item_id] = cached
        return dict(cached)

    async def apply(self, change: WatchStateChange) -> bool:
        """Reconcile one normalised change; returns ``False`` when dropped."""

        try:
            item = await self.resolve_item(change.item_id)
        except (NotFoundError, TransportError) as exc:
            logger.warning("Dropping notification for %s: %s", change.item_id, exc)
            return False

        item_type = item.get("Type") or change.item_type
        try:
            if change.played:
                await self._apply_played(change, item, item_type)
            else:
                await self._apply_unplayed(change, item, item_type)
        except ValidationError as exc:
            logger.warning("Dropping notification for %s: %s", change.item_id, exc)
            return False
        return True

    async def _apply_played(
        self, change: WatchStateChange, item: dict[str, Any], item_type: str | None
    ) -> None:
        category = CATEGORY_BY_TYPE.get(item_type or "")
        if change.is_watchlisted and category is not None:
            await self._engine.remove_from_watchlist(change.item_id, category, check=False)

        if item_type == "Episode":
            episode = Episode.model_validate(item)
            if not episode.series_id:
                logger.warning("Episode %s has no series", episode.id)
                return
            await self._engine.set_episode_watched(
                episode.series_id, episode.id, True, episode=episode
            )
        elif item_type == "Movie":
            await self._engine.set_movie_watched(MovieHistoryEntry.model_validate(item))
        else:
            logger.info("Played notification for %s item %s", item_type, change.item_id)

    async def _apply_unplayed(
        self, change: WatchStateChange, item: dict[str, Any], item_type: str | None
    ) -> None:
        if item_type == "Episode":
            episode = Episode.model_validate(item)
            if not episode.series_id:
                logger.warning("Episode %s has no series", episode.id)
                return
            await self._engine.set_episode_watched(
                episode.series_id, episode.id, False, episode=episode
            )
        elif item_type == "Movie":
            await self._engine.set_movie_unwatched(change.item_id)
        else:
            logger.info("Unplayed notification for %s item %s", item_type, change.item_id)

    async def handle_message(self, message: object) -> int:
        """Normalise and apply a transport message; returns applied changes."""

        try:
            entries = message_entries(message)
        except MalformedNotification as exc:
            logger.warning("Dropping malformed notification: %s", exc)
            return 0

        applied = 0
        for entry in entries:
            try:
                change = normalize_entry(entry)
            except MalformedNotification as exc:
                logger.warning("Dropping malformed notification entry: %s", exc)
                continue
            if await self.apply(change):
                applied += 1
        return applied

    def submit(self, message: object) -> None:
        """Queue a message for the background consumer."""

        self._queue.put_nowait(message)

    async def drain(self) -> None:
        """Wait until every queued message has been processed."""

        await self._queue.join()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.handle_message(message)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Notification handling failed: %s", exc)
            finally:
                self._queue.task_done()

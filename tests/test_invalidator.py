from __future__ import annotations

import json
from typing import cast

import pytest

from app.errors import MalformedNotification
from app.services.invalidator import message_entries, normalize_entry
from app.services.jellyfin import JellyfinClient
from app.services.sync_service import WatchSyncService


def user_data_changed(*entries: dict) -> dict:
    return {
        "MessageType": "UserDataChanged",
        "Data": {"UserId": "user-1", "UserDataList": list(entries)},
    }


def seed_show(fake, *, watched: int, total: int) -> None:
    fake.add_series("s1", "Dark")
    for index in range(1, total + 1):
        fake.add_episode(
            "s1",
            f"e{index}",
            1,
            index,
            played=index <= watched,
            last_played="2024-01-01T00:00:00Z" if index <= watched else None,
        )


def test_normalize_entry_accepts_both_casings() -> None:
    pascal = normalize_entry({"ItemId": "e1", "Played": True, "Likes": True})
    camel = normalize_entry({"itemId": "e1", "played": False, "isWatchlisted": False})

    assert (pascal.kind, pascal.item_id, pascal.is_watchlisted) == ("watched", "e1", True)
    assert (camel.kind, camel.is_watchlisted) == ("unwatched", False)


@pytest.mark.parametrize(
    "entry",
    [
        {"Played": True},
        {"ItemId": "", "Played": True},
        {"ItemId": "e1"},
        {"ItemId": "e1", "Played": "sometimes"},
        ["e1", True],
    ],
)
def test_normalize_entry_rejects_malformed(entry) -> None:
    with pytest.raises(MalformedNotification):
        normalize_entry(entry)


def test_message_entries_unwraps_envelope() -> None:
    message = user_data_changed({"ItemId": "a", "Played": True}, {"ItemId": "b", "Played": False})

    assert len(message_entries(message)) == 2
    assert len(message_entries(json.dumps(message))) == 2
    assert message_entries({"MessageType": "Sessions", "Data": []}) == []
    assert message_entries({"ItemId": "a", "Played": True}) == [{"ItemId": "a", "Played": True}]


@pytest.mark.parametrize(
    "message",
    [
        "not json",
        "[1, 2]",
        {"MessageType": "UserDataChanged"},
        {"MessageType": "UserDataChanged", "Data": {"UserDataList": "nope"}},
    ],
)
def test_message_entries_rejects_broken_envelopes(message) -> None:
    with pytest.raises(MalformedNotification):
        message_entries(message)


@pytest.mark.anyio("asyncio")
async def test_played_notification_updates_progress_without_refetch(
    fake_jellyfin, sync_service, tier, make_settings
) -> None:
    seed_show(fake_jellyfin, watched=8, total=10)
    fake_jellyfin.items["e9"]["UserData"]["Likes"] = True
    await sync_service.progress.load()
    await sync_service.watchlist["episodes"].load()

    # A later session only has the persisted summary.
    session = WatchSyncService(make_settings(), cast(JellyfinClient, fake_jellyfin), tier)
    await session.progress.load()
    await session.watchlist["episodes"].load()
    assert "e9" in session.watchlist["episodes"]
    fetches = (fake_jellyfin.count("episodes"), fake_jellyfin.count("series_list"))

    # The episode was played on another device.
    fake_jellyfin.items["e9"]["UserData"]["Played"] = True
    applied = await session.invalidator.handle_message(
        user_data_changed({"ItemId": "e9", "Played": True, "Likes": True})
    )

    assert applied == 1
    progress = session.progress.get("s1")
    assert (progress.watched_count, progress.total_episodes) == (9, 10)
    assert progress.remaining_count == 1
    assert progress.percentage == 90
    assert "e9" not in session.watchlist["episodes"]
    assert fake_jellyfin.items["e9"]["UserData"]["Likes"] is False
    assert (fake_jellyfin.count("episodes"), fake_jellyfin.count("series_list")) == fetches


@pytest.mark.anyio("asyncio")
async def test_final_episode_notification_completes_watchlisted_series(
    fake_jellyfin, sync_service
) -> None:
    seed_show(fake_jellyfin, watched=9, total=10)
    fake_jellyfin.items["s1"]["UserData"]["Likes"] = True
    await sync_service.progress.load()
    await sync_service.watchlist["series"].load()
    assert "s1" in sync_service.watchlist["series"]

    applied = await sync_service.invalidator.handle_message(
        user_data_changed({"ItemId": "e10", "Played": True, "Likes": True})
    )

    assert applied == 1
    progress = sync_service.progress.get("s1")
    assert next(e for e in progress.episodes if e.id == "e10").played
    assert (progress.watched_count, progress.percentage) == (10, 100)
    assert "s1" not in sync_service.watchlist["series"]
    assert fake_jellyfin.items["s1"]["UserData"]["Likes"] is False


@pytest.mark.anyio("asyncio")
async def test_duplicate_notification_converges(fake_jellyfin, sync_service) -> None:
    seed_show(fake_jellyfin, watched=1, total=4)
    await sync_service.progress.load()
    message = user_data_changed({"ItemId": "e2", "Played": True})

    await sync_service.invalidator.handle_message(message)
    await sync_service.invalidator.handle_message(message)

    progress = sync_service.progress.get("s1")
    assert (progress.watched_count, progress.remaining_count) == (2, 2)
    assert fake_jellyfin.count("item") == 1


@pytest.mark.anyio("asyncio")
async def test_malformed_and_unknown_entries_are_dropped(fake_jellyfin, sync_service) -> None:
    seed_show(fake_jellyfin, watched=1, total=2)
    await sync_service.progress.load()

    applied = await sync_service.invalidator.handle_message(
        user_data_changed(
            {"Played": True},
            {"ItemId": "ghost", "Played": True},
            {"ItemId": "e2", "Played": True},
        )
    )

    assert applied == 1
    assert await sync_service.invalidator.handle_message("{broken") == 0
    assert sync_service.progress.get("s1").watched_count == 2


@pytest.mark.anyio("asyncio")
async def test_movie_notifications_update_history(fake_jellyfin, sync_service) -> None:
    fake_jellyfin.add_movie("m1", "Heat", imdb="tt0113277")
    await sync_service.movies.load()

    await sync_service.invalidator.handle_message(
        user_data_changed({"ItemId": "m1", "Played": True, "ItemType": "Movie"})
    )
    assert [movie.id for movie in sync_service.movies.data] == ["m1"]

    await sync_service.invalidator.handle_message(
        user_data_changed({"ItemId": "m1", "Played": False})
    )
    assert len(sync_service.movies) == 0


@pytest.mark.anyio("asyncio")
async def test_background_consumer_drains_queue(fake_jellyfin, sync_service) -> None:
    seed_show(fake_jellyfin, watched=1, total=3)
    await sync_service.progress.load()
    await sync_service.start()
    try:
        sync_service.submit_notification(user_data_changed({"ItemId": "e2", "Played": True}))
        sync_service.submit_notification({"MessageType": "UserDataChanged"})
        sync_service.submit_notification({"ItemId": "e3", "Played": True})
        await sync_service.invalidator.drain()
    finally:
        await sync_service.stop()

    assert sync_service.progress.get("s1").watched_count == 3
    assert sync_service.invalidator.pending == 0


@pytest.mark.anyio("asyncio")
async def test_repeat_movie_notification_moves_movie_to_top(fake_jellyfin, sync_service) -> None:
    fake_jellyfin.add_movie("m1", "Heat", last_played="2020-01-01T00:00:00Z")
    fake_jellyfin.add_movie("m2", "Alien")
    await sync_service.movies.load()

    for item_id in ("m1", "m2", "m1"):
        await sync_service.invalidator.handle_message(
            user_data_changed({"ItemId": item_id, "Played": True})
        )

    page = await sync_service.get_page("movies", 1)
    assert [movie.id for movie in page.items] == ["m1", "m2"]


@pytest.mark.anyio("asyncio")
async def test_notification_invalidates_rendered_page(fake_jellyfin, sync_service) -> None:
    seed_show(fake_jellyfin, watched=1, total=3)
    first = await sync_service.get_page("progress", 1)
    assert not first.skip_render
    assert (await sync_service.get_page("progress", 1)).skip_render

    await sync_service.invalidator.handle_message(
        user_data_changed({"ItemId": "e2", "Played": True})
    )

    page = await sync_service.get_page("progress", 1)
    assert not page.skip_render
    assert page.items[0].watched_count == 2

"""Tests for the Jellyfin API client helpers."""

from __future__ import annotations

import httpx
import pytest

from app.errors import NotFoundError, TransportError
from app.services import jellyfin as jellyfin_module
from app.services.jellyfin import JellyfinClient

BASE_URL = "http://jellyfin.local:8096"


@pytest.fixture
def no_sleep(monkeypatch) -> list[float]:
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(jellyfin_module.asyncio, "sleep", _sleep)
    return delays


def _client(handler, settings) -> tuple[httpx.AsyncClient, JellyfinClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return http_client, JellyfinClient(settings, http_client)


@pytest.mark.anyio("asyncio")
async def test_requests_carry_token_and_user(make_settings) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "Items": [
                    {
                        "Id": "s1",
                        "Name": "Dark",
                        "UserData": {"PlayedPercentage": 40.0, "Played": False},
                    },
                    {
                        "Id": "s2",
                        "Name": "Unstarted",
                        "UserData": {"PlayedPercentage": 0, "Played": False},
                    },
                    {"Name": "missing id"},
                ]
            },
        )

    http_client, client = _client(handler, make_settings())
    async with http_client:
        started = await client.fetch_series_list()
        everything = await client.fetch_series_list(started_only=False)

    assert [series.id for series in started] == ["s1"]
    assert [series.id for series in everything] == ["s1", "s2"]
    request = requests[0]
    assert request.headers["Authorization"] == 'MediaBrowser Token="token"'
    assert request.url.path == "/Items"
    assert request.url.params["UserId"] == "user-1"
    assert request.url.params["IncludeItemTypes"] == "Series"


@pytest.mark.anyio("asyncio")
async def test_server_errors_are_retried(make_settings, no_sleep) -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503)
        return httpx.Response(
            200,
            json={
                "Items": [
                    {"Id": "e1", "ParentIndexNumber": 1, "IndexNumber": 1},
                ]
            },
        )

    http_client, client = _client(handler, make_settings())
    async with http_client:
        episodes = await client.fetch_episodes("s1")

    assert [episode.id for episode in episodes] == ["e1"]
    assert attempts["count"] == 3
    assert no_sleep == [pytest.approx(1.1), pytest.approx(2.2)]


@pytest.mark.anyio("asyncio")
async def test_retries_exhausted_raise_transport_error(make_settings, no_sleep) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    http_client, client = _client(handler, make_settings(REQUEST_RETRY_LIMIT=1))
    async with http_client:
        with pytest.raises(TransportError):
            await client.fetch_watched_movies()

    assert len(no_sleep) == 1


@pytest.mark.anyio("asyncio")
async def test_missing_item_raises_not_found(make_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="Not Found")

    http_client, client = _client(handler, make_settings())
    async with http_client:
        with pytest.raises(NotFoundError):
            await client.fetch_item("nope")
        with pytest.raises(NotFoundError):
            await client.fetch_series("nope")


@pytest.mark.anyio("asyncio")
async def test_client_errors_are_not_retried(make_settings, no_sleep) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="Unauthorized")

    http_client, client = _client(handler, make_settings())
    async with http_client:
        with pytest.raises(TransportError):
            await client.fetch_watchlist_items("Movie")

    assert no_sleep == []


@pytest.mark.anyio("asyncio")
async def test_missing_credentials_fail_before_any_request(make_settings) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"Items": []})

    http_client, client = _client(handler, make_settings(JELLYFIN_TOKEN="  "))
    async with http_client:
        with pytest.raises(TransportError):
            await client.fetch_watched_movies()

    assert requests == []


@pytest.mark.anyio("asyncio")
async def test_write_endpoints(make_settings) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={})

    http_client, client = _client(handler, make_settings())
    async with http_client:
        await client.set_played_state("e1", True)
        await client.set_played_state("e1", False)
        await client.set_watchlist_membership("m1", False)

    assert [(request.method, request.url.path) for request in requests] == [
        ("POST", "/Users/user-1/PlayedItems/e1"),
        ("DELETE", "/Users/user-1/PlayedItems/e1"),
        ("POST", "/Users/user-1/Items/m1/Rating"),
    ]
    assert requests[2].url.params["Likes"] == "false"


@pytest.mark.anyio("asyncio")
async def test_non_json_response_is_transport_error(make_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>login</html>")

    http_client, client = _client(handler, make_settings())
    async with http_client:
        with pytest.raises(TransportError):
            await client.fetch_item("m1")

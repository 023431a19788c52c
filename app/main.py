"""Entry point for the FastAPI-powered watch sync service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Literal

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from .cache.persistence import SqlCacheTier
from .config import settings
from .database import Database
from .services.jellyfin import JellyfinClient
from .services.sync_service import CACHE_CLASSES, WatchSyncService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class SortRequest(BaseModel):
    key: str
    direction: Literal["asc", "desc"] | None = None


class SearchRequest(BaseModel):
    term: str = ""


class RenderedRequest(BaseModel):
    page: int = Field(ge=1)
    count: int = Field(ge=0)


class WatchedRequest(BaseModel):
    watched: bool


class WatchlistRequest(BaseModel):
    member: bool
    item_type: str | None = Field(default=None, alias="itemType")


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=settings.server_url,
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    tier = SqlCacheTier(
        database.session_factory,
        default_ttl_seconds=settings.progress_cache_ttl_seconds,
    )
    client = JellyfinClient(settings, http_client)
    sync_service = WatchSyncService(settings, client, tier)

    app.state.sync_service = sync_service
    app.state.database = database
    await sync_service.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await sync_service.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Cached watch progress and watchlist sync for Jellyfin",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_sync_service(app: FastAPI) -> WatchSyncService:
    service = getattr(app.state, "sync_service", None)
    if service is None:
        raise RuntimeError("Sync service not initialised")
    return service


def _serialise(record: Any) -> Any:
    if isinstance(record, BaseModel):
        return record.model_dump(mode="json", by_alias=True, exclude_none=True)
    return record


def _require_cache_class(cache_class: str) -> str:
    if cache_class not in CACHE_CLASSES:
        raise HTTPException(status_code=404, detail=f"Unknown cache class {cache_class}")
    return cache_class


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/health")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/caches/{cache_class}/page")
    async def cache_page(cache_class: str, page: int | None = None) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        _require_cache_class(cache_class)
        if page is not None and page < 1:
            raise HTTPException(status_code=400, detail="Page must be 1 or greater")
        result = await service.get_page(cache_class, page)
        return {
            "items": [_serialise(item) for item in result.items],
            "totalPages": result.total_pages,
            "page": result.page,
            "totalItems": result.total_items,
            "skipRender": result.skip_render,
        }

    @fastapi_app.post("/caches/{cache_class}/sort")
    async def cache_sort(cache_class: str, body: SortRequest) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        _require_cache_class(cache_class)
        if not service.set_sort(cache_class, body.key, body.direction):
            raise HTTPException(status_code=400, detail=f"Unknown sort key {body.key}")
        state = service.projection_state(cache_class)
        return {"key": state.sort_key, "direction": state.sort_direction, "page": 1}

    @fastapi_app.post("/caches/{cache_class}/search")
    async def cache_search(cache_class: str, body: SearchRequest) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        _require_cache_class(cache_class)
        page = await service.set_search(cache_class, body.term)
        state = service.projection_state(cache_class)
        return {
            "term": state.search_term,
            "page": page,
            "totalPages": service.total_pages(cache_class),
        }

    @fastapi_app.post("/caches/{cache_class}/rendered")
    async def cache_rendered(cache_class: str, body: RenderedRequest) -> dict[str, str]:
        service = get_sync_service(fastapi_app)
        _require_cache_class(cache_class)
        service.mark_rendered(cache_class, body.page, body.count)
        return {"status": "ok"}

    @fastapi_app.post("/caches/{cache_class}/refresh")
    async def cache_refresh(cache_class: str) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        _require_cache_class(cache_class)
        count = await service.refresh(cache_class)
        return {"status": "ok", "items": count}

    @fastapi_app.delete("/caches")
    async def clear_caches() -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        removed = await service.clear_cache()
        return {"status": "ok", "removed": removed}

    @fastapi_app.post("/items/{item_id}/watched")
    async def item_watched(item_id: str, body: WatchedRequest) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        result = await service.toggle_watched(item_id, body.watched)
        return result.model_dump(mode="json")

    @fastapi_app.post("/items/{item_id}/watchlist")
    async def item_watchlist(item_id: str, body: WatchlistRequest) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        result = await service.toggle_watchlist(item_id, body.member, body.item_type)
        return result.model_dump(mode="json")

    @fastapi_app.post("/series/{series_id}/mark-all-watched")
    async def series_mark_all(series_id: str) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        marked = await service.mark_all_watched(series_id)
        return {"status": "ok", "marked": marked}

    @fastapi_app.get("/series/{series_id}/unwatched")
    async def series_unwatched(series_id: str) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        episodes = await service.unwatched_episodes(series_id)
        return {"items": [_serialise(episode) for episode in episodes]}

    @fastapi_app.post("/notifications", status_code=202)
    async def push_notification(request: Request) -> dict[str, str]:
        service = get_sync_service(fastapi_app)
        try:
            payload = await request.json()
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
        service.submit_notification(payload)
        return {"status": "queued"}

    @fastapi_app.get("/statistics")
    async def statistics() -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        stats = await service.statistics()
        return stats.model_dump(mode="json")

    @fastapi_app.get("/watchlist/export")
    async def watchlist_export() -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        document = await service.export_watchlist()
        return document.model_dump(mode="json", by_alias=True, exclude_none=True)

    @fastapi_app.post("/watchlist/import")
    async def watchlist_import(request: Request) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        try:
            payload = await request.json()
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
        try:
            report = await service.import_watchlist(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400, detail=exc.errors(include_url=False, include_context=False)
            ) from exc
        return report.model_dump(mode="json", by_alias=True)

    @fastapi_app.post("/tabs/{tab}/activate")
    async def tab_activate(tab: str) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        try:
            started = await service.activate_tab(tab)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown tab {tab}") from exc
        return {"tab": tab, "active": True, "changed": started}

    @fastapi_app.post("/tabs/{tab}/deactivate")
    async def tab_deactivate(tab: str) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        try:
            stopped = await service.deactivate_tab(tab)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown tab {tab}") from exc
        return {"tab": tab, "active": False, "changed": stopped}


app = create_app()


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )


if __name__ == "__main__":  # pragma: no cover - manual execution
    run()

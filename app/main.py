"""Entry point for the FastAPI-powered ReelFeed API."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import settings
from .database import Database
from .errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    ReelFeedError,
    UnauthenticatedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from .models import (
    ContentType,
    FeedEntry,
    FollowEdge,
    Genre,
    Identity,
    ListEntry,
    MediaItem,
    MutationResult,
    SearchPage,
    TrendingWindow,
    WatchStatus,
)
from .services.accounts import AccountStore, SessionContext
from .services.feed import FeedBuilder
from .services.social import SocialGraph
from .services.tmdb import CatalogClient
from .services.watchlist import ListSynchronizer
from .utils import parse_bearer_token

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class ProfileCreate(BaseModel):
    username: str
    display_name: str = ""
    bio: str | None = None
    avatar_url: str | None = None


class ProfileUpdate(BaseModel):
    display_name: str | None = None
    bio: str | None = None
    avatar_url: str | None = None


class ProfileCreated(BaseModel):
    profile: Identity
    access_token: str


class StatusPayload(BaseModel):
    status: WatchStatus = "to_watch"


class RatingPayload(BaseModel):
    rating: int = Field(ge=0, le=10)


class ProgressPayload(BaseModel):
    season: int = Field(ge=0)
    episode: int = Field(ge=0)


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(settings.catalog_timeout_seconds, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    catalog = CatalogClient(settings, tmdb_http_client)
    account_store = AccountStore(settings, database.session_factory)
    feed_builder = FeedBuilder(settings, account_store, catalog)

    app.state.catalog = catalog
    app.state.account_store = account_store
    app.state.feed_builder = feed_builder
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Track movies and series and follow what your friends watch",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_catalog(app: FastAPI) -> CatalogClient:
    catalog = getattr(app.state, "catalog", None)
    if not isinstance(catalog, CatalogClient):
        raise RuntimeError("Catalog client not initialised")
    return catalog


def get_account_store(app: FastAPI) -> AccountStore:
    store = getattr(app.state, "account_store", None)
    if not isinstance(store, AccountStore):
        raise RuntimeError("Account store not initialised")
    return store


def get_feed_builder(app: FastAPI) -> FeedBuilder:
    builder = getattr(app.state, "feed_builder", None)
    if not isinstance(builder, FeedBuilder):
        raise RuntimeError("Feed builder not initialised")
    return builder


ERROR_STATUS_CODES: tuple[tuple[type[Exception], int], ...] = (
    (InvalidInputError, 400),
    (UnauthenticatedError, 401),
    (NotFoundError, 404),
    (ConflictError, 409),
    (UpstreamTimeoutError, 504),
    (UpstreamUnavailableError, 502),
)


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(ReelFeedError)
    async def _service_error(_: Request, exc: ReelFeedError) -> JSONResponse:
        status_code = 500
        for error_type, code in ERROR_STATUS_CODES:
            if isinstance(exc, error_type):
                status_code = code
                break
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    async def _session_for(request: Request) -> SessionContext:
        token = parse_bearer_token(request.headers.get("authorization"))
        identity = await get_account_store(fastapi_app).identity_for_token(token)
        return SessionContext(identity=identity)

    async def _synchronizer(request: Request) -> ListSynchronizer:
        return ListSynchronizer(
            get_account_store(fastapi_app), await _session_for(request)
        )

    async def _social(request: Request) -> SocialGraph:
        return SocialGraph(get_account_store(fastapi_app), await _session_for(request))

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    # Catalog ----------------------------------------------------------------

    @fastapi_app.get("/api/catalog/search")
    async def search_catalog(query: str, page: int = 1) -> SearchPage:
        return await get_catalog(fastapi_app).search_multi(query, page)

    @fastapi_app.get("/api/catalog/trending")
    async def trending(window: TrendingWindow = "week") -> SearchPage:
        return await get_catalog(fastapi_app).get_trending(window)

    @fastapi_app.get("/api/catalog/popular/{kind}")
    async def popular(kind: ContentType, page: int = 1) -> SearchPage:
        catalog = get_catalog(fastapi_app)
        if kind == "movie":
            return await catalog.get_popular_movies(page)
        return await catalog.get_popular_series(page)

    @fastapi_app.get("/api/catalog/genres/{kind}")
    async def genres(kind: ContentType) -> list[Genre]:
        return await get_catalog(fastapi_app).get_genres(kind)

    @fastapi_app.get("/api/catalog/discover/{kind}/{genre_id}")
    async def discover(kind: ContentType, genre_id: int, page: int = 1) -> SearchPage:
        return await get_catalog(fastapi_app).discover_by_genre(kind, genre_id, page)

    @fastapi_app.get("/api/catalog/{kind}/{media_id}")
    async def media_details(kind: ContentType, media_id: int) -> MediaItem:
        return await get_catalog(fastapi_app).get_media_details(kind, media_id)

    # Profiles ---------------------------------------------------------------

    @fastapi_app.post("/api/profiles", status_code=201)
    async def create_profile(payload: ProfileCreate) -> ProfileCreated:
        identity, token = await get_account_store(fastapi_app).create_profile(
            payload.username,
            payload.display_name,
            bio=payload.bio,
            avatar_url=payload.avatar_url,
        )
        return ProfileCreated(profile=identity, access_token=token)

    @fastapi_app.get("/api/profiles/search")
    async def search_profiles(request: Request, query: str) -> list[Identity]:
        return await (await _social(request)).search_users(query)

    @fastapi_app.get("/api/me")
    async def current_profile(request: Request) -> Identity:
        session = await _session_for(request)
        if session.identity is None:
            raise UnauthenticatedError()
        return session.identity

    @fastapi_app.patch("/api/me")
    async def update_current_profile(
        request: Request, payload: ProfileUpdate
    ) -> Identity:
        session = await _session_for(request)
        user_id = session.require_user_id()
        changes = payload.model_dump(exclude_unset=True)
        return await get_account_store(fastapi_app).update_profile(user_id, changes)

    @fastapi_app.get("/api/profiles/{user_id}")
    async def profile(user_id: str) -> Identity:
        return await get_account_store(fastapi_app).get_profile(user_id)

    @fastapi_app.get("/api/profiles/{user_id}/followers")
    async def followers(request: Request, user_id: str) -> list[Identity]:
        return await (await _social(request)).followers(user_id)

    @fastapi_app.get("/api/profiles/{user_id}/following")
    async def following(request: Request, user_id: str) -> list[Identity]:
        return await (await _social(request)).following(user_id)

    @fastapi_app.get("/api/profiles/{user_id}/list")
    async def user_list(
        request: Request, user_id: str, status: WatchStatus | None = None
    ) -> list[ListEntry]:
        return await (await _synchronizer(request)).list_for(user_id, status)

    # Follows ----------------------------------------------------------------

    @fastapi_app.post("/api/follows/{user_id}", status_code=201)
    async def follow(request: Request, user_id: str) -> FollowEdge:
        return await (await _social(request)).follow(user_id)

    @fastapi_app.delete("/api/follows/{user_id}", status_code=204)
    async def unfollow(request: Request, user_id: str) -> None:
        await (await _social(request)).unfollow(user_id)

    @fastapi_app.get("/api/follows/{user_id}")
    async def is_following(request: Request, user_id: str) -> dict[str, bool]:
        return {"following": await (await _social(request)).is_following(user_id)}

    # Watch list -------------------------------------------------------------

    @fastapi_app.get("/api/list/{kind}/{media_id}")
    async def list_entry(request: Request, kind: ContentType, media_id: int) -> ListEntry:
        entry = await (await _synchronizer(request)).get_entry(media_id, kind)
        if entry is None:
            raise NotFoundError(f"No list entry for {kind} {media_id}")
        return entry

    @fastapi_app.put("/api/list/{kind}/{media_id}")
    async def add_to_list(
        request: Request, kind: ContentType, media_id: int, payload: StatusPayload
    ) -> MutationResult:
        synchronizer = await _synchronizer(request)
        return await synchronizer.add_to_list(media_id, kind, payload.status)

    @fastapi_app.patch("/api/list/{kind}/{media_id}/status")
    async def update_status(
        request: Request, kind: ContentType, media_id: int, payload: StatusPayload
    ) -> MutationResult:
        synchronizer = await _synchronizer(request)
        return await synchronizer.update_status(media_id, kind, payload.status)

    @fastapi_app.post("/api/list/{kind}/{media_id}/favorite")
    async def toggle_favorite(
        request: Request, kind: ContentType, media_id: int
    ) -> MutationResult:
        return await (await _synchronizer(request)).toggle_favorite(media_id, kind)

    @fastapi_app.put("/api/list/{kind}/{media_id}/rating")
    async def rate_media(
        request: Request, kind: ContentType, media_id: int, payload: RatingPayload
    ) -> MutationResult:
        synchronizer = await _synchronizer(request)
        return await synchronizer.rate_media(media_id, kind, payload.rating)

    @fastapi_app.patch("/api/list/{kind}/{media_id}/progress")
    async def update_progress(
        request: Request, kind: ContentType, media_id: int, payload: ProgressPayload
    ) -> MutationResult:
        synchronizer = await _synchronizer(request)
        return await synchronizer.update_progress(
            media_id, kind, payload.season, payload.episode
        )

    @fastapi_app.delete("/api/list/{kind}/{media_id}")
    async def remove_from_list(
        request: Request, kind: ContentType, media_id: int
    ) -> MutationResult:
        return await (await _synchronizer(request)).remove_from_list(media_id, kind)

    # Feed -------------------------------------------------------------------

    @fastapi_app.get("/api/feed")
    async def feed(request: Request) -> list[FeedEntry]:
        session = await _session_for(request)
        viewer_id = session.require_user_id()
        return await get_feed_builder(fastapi_app).build_feed(viewer_id)


app = create_app()

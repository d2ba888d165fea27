"""Client for browsing The Movie Database (TMDB) catalog."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import IMAGE_SIZES, Settings
from ..errors import (
    InvalidInputError,
    NotFoundError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from ..models import (
    TMDB_MEDIA_TYPES,
    ContentType,
    Genre,
    MediaItem,
    SearchPage,
    TrendingWindow,
    to_tmdb_media_type,
)

logger = logging.getLogger(__name__)


class CatalogClient:
    """Thin async wrapper around the TMDB v3 API.

    Every call is a single request; nothing is cached here. Results whose
    ``media_type`` is not a movie or a series (people, collections) are
    dropped from mixed listings.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    async def search_multi(self, query: str, page: int = 1) -> SearchPage:
        """Search movies and series in one call."""

        query = (query or "").strip()
        if not query:
            return SearchPage(page=page)
        data = await self._request(
            "/search/multi",
            params={"query": query, "page": page, "include_adult": "false"},
        )
        return self._parse_page(data)

    async def get_trending(self, window: TrendingWindow = "week") -> SearchPage:
        if window not in ("day", "week"):
            raise InvalidInputError(f"Unsupported trending window: {window}")
        data = await self._request(f"/trending/all/{window}")
        return self._parse_page(data)

    async def get_popular_movies(self, page: int = 1) -> SearchPage:
        data = await self._request("/movie/popular", params={"page": page})
        return self._parse_page(data, kind="movie")

    async def get_popular_series(self, page: int = 1) -> SearchPage:
        data = await self._request("/tv/popular", params={"page": page})
        return self._parse_page(data, kind="series")

    async def discover_by_genre(
        self, kind: ContentType, genre_id: int, page: int = 1
    ) -> SearchPage:
        """Return catalog items of one kind tagged with ``genre_id``."""

        data = await self._request(
            f"/discover/{to_tmdb_media_type(kind)}",
            params={"with_genres": genre_id, "page": page},
        )
        return self._parse_page(data, kind=kind)

    async def get_genres(self, kind: ContentType) -> list[Genre]:
        data = await self._request(f"/genre/{to_tmdb_media_type(kind)}/list")
        genres = data.get("genres") or []
        return [
            Genre.model_validate(genre)
            for genre in genres
            if isinstance(genre, dict)
        ]

    async def get_media_details(self, kind: ContentType, media_id: int) -> MediaItem:
        """Fetch the full record of one movie or series."""

        data = await self._request(f"/{to_tmdb_media_type(kind)}/{media_id}")
        return MediaItem.from_tmdb(data, kind)

    def get_image_url(self, path: str | None, size: str = "w500") -> str:
        """Return the CDN URL of an image, or the placeholder for missing art."""

        if not path:
            return self._settings.placeholder_poster
        if size not in IMAGE_SIZES:
            raise InvalidInputError(f"Unsupported image size: {size}")
        if path.startswith("http"):
            return path
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self._settings.image_base_url}/{size}{path}"

    async def _request(
        self, endpoint: str, *, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        query: dict[str, Any] = {"language": self._settings.tmdb_language}
        if params:
            query.update(params)
        if self._settings.tmdb_api_key:
            query["api_key"] = self._settings.tmdb_api_key

        try:
            response = await self._client.get(endpoint, params=query)
        except httpx.TimeoutException as exc:
            logger.warning("TMDB request to %s timed out", endpoint)
            raise UpstreamTimeoutError(f"TMDB request to {endpoint} timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("TMDB request to %s failed: %s", endpoint, exc)
            raise UpstreamUnavailableError(f"TMDB request to {endpoint} failed") from exc

        if response.status_code == 404:
            raise NotFoundError(f"TMDB resource {endpoint} not found")
        if response.status_code >= 400:
            logger.warning(
                "TMDB request to %s returned %s: %s",
                endpoint,
                response.status_code,
                response.text,
            )
            raise UpstreamUnavailableError(
                f"TMDB API error: {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailableError(
                f"TMDB returned a non-JSON response for {endpoint}"
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamUnavailableError(
                f"Unexpected TMDB response structure for {endpoint}"
            )
        return payload

    @staticmethod
    def _parse_page(data: dict[str, Any], *, kind: ContentType | None = None) -> SearchPage:
        items: list[MediaItem] = []
        for result in data.get("results") or []:
            if not isinstance(result, dict) or "id" not in result:
                continue
            if kind is not None:
                item_kind: ContentType | None = kind
            else:
                item_kind = TMDB_MEDIA_TYPES.get(str(result.get("media_type")))
            if item_kind is None:
                continue
            items.append(MediaItem.from_tmdb(result, item_kind))

        return SearchPage(
            page=int(data.get("page") or 1),
            results=items,
            total_pages=int(data.get("total_pages") or 0),
            total_results=int(data.get("total_results") or 0),
        )

"""Activity feed assembly for the people a user follows."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable

from ..config import Settings
from ..models import ActivityEvent, ContentType, FeedEntry, MediaItem
from ..utils import format_relative_time, humanize_status
from .accounts import AccountStore
from .tmdb import CatalogClient

logger = logging.getLogger(__name__)

UNKNOWN_TITLE = "Unknown"
FEED_POSTER_SIZE = "w200"

MediaKey = tuple[int, ContentType]
MediaFetcher = Callable[[ContentType, int], Awaitable[MediaItem]]


class MediaLookupCache:
    """Get-or-fetch map that coalesces lookups of the same media.

    The first request for a key starts one task; later requests for that key
    await the same task. A failed fetch resolves to ``None`` and is not
    retried within the cache's lifetime.
    """

    def __init__(self, fetch: MediaFetcher):
        self._fetch = fetch
        self._tasks: dict[MediaKey, asyncio.Task[MediaItem | None]] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def get(self, media_id: int, kind: ContentType) -> MediaItem | None:
        key = (media_id, kind)
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.create_task(self._resolve(key))
            self._tasks[key] = task
        # One cancelled waiter must not cancel the fetch other waiters share.
        return await asyncio.shield(task)

    async def resolve_all(self, keys: Iterable[MediaKey]) -> dict[MediaKey, MediaItem]:
        """Resolve every key concurrently and wait for all of them."""

        unique_keys = list(dict.fromkeys(keys))
        if not unique_keys:
            return {}
        results = await asyncio.gather(
            *(self.get(media_id, kind) for media_id, kind in unique_keys),
            return_exceptions=True,
        )
        resolved: dict[MediaKey, MediaItem] = {}
        for key, result in zip(unique_keys, results):
            if isinstance(result, BaseException) or result is None:
                continue
            resolved[key] = result
        return resolved

    async def _resolve(self, key: MediaKey) -> MediaItem | None:
        media_id, kind = key
        try:
            return await self._fetch(kind, media_id)
        except Exception as exc:
            logger.warning("Failed to fetch %s %s for the feed: %s", kind, media_id, exc)
            return None


def render_activity_text(event: ActivityEvent, title: str) -> str:
    """Describe an activity event in one sentence."""

    actor = event.actor.display_name if event.actor else "Someone"
    metadata = event.metadata or {}

    if event.kind == "added_to_list":
        status = humanize_status(metadata.get("status"))
        return f"{actor} added {title} to their {status} list"
    if event.kind == "status_update":
        status = humanize_status(metadata.get("status"))
        return f"{actor} marked {title} as {status}"
    if event.kind == "favorited":
        return f"{actor} favorited {title}"
    if event.kind == "rated":
        return f"{actor} rated {title} {metadata.get('rating')}/10"
    if event.kind == "removed_from_list":
        return f"{actor} removed {title} from their list"
    return f"{actor} had some activity"


class FeedBuilder:
    """Builds a viewer's feed from the activity of the people they follow.

    Store failures abort the build. Catalog failures only cost the affected
    entries their title and poster.
    """

    def __init__(
        self,
        settings: Settings,
        store: AccountStore,
        catalog: CatalogClient,
    ):
        self._settings = settings
        self._store = store
        self._catalog = catalog

    async def build_feed(
        self, viewer_id: str, *, now: datetime | None = None
    ) -> list[FeedEntry]:
        limit = self._settings.feed_limit
        followed = await self._store.following_ids(viewer_id)
        if not followed:
            return []

        events = await self._store.recent_activity(followed, limit=limit)
        events = sorted(events, key=lambda event: event.created_at, reverse=True)[:limit]

        # Scoped to this build: a later feed fetches media again.
        cache = MediaLookupCache(self._catalog.get_media_details)
        media = await cache.resolve_all(
            key for key in (event.media_key for event in events) if key is not None
        )

        reference = now or datetime.utcnow()
        entries: list[FeedEntry] = []
        for event in events:
            item = media.get(event.media_key) if event.media_key else None
            title = (item.title or UNKNOWN_TITLE) if item else UNKNOWN_TITLE
            entries.append(
                FeedEntry(
                    event=event,
                    media=item,
                    title=title,
                    text=render_activity_text(event, title),
                    poster_url=(
                        self._catalog.get_image_url(item.poster_path, FEED_POSTER_SIZE)
                        if item
                        else None
                    ),
                    relative_time=format_relative_time(event.created_at, reference),
                )
            )
        logger.debug(
            "Built feed for %s: %s entries, %s media resolved",
            viewer_id,
            len(entries),
            len(media),
        )
        return entries

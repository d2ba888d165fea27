"""Watch-list mutations with a local mirror of the signed-in user's entries."""

from __future__ import annotations

import logging
from typing import Sequence

from ..db_models import ListEntryRecord
from ..errors import InvalidInputError
from ..models import ContentType, ListEntry, MutationResult, WatchStatus
from .accounts import AccountStore, ActivityDraft, EntryMutator, SessionContext

logger = logging.getLogger(__name__)

WATCH_STATUSES: tuple[WatchStatus, ...] = ("to_watch", "watching", "watched")
DEFAULT_STATUS: WatchStatus = "to_watch"
MAX_RATING = 10
CONTENT_TYPES: tuple[ContentType, ...] = ("movie", "series")


def _check_status(status: str) -> None:
    if status not in WATCH_STATUSES:
        raise InvalidInputError(f"Unsupported watch status: {status}")


def _check_kind(kind: str) -> None:
    if kind not in CONTENT_TYPES:
        raise InvalidInputError(f"Unsupported content type: {kind}")


class ListSynchronizer:
    """Applies watch-list changes for one session and mirrors the results.

    Every mutation returns the stored entry together with the activity event
    it appended. The mirror only changes after the store confirmed a write:
    updated entries are replaced in place, new ones go to the end and removed
    ones are dropped, so it never holds two entries for the same media.
    """

    def __init__(
        self,
        store: AccountStore,
        session: SessionContext,
        entries: Sequence[ListEntry] = (),
    ):
        self._store = store
        self._session = session
        self._entries: list[ListEntry] = []
        for entry in entries:
            self._reconcile(entry)

    @property
    def entries(self) -> tuple[ListEntry, ...]:
        return tuple(self._entries)

    async def load(self, status: WatchStatus | None = None) -> tuple[ListEntry, ...]:
        """Replace the mirror with the signed-in user's stored entries."""

        user_id = self._session.require_user_id()
        self._entries = []
        for entry in await self._store.list_entries(user_id, status):
            self._reconcile(entry)
        return self.entries

    async def add_to_list(
        self,
        media_id: int,
        kind: ContentType,
        status: WatchStatus = DEFAULT_STATUS,
    ) -> MutationResult:
        """Track a title, overwriting the status of an existing entry."""

        _check_status(status)
        user_id = self._session.require_user_id()

        def _apply(record: ListEntryRecord) -> ActivityDraft:
            record.status = status
            return ActivityDraft("added_to_list", {"status": status})

        return await self._mutate(user_id, media_id, kind, _apply, create=True)

    async def update_status(
        self, media_id: int, kind: ContentType, status: WatchStatus
    ) -> MutationResult:
        _check_status(status)
        user_id = self._session.require_user_id()

        def _apply(record: ListEntryRecord) -> ActivityDraft:
            record.status = status
            return ActivityDraft("status_update", {"status": status})

        return await self._mutate(user_id, media_id, kind, _apply, create=False)

    async def toggle_favorite(self, media_id: int, kind: ContentType) -> MutationResult:
        """Flip the favorite flag; only favoriting is announced as activity.

        A title that is not tracked yet is added with the default status.
        """

        user_id = self._session.require_user_id()

        def _apply(record: ListEntryRecord) -> ActivityDraft | None:
            record.favorite = not bool(record.favorite)
            if record.favorite:
                return ActivityDraft("favorited")
            return None

        return await self._mutate(user_id, media_id, kind, _apply, create=True)

    async def rate_media(
        self, media_id: int, kind: ContentType, rating: int
    ) -> MutationResult:
        """Store a 0-10 rating, adding the title with the default status if needed."""

        if isinstance(rating, bool) or not 0 <= rating <= MAX_RATING:
            raise InvalidInputError(f"Rating must be between 0 and {MAX_RATING}")
        user_id = self._session.require_user_id()

        def _apply(record: ListEntryRecord) -> ActivityDraft:
            record.rating = rating
            return ActivityDraft("rated", {"rating": rating})

        return await self._mutate(user_id, media_id, kind, _apply, create=True)

    async def update_progress(
        self, media_id: int, kind: ContentType, season: int, episode: int
    ) -> MutationResult:
        """Record the season/episode reached. Progress emits no activity."""

        if season < 0 or episode < 0:
            raise InvalidInputError("Season and episode must not be negative")
        user_id = self._session.require_user_id()

        def _apply(record: ListEntryRecord) -> None:
            record.current_season = season
            record.current_episode = episode
            return None

        return await self._mutate(user_id, media_id, kind, _apply, create=False)

    async def remove_from_list(self, media_id: int, kind: ContentType) -> MutationResult:
        _check_kind(kind)
        user_id = self._session.require_user_id()
        event = await self._store.delete_entry(
            user_id, media_id, kind, ActivityDraft("removed_from_list")
        )
        self._entries = [
            entry for entry in self._entries if entry.key != (media_id, kind)
        ]
        logger.debug("User %s removed %s %s", user_id, kind, media_id)
        return MutationResult(entry=None, event=event)

    async def get_entry(self, media_id: int, kind: ContentType) -> ListEntry | None:
        """The signed-in user's entry for a title, or ``None`` when signed out."""

        user_id = self._session.user_id
        if user_id is None:
            return None
        return await self._store.get_entry(user_id, media_id, kind)

    async def list_for(
        self, user_id: str, status: WatchStatus | None = None
    ) -> list[ListEntry]:
        """Any user's entries, most recently updated first."""

        if status is not None:
            _check_status(status)
        return await self._store.list_entries(user_id, status)

    async def _mutate(
        self,
        user_id: str,
        media_id: int,
        kind: ContentType,
        mutator: EntryMutator,
        *,
        create: bool,
    ) -> MutationResult:
        _check_kind(kind)
        entry, event = await self._store.mutate_entry(
            user_id,
            media_id,
            kind,
            mutator,
            create=create,
            default_status=DEFAULT_STATUS,
        )
        self._reconcile(entry)
        logger.debug(
            "User %s updated %s %s (%s)",
            user_id,
            kind,
            media_id,
            event.kind if event else "no activity",
        )
        return MutationResult(entry=entry, event=event)

    def _reconcile(self, entry: ListEntry) -> None:
        for index, existing in enumerate(self._entries):
            if existing.key == entry.key:
                self._entries[index] = entry
                return
        self._entries.append(entry)

"""Persistence for profiles, watch-list rows, follow edges and activity."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import ActivityRecord, FollowRecord, ListEntryRecord, Profile
from ..errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UnauthenticatedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from ..models import (
    ActivityEvent,
    ActivityKind,
    ContentType,
    FollowEdge,
    Identity,
    ListEntry,
    WatchStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

USERNAME_RE = re.compile(r"^[a-z0-9_]{3,32}$")
PROFILE_FIELDS = frozenset({"display_name", "bio", "avatar_url"})


@dataclass(slots=True)
class SessionContext:
    """The identity an operation runs on behalf of, if any."""

    identity: Identity | None = None

    @property
    def user_id(self) -> str | None:
        return self.identity.id if self.identity else None

    def require_user_id(self) -> str:
        if self.identity is None:
            raise UnauthenticatedError()
        return self.identity.id


@dataclass(slots=True)
class ActivityDraft:
    """An activity row to append alongside a watch-list write."""

    kind: ActivityKind
    metadata: dict[str, Any] = field(default_factory=dict)


EntryMutator = Callable[[ListEntryRecord], ActivityDraft | None]


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _to_event(record: ActivityRecord, actor: Profile | None = None) -> ActivityEvent:
    return ActivityEvent(
        id=record.id,
        user_id=record.user_id,
        kind=record.kind,  # type: ignore[arg-type]
        media_id=record.media_id,
        media_kind=record.media_kind,  # type: ignore[arg-type]
        metadata=dict(record.details or {}),
        created_at=record.created_at,
        actor=Identity.model_validate(actor) if actor is not None else None,
    )


class AccountStore:
    """System of record for everything users create.

    Each public coroutine runs in its own session and transaction, is bounded
    by ``STORE_TIMEOUT`` and translates SQLAlchemy failures into the service's
    error kinds. Nothing is retried.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._settings = settings
        self._session_factory = session_factory

    async def _guard(
        self,
        operation: Awaitable[T],
        *,
        conflict_message: str = "Conflicting write",
    ) -> T:
        try:
            return await asyncio.wait_for(
                operation, timeout=self._settings.store_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError("Account store did not respond in time") from exc
        except IntegrityError as exc:
            raise ConflictError(conflict_message) from exc
        except SQLAlchemyError as exc:
            logger.warning("Account store operation failed: %s", exc)
            raise UpstreamUnavailableError("Account store unavailable") from exc

    # Profiles ---------------------------------------------------------------

    async def create_profile(
        self,
        username: str,
        display_name: str,
        *,
        bio: str | None = None,
        avatar_url: str | None = None,
    ) -> tuple[Identity, str]:
        """Create a profile and return it with its freshly issued access token."""

        normalized = (username or "").strip().lower()
        if not USERNAME_RE.match(normalized):
            raise InvalidInputError(
                "Username must be 3-32 characters of letters, digits or underscores"
            )
        display_name = (display_name or "").strip() or normalized
        token = secrets.token_urlsafe(32)

        async def _create() -> Identity:
            async with self._session_factory() as session:
                existing = await session.execute(
                    select(Profile.id).where(Profile.username == normalized)
                )
                if existing.scalar_one_or_none() is not None:
                    raise ConflictError("Username already taken")
                now = datetime.utcnow()
                profile = Profile(
                    id=uuid.uuid4().hex,
                    username=normalized,
                    display_name=display_name,
                    bio=bio,
                    avatar_url=avatar_url,
                    token_digest=hash_token(token),
                    created_at=now,
                    updated_at=now,
                )
                session.add(profile)
                await session.commit()
                return Identity.model_validate(profile)

        identity = await self._guard(
            _create(), conflict_message="Username already taken"
        )
        logger.info("Created profile %s (%s)", identity.id, identity.username)
        return identity, token

    async def identity_for_token(self, token: str | None) -> Identity | None:
        """Resolve an access token to the identity it was issued for."""

        if not token:
            return None

        async def _lookup() -> Identity | None:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Profile).where(Profile.token_digest == hash_token(token))
                )
                profile = result.scalar_one_or_none()
                return Identity.model_validate(profile) if profile else None

        return await self._guard(_lookup())

    async def get_profile(self, user_id: str) -> Identity:
        async def _get() -> Identity:
            async with self._session_factory() as session:
                profile = await session.get(Profile, user_id)
                if profile is None:
                    raise NotFoundError(f"Profile {user_id} not found")
                return Identity.model_validate(profile)

        return await self._guard(_get())

    async def update_profile(
        self, user_id: str, changes: Mapping[str, Any]
    ) -> Identity:
        """Apply display name, bio or avatar changes to a profile."""

        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise InvalidInputError(
                f"Unsupported profile fields: {', '.join(sorted(unknown))}"
            )
        if "display_name" in changes and not str(changes["display_name"] or "").strip():
            raise InvalidInputError("Display name may not be empty")

        async def _update() -> Identity:
            async with self._session_factory() as session:
                profile = await session.get(Profile, user_id)
                if profile is None:
                    raise NotFoundError(f"Profile {user_id} not found")
                for key, value in changes.items():
                    setattr(profile, key, value)
                profile.updated_at = datetime.utcnow()
                await session.commit()
                return Identity.model_validate(profile)

        return await self._guard(_update())

    async def search_profiles(self, query: str, *, limit: int = 20) -> list[Identity]:
        """Case-insensitive substring match on username or display name."""

        query = (query or "").strip()
        if not query:
            return []

        async def _search() -> list[Identity]:
            async with self._session_factory() as session:
                stmt = (
                    select(Profile)
                    .where(
                        or_(
                            Profile.username.icontains(query, autoescape=True),
                            Profile.display_name.icontains(query, autoescape=True),
                        )
                    )
                    .order_by(Profile.username)
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return [Identity.model_validate(p) for p in result.scalars().all()]

        return await self._guard(_search())

    # Watch-list rows --------------------------------------------------------

    async def get_entry(
        self, user_id: str, media_id: int, kind: ContentType
    ) -> ListEntry | None:
        async def _get() -> ListEntry | None:
            async with self._session_factory() as session:
                record = await self._load_entry(session, user_id, media_id, kind)
                return ListEntry.model_validate(record) if record else None

        return await self._guard(_get())

    async def list_entries(
        self, user_id: str, status: WatchStatus | None = None
    ) -> list[ListEntry]:
        """Return a user's entries, most recently updated first."""

        async def _list() -> list[ListEntry]:
            async with self._session_factory() as session:
                stmt = select(ListEntryRecord).where(ListEntryRecord.user_id == user_id)
                if status:
                    stmt = stmt.where(ListEntryRecord.status == status)
                stmt = stmt.order_by(
                    ListEntryRecord.updated_at.desc(), ListEntryRecord.id.desc()
                )
                result = await session.execute(stmt)
                return [ListEntry.model_validate(r) for r in result.scalars().all()]

        return await self._guard(_list())

    async def mutate_entry(
        self,
        user_id: str,
        media_id: int,
        kind: ContentType,
        mutator: EntryMutator,
        *,
        create: bool,
        default_status: WatchStatus = "to_watch",
    ) -> tuple[ListEntry, ActivityEvent | None]:
        """Apply ``mutator`` to an entry and record its activity atomically.

        A missing row is created with ``default_status`` first when ``create``
        is set. If a concurrent call inserted the same row in the meantime,
        the mutator is applied to that row instead. The mutator returns the
        activity to append, if any; the entry write and the activity row
        share one transaction.
        """

        async def _mutate() -> tuple[ListEntry, ActivityEvent | None]:
            async with self._session_factory() as session:
                record = await self._load_entry(session, user_id, media_id, kind)
                if record is None:
                    if not create:
                        raise NotFoundError(
                            f"No list entry for {kind} {media_id}"
                        )
                    record = await self._insert_entry(
                        session, user_id, media_id, kind, default_status
                    )

                draft = mutator(record)
                record.updated_at = datetime.utcnow()
                await session.flush()

                activity: ActivityRecord | None = None
                if draft is not None:
                    activity = self._new_activity(user_id, draft, media_id, kind)
                    session.add(activity)
                await session.commit()

                entry = ListEntry.model_validate(record)
                return entry, _to_event(activity) if activity else None

        return await self._guard(
            _mutate(), conflict_message="List entry was changed concurrently"
        )

    async def _insert_entry(
        self,
        session: AsyncSession,
        user_id: str,
        media_id: int,
        kind: ContentType,
        status: WatchStatus,
    ) -> ListEntryRecord:
        now = datetime.utcnow()
        record = ListEntryRecord(
            user_id=user_id,
            media_id=media_id,
            kind=kind,
            status=status,
            favorite=False,
            current_season=0,
            current_episode=0,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            existing = await self._load_entry(session, user_id, media_id, kind)
            if existing is None:
                raise
            logger.debug(
                "List entry %s %s for %s was created concurrently", kind, media_id, user_id
            )
            return existing
        return record

    async def delete_entry(
        self,
        user_id: str,
        media_id: int,
        kind: ContentType,
        draft: ActivityDraft,
    ) -> ActivityEvent:
        """Delete an entry and append ``draft``; nothing is written if absent."""

        async def _delete() -> ActivityEvent:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(ListEntryRecord).where(
                        ListEntryRecord.user_id == user_id,
                        ListEntryRecord.media_id == media_id,
                        ListEntryRecord.kind == kind,
                    )
                )
                if not result.rowcount:
                    await session.rollback()
                    raise NotFoundError(f"No list entry for {kind} {media_id}")
                activity = self._new_activity(user_id, draft, media_id, kind)
                session.add(activity)
                await session.commit()
                return _to_event(activity)

        return await self._guard(_delete())

    @staticmethod
    async def _load_entry(
        session: AsyncSession, user_id: str, media_id: int, kind: str
    ) -> ListEntryRecord | None:
        result = await session.execute(
            select(ListEntryRecord).where(
                ListEntryRecord.user_id == user_id,
                ListEntryRecord.media_id == media_id,
                ListEntryRecord.kind == kind,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _new_activity(
        user_id: str, draft: ActivityDraft, media_id: int | None, kind: str | None
    ) -> ActivityRecord:
        return ActivityRecord(
            user_id=user_id,
            kind=draft.kind,
            media_id=media_id,
            media_kind=kind,
            details=dict(draft.metadata),
            created_at=datetime.utcnow(),
        )

    # Follow edges -----------------------------------------------------------

    async def insert_follow(self, follower_id: str, following_id: str) -> FollowEdge:
        async def _insert() -> FollowEdge:
            async with self._session_factory() as session:
                if await session.get(Profile, following_id) is None:
                    raise NotFoundError(f"Profile {following_id} not found")
                existing = await session.execute(
                    select(FollowRecord.id).where(
                        FollowRecord.follower_id == follower_id,
                        FollowRecord.following_id == following_id,
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    raise ConflictError("Already following this user")
                record = FollowRecord(
                    follower_id=follower_id,
                    following_id=following_id,
                    created_at=datetime.utcnow(),
                )
                session.add(record)
                await session.commit()
                return FollowEdge.model_validate(record)

        return await self._guard(
            _insert(), conflict_message="Already following this user"
        )

    async def delete_follow(self, follower_id: str, following_id: str) -> None:
        async def _delete() -> None:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(FollowRecord).where(
                        FollowRecord.follower_id == follower_id,
                        FollowRecord.following_id == following_id,
                    )
                )
                if not result.rowcount:
                    await session.rollback()
                    raise NotFoundError("Not following this user")
                await session.commit()

        await self._guard(_delete())

    async def follow_exists(self, follower_id: str, following_id: str) -> bool:
        async def _exists() -> bool:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(FollowRecord.id).where(
                        FollowRecord.follower_id == follower_id,
                        FollowRecord.following_id == following_id,
                    )
                )
                return result.scalar_one_or_none() is not None

        return await self._guard(_exists())

    async def followers(self, user_id: str) -> list[Identity]:
        """Profiles following ``user_id``, newest edge first."""

        return await self._guard(
            self._edge_profiles(
                FollowRecord.follower_id, FollowRecord.following_id, user_id
            )
        )

    async def following(self, user_id: str) -> list[Identity]:
        """Profiles ``user_id`` follows, newest edge first."""

        return await self._guard(
            self._edge_profiles(
                FollowRecord.following_id, FollowRecord.follower_id, user_id
            )
        )

    async def _edge_profiles(self, join_column, filter_column, user_id: str) -> list[Identity]:
        async with self._session_factory() as session:
            stmt = (
                select(Profile)
                .join(FollowRecord, join_column == Profile.id)
                .where(filter_column == user_id)
                .order_by(FollowRecord.created_at.desc(), FollowRecord.id.desc())
            )
            result = await session.execute(stmt)
            return [Identity.model_validate(p) for p in result.scalars().all()]

    async def following_ids(self, user_id: str) -> list[str]:
        async def _ids() -> list[str]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(FollowRecord.following_id).where(
                        FollowRecord.follower_id == user_id
                    )
                )
                return list(result.scalars().all())

        return await self._guard(_ids())

    # Activity ---------------------------------------------------------------

    async def recent_activity(
        self, actor_ids: Sequence[str], *, limit: int
    ) -> list[ActivityEvent]:
        """Newest activity of the given actors with each actor's profile joined."""

        if not actor_ids:
            return []

        async def _recent() -> list[ActivityEvent]:
            async with self._session_factory() as session:
                stmt = (
                    select(ActivityRecord, Profile)
                    .join(Profile, ActivityRecord.user_id == Profile.id)
                    .where(ActivityRecord.user_id.in_(list(actor_ids)))
                    .order_by(ActivityRecord.created_at.desc(), ActivityRecord.id.desc())
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return [_to_event(record, actor) for record, actor in result.all()]

        return await self._guard(_recent())

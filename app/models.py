"""Pydantic models describing catalog records, list entries and activity."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ContentType = Literal["movie", "series"]
WatchStatus = Literal["to_watch", "watching", "watched"]
ActivityKind = Literal[
    "added_to_list",
    "status_update",
    "favorited",
    "rated",
    "removed_from_list",
]
TrendingWindow = Literal["day", "week"]

# TMDB names series "tv"; the rest of the service only ever sees "series".
TMDB_MEDIA_TYPES: dict[str, ContentType] = {"movie": "movie", "tv": "series"}


def to_tmdb_media_type(kind: ContentType) -> str:
    """Return the TMDB path segment for a content type."""

    return "tv" if kind == "series" else "movie"


class MediaItem(BaseModel):
    """A movie or series record returned by the catalog."""

    model_config = ConfigDict(frozen=True)

    id: int
    kind: ContentType
    title: str = ""
    release_date: str | None = None
    overview: str = ""
    poster_path: str | None = None
    backdrop_path: str | None = None
    genre_ids: list[int] = Field(default_factory=list)
    vote_average: float = 0.0
    vote_count: int = 0
    popularity: float = 0.0

    @property
    def key(self) -> tuple[int, ContentType]:
        return (self.id, self.kind)

    @property
    def year(self) -> int | None:
        if not self.release_date or len(self.release_date) < 4:
            return None
        try:
            return int(self.release_date[:4])
        except ValueError:
            return None

    @classmethod
    def from_tmdb(cls, data: dict[str, Any], kind: ContentType) -> "MediaItem":
        """Build an item from a raw TMDB payload.

        Movies carry ``title``/``release_date`` while series carry
        ``name``/``first_air_date``. Detail payloads list ``genres`` objects
        instead of ``genre_ids``.
        """

        if kind == "movie":
            title = data.get("title") or data.get("name") or ""
            release_date = data.get("release_date") or data.get("first_air_date")
        else:
            title = data.get("name") or data.get("title") or ""
            release_date = data.get("first_air_date") or data.get("release_date")

        genre_ids = data.get("genre_ids")
        if genre_ids is None:
            genre_ids = [
                genre["id"]
                for genre in data.get("genres") or []
                if isinstance(genre, dict) and "id" in genre
            ]

        return cls(
            id=int(data["id"]),
            kind=kind,
            title=str(title),
            release_date=release_date or None,
            overview=data.get("overview") or "",
            poster_path=data.get("poster_path"),
            backdrop_path=data.get("backdrop_path"),
            genre_ids=list(genre_ids),
            vote_average=float(data.get("vote_average") or 0.0),
            vote_count=int(data.get("vote_count") or 0),
            popularity=float(data.get("popularity") or 0.0),
        )


class SearchPage(BaseModel):
    """A page of catalog results."""

    page: int = 1
    results: list[MediaItem] = Field(default_factory=list)
    total_pages: int = 0
    total_results: int = 0


class Genre(BaseModel):
    id: int
    name: str


class Identity(BaseModel):
    """Public profile of a user."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    display_name: str
    bio: str | None = None
    avatar_url: str | None = None
    created_at: datetime
    updated_at: datetime


class ListEntry(BaseModel):
    """A user's tracked relationship to one catalog item."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    media_id: int
    kind: ContentType
    status: WatchStatus
    favorite: bool = False
    rating: int | None = None
    current_season: int = 0
    current_episode: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> tuple[int, ContentType]:
        return (self.media_id, self.kind)


class FollowEdge(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    follower_id: str
    following_id: str
    created_at: datetime


class ActivityEvent(BaseModel):
    """Append-only record of something a user did."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    kind: ActivityKind
    media_id: int | None = None
    media_kind: ContentType | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    actor: Identity | None = None

    @property
    def media_key(self) -> tuple[int, ContentType] | None:
        if self.media_id is None or self.media_kind is None:
            return None
        return (self.media_id, self.media_kind)


class MutationResult(BaseModel):
    """Outcome of a watch-list mutation and the activity it emitted."""

    entry: ListEntry | None = None
    event: ActivityEvent | None = None


class FeedEntry(BaseModel):
    """An activity event prepared for display."""

    event: ActivityEvent
    media: MediaItem | None = None
    title: str
    text: str
    poster_url: str | None = None
    relative_time: str

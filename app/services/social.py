"""Follow relationships between profiles."""

from __future__ import annotations

import logging

from ..errors import InvalidInputError
from ..models import FollowEdge, Identity
from .accounts import AccountStore, SessionContext

logger = logging.getLogger(__name__)

USER_SEARCH_LIMIT = 20


class SocialGraph:
    """Follow and unfollow on behalf of a session, and read follow lists."""

    def __init__(self, store: AccountStore, session: SessionContext):
        self._store = store
        self._session = session

    async def follow(self, user_id: str) -> FollowEdge:
        follower_id = self._session.require_user_id()
        if follower_id == user_id:
            raise InvalidInputError("You cannot follow yourself")
        edge = await self._store.insert_follow(follower_id, user_id)
        logger.info("User %s now follows %s", follower_id, user_id)
        return edge

    async def unfollow(self, user_id: str) -> None:
        follower_id = self._session.require_user_id()
        await self._store.delete_follow(follower_id, user_id)
        logger.info("User %s unfollowed %s", follower_id, user_id)

    async def is_following(self, user_id: str) -> bool:
        """Whether the signed-in user follows ``user_id``; ``False`` when signed out."""

        follower_id = self._session.user_id
        if follower_id is None:
            return False
        return await self._store.follow_exists(follower_id, user_id)

    async def followers(self, user_id: str) -> list[Identity]:
        return await self._store.followers(user_id)

    async def following(self, user_id: str) -> list[Identity]:
        return await self._store.following(user_id)

    async def search_users(
        self, query: str, *, limit: int = USER_SEARCH_LIMIT
    ) -> list[Identity]:
        return await self._store.search_profiles(query, limit=limit)

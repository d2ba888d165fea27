"""Watch-list synchronizer behaviour tests."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from app.db_models import ActivityRecord, ListEntryRecord
from app.errors import NotFoundError, UnauthenticatedError
from app.services.accounts import AccountStore, SessionContext
from app.services.watchlist import ListSynchronizer


async def _activity_rows(database) -> list[ActivityRecord]:
    async with database.session_factory() as session:
        result = await session.execute(select(ActivityRecord).order_by(ActivityRecord.id))
        return list(result.scalars().all())


async def _entry_count(database, user_id: str, media_id: int, kind: str) -> int:
    async with database.session_factory() as session:
        result = await session.execute(
            select(func.count())
            .select_from(ListEntryRecord)
            .where(
                ListEntryRecord.user_id == user_id,
                ListEntryRecord.media_id == media_id,
                ListEntryRecord.kind == kind,
            )
        )
        return int(result.scalar_one())


@pytest.mark.anyio("asyncio")
async def test_add_to_list_twice_keeps_a_single_entry(store, database, make_user) -> None:
    """Adding the same title twice upserts rather than duplicating."""

    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)

    first = await synchronizer.add_to_list(550, "movie", "to_watch")
    second = await synchronizer.add_to_list(550, "movie", "to_watch")

    assert first.entry is not None and second.entry is not None
    assert first.entry.id == second.entry.id
    assert await _entry_count(database, session.require_user_id(), 550, "movie") == 1
    assert len(synchronizer.entries) == 1
    assert second.event is not None
    assert second.event.kind == "added_to_list"
    assert second.event.metadata == {"status": "to_watch"}


@pytest.mark.anyio("asyncio")
async def test_add_to_list_overwrites_status_only(store, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)

    await synchronizer.add_to_list(1399, "series", "watching")
    await synchronizer.rate_media(1399, "series", 9)
    result = await synchronizer.add_to_list(1399, "series", "watched")

    assert result.entry is not None
    assert result.entry.status == "watched"
    assert result.entry.rating == 9


@pytest.mark.anyio("asyncio")
async def test_same_id_different_kind_are_separate_entries(store, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)

    await synchronizer.add_to_list(100, "movie")
    await synchronizer.add_to_list(100, "series")

    assert [entry.key for entry in synchronizer.entries] == [
        (100, "movie"),
        (100, "series"),
    ]


@pytest.mark.anyio("asyncio")
async def test_update_status_appends_matching_activity(store, database, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)
    await synchronizer.add_to_list(550, "movie")
    before = await _activity_rows(database)

    result = await synchronizer.update_status(550, "movie", "watching")

    after = await _activity_rows(database)
    assert len(after) == len(before) + 1
    event = result.event
    assert event is not None
    assert event.kind == "status_update"
    assert event.metadata == {"status": "watching"}
    assert event.media_id == 550 and event.media_kind == "movie"
    assert result.entry is not None
    assert result.entry.status == "watching"
    assert event.created_at >= result.entry.updated_at


@pytest.mark.anyio("asyncio")
async def test_update_status_requires_existing_entry(store, database, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)

    with pytest.raises(NotFoundError):
        await synchronizer.update_status(550, "movie", "watched")

    assert await _activity_rows(database) == []
    assert await _entry_count(database, session.require_user_id(), 550, "movie") == 0
    assert synchronizer.entries == ()


@pytest.mark.anyio("asyncio")
async def test_toggle_favorite_only_announces_favoriting(store, database, make_user) -> None:
    """false -> true appends one event; true -> false appends none."""

    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)
    await synchronizer.add_to_list(550, "movie", "watched")
    baseline = len(await _activity_rows(database))

    favorited = await synchronizer.toggle_favorite(550, "movie")
    assert favorited.entry is not None and favorited.entry.favorite is True
    assert favorited.event is not None and favorited.event.kind == "favorited"
    assert len(await _activity_rows(database)) == baseline + 1

    unfavorited = await synchronizer.toggle_favorite(550, "movie")
    assert unfavorited.entry is not None and unfavorited.entry.favorite is False
    assert unfavorited.event is None
    assert len(await _activity_rows(database)) == baseline + 1


@pytest.mark.anyio("asyncio")
async def test_favorite_and_rating_create_entries_with_default_status(store, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)

    favorite = await synchronizer.toggle_favorite(27205, "movie")
    rated = await synchronizer.rate_media(1396, "series", 8)

    assert favorite.entry is not None and favorite.entry.status == "to_watch"
    assert rated.entry is not None and rated.entry.status == "to_watch"
    assert rated.event is not None
    assert rated.event.kind == "rated"
    assert rated.event.metadata == {"rating": 8}


@pytest.mark.anyio("asyncio")
async def test_rate_media_rejects_out_of_range(store, database, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)

    with pytest.raises(ValueError):
        await synchronizer.rate_media(550, "movie", 11)

    assert await _activity_rows(database) == []


@pytest.mark.anyio("asyncio")
async def test_update_progress_emits_no_activity(store, database, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)
    await synchronizer.add_to_list(1399, "series", "watching")
    baseline = len(await _activity_rows(database))

    result = await synchronizer.update_progress(1399, "series", season=2, episode=5)

    assert result.event is None
    assert result.entry is not None
    assert (result.entry.current_season, result.entry.current_episode) == (2, 5)
    assert len(await _activity_rows(database)) == baseline


@pytest.mark.anyio("asyncio")
async def test_remove_missing_entry_raises_without_activity(store, database, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)

    with pytest.raises(NotFoundError):
        await synchronizer.remove_from_list(550, "movie")

    assert await _activity_rows(database) == []


@pytest.mark.anyio("asyncio")
async def test_remove_from_list_drops_entry_and_logs_removal(store, database, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)
    await synchronizer.add_to_list(550, "movie")
    await synchronizer.add_to_list(680, "movie")

    result = await synchronizer.remove_from_list(550, "movie")

    assert result.entry is None
    assert result.event is not None and result.event.kind == "removed_from_list"
    assert [entry.key for entry in synchronizer.entries] == [(680, "movie")]
    assert await _entry_count(database, session.require_user_id(), 550, "movie") == 0


@pytest.mark.anyio("asyncio")
async def test_mirror_replaces_in_place_and_appends_new(store, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)
    await synchronizer.add_to_list(1, "movie")
    await synchronizer.add_to_list(2, "movie")
    await synchronizer.add_to_list(3, "series")

    await synchronizer.update_status(2, "movie", "watched")
    await synchronizer.toggle_favorite(4, "movie")

    keys = [entry.key for entry in synchronizer.entries]
    assert keys == [(1, "movie"), (2, "movie"), (3, "series"), (4, "movie")]
    assert synchronizer.entries[1].status == "watched"


@pytest.mark.anyio("asyncio")
async def test_mutations_require_a_session(store) -> None:
    synchronizer = ListSynchronizer(store, SessionContext())

    with pytest.raises(UnauthenticatedError):
        await synchronizer.add_to_list(550, "movie")
    with pytest.raises(UnauthenticatedError):
        await synchronizer.toggle_favorite(550, "movie")
    with pytest.raises(UnauthenticatedError):
        await synchronizer.remove_from_list(550, "movie")
    assert await synchronizer.get_entry(550, "movie") is None


@pytest.mark.anyio("asyncio")
async def test_list_for_orders_by_update_and_filters(store, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)
    await synchronizer.add_to_list(1, "movie", "watched")
    await synchronizer.add_to_list(2, "movie", "watching")
    await synchronizer.add_to_list(3, "movie", "watched")
    await synchronizer.rate_media(1, "movie", 7)

    reader = ListSynchronizer(store, SessionContext())
    everything = await reader.list_for(session.require_user_id())
    watched = await reader.list_for(session.require_user_id(), "watched")

    assert [entry.media_id for entry in everything] == [1, 3, 2]
    assert [entry.media_id for entry in watched] == [1, 3]


@pytest.mark.anyio("asyncio")
async def test_load_replaces_the_mirror(store, make_user) -> None:
    session = await make_user("alice")
    writer = ListSynchronizer(store, session)
    await writer.add_to_list(1, "movie")
    await writer.add_to_list(2, "series")

    fresh = ListSynchronizer(store, session)
    loaded = await fresh.load()

    assert {entry.key for entry in loaded} == {(1, "movie"), (2, "series")}


@pytest.mark.anyio("asyncio")
async def test_concurrent_adds_of_one_title_both_succeed(store, database, make_user) -> None:
    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)

    results = await asyncio.gather(
        synchronizer.add_to_list(550, "movie", "watching"),
        synchronizer.add_to_list(550, "movie", "watched"),
        return_exceptions=True,
    )

    assert not [result for result in results if isinstance(result, BaseException)]
    assert await _entry_count(database, session.require_user_id(), 550, "movie") == 1
    assert len(synchronizer.entries) == 1
    assert synchronizer.entries[0].status in {"watching", "watched"}
    kinds = [row.kind for row in await _activity_rows(database)]
    assert kinds == ["added_to_list", "added_to_list"]


@pytest.mark.anyio("asyncio")
async def test_entry_inserted_by_another_writer_is_updated_instead(
    store, database, make_user, monkeypatch
) -> None:
    """A row appearing between the read and the insert receives the change."""

    session = await make_user("alice")
    synchronizer = ListSynchronizer(store, session)
    await synchronizer.add_to_list(550, "movie", "watching")

    load_entry = AccountStore._load_entry
    reads: list[int] = []

    async def _stale_first_read(db_session, user_id, media_id, kind):
        reads.append(media_id)
        if len(reads) == 1:
            return None
        return await load_entry(db_session, user_id, media_id, kind)

    monkeypatch.setattr(AccountStore, "_load_entry", staticmethod(_stale_first_read))

    result = await synchronizer.toggle_favorite(550, "movie")

    assert len(reads) == 2
    assert result.entry is not None
    assert result.entry.favorite is True
    assert result.entry.status == "watching"
    assert result.event is not None and result.event.kind == "favorited"
    assert await _entry_count(database, session.require_user_id(), 550, "movie") == 1

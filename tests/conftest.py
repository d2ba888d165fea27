"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Awaitable, Callable

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from app.config import Settings  # noqa: E402
from app.database import Database  # noqa: E402
from app.models import Identity  # noqa: E402
from app.services.accounts import AccountStore, SessionContext  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, TMDB_API_KEY="test-key")  # type: ignore[call-arg]


@pytest.fixture
async def database(tmp_path, anyio_backend):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'reelfeed.db'}")
    await database.create_all()
    try:
        yield database
    finally:
        await database.dispose()


@pytest.fixture
def store(settings: Settings, database: Database) -> AccountStore:
    return AccountStore(settings, database.session_factory)


MakeUser = Callable[..., Awaitable[SessionContext]]


@pytest.fixture
def make_user(store: AccountStore) -> MakeUser:
    """Return a coroutine creating a profile and a session signed in as it."""

    async def _make_user(username: str, display_name: str | None = None) -> SessionContext:
        identity, _token = await store.create_profile(
            username, display_name or username.title()
        )
        assert isinstance(identity, Identity)
        return SessionContext(identity=identity)

    return _make_user

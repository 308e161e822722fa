"""Shared test fixtures for dirledger."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from dirledger.config import Settings
from dirledger.main import create_app
from dirledger.store import LedgerStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession


class FakeClock:
    """Deterministic clock; tests advance it between scans."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 60) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@asynccontextmanager
async def create_test_client(
    settings: Settings,
) -> AsyncGenerator[tuple[AsyncClient, LedgerStore]]:
    """Create an HTTP test client with an opened store.

    Performs the work of the application lifespan because ASGITransport does
    not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime()
    store = await LedgerStore.open(settings)
    app.state.store = store
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac, store
    finally:
        await store.close()


@pytest.fixture
def backup_root(tmp_path: Path) -> Path:
    """An empty live directory tree to scan."""
    root = tmp_path / "live"
    root.mkdir()
    return root


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "db" / "test.db"
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        debug=False,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        storage_retry_base_delay=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store(test_settings: Settings) -> AsyncGenerator[LedgerStore]:
    """An opened ledger store over a temporary SQLite file."""
    ledger_store = await LedgerStore.open(test_settings)
    yield ledger_store
    await ledger_store.close()


@pytest.fixture
async def db_engine(store: LedgerStore) -> AsyncEngine:
    return store.engine


@pytest.fixture
async def db_session(store: LedgerStore) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with store.session() as session:
        yield session

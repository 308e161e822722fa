"""Shared API dependencies: settings and DB session."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from dirledger.config import Settings
from dirledger.store import LedgerStore


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    store: LedgerStore = request.app.state.store
    async with store.session() as session:
        yield session

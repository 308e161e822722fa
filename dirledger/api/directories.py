"""Directory mirror query endpoints."""

from __future__ import annotations

from pathlib import PurePath
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dirledger.api.deps import get_session, get_settings
from dirledger.config import Settings
from dirledger.exceptions import NotFoundError
from dirledger.schemas.directory import (
    DirectoryChildrenResponse,
    DirectoryDetailResponse,
    DirectoryResponse,
)
from dirledger.services import mirror_service

router = APIRouter(prefix="/api/dirs", tags=["directories"])


def _split_path(path: str) -> tuple[str, ...]:
    parts = PurePath(path).parts
    if not parts:
        raise ValueError("Path must not be empty")
    return parts


async def _detail(session: AsyncSession, dir_id: int) -> DirectoryDetailResponse:
    directory = await mirror_service.get_directory(session, dir_id)
    segments = await mirror_service.path_of(session, dir_id)
    return DirectoryDetailResponse(
        id=directory.id,
        parent_dir_id=directory.parent_dir_id,
        dir_name=directory.dir_name,
        path=list(segments),
    )


@router.get("/resolve", response_model=DirectoryDetailResponse)
async def resolve_directory(
    path: Annotated[str, Query(min_length=1, max_length=4096)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> DirectoryDetailResponse:
    """Look up the directory mirroring ``path``. Never creates directories."""
    directory = await mirror_service.find(
        session, _split_path(path), case_sensitive=settings.case_sensitive
    )
    if directory is None:
        raise NotFoundError(f"No directory recorded for {path}")
    return await _detail(session, directory.id)


@router.get("/roots", response_model=list[DirectoryResponse])
async def list_roots(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> list[DirectoryResponse]:
    """List root directories."""
    return [DirectoryResponse.model_validate(d) for d in await mirror_service.roots(session)]


@router.get("/{dir_id}", response_model=DirectoryDetailResponse)
async def get_directory(
    dir_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> DirectoryDetailResponse:
    """Get a directory and its path."""
    return await _detail(session, dir_id)


@router.get("/{dir_id}/children", response_model=DirectoryChildrenResponse)
async def list_children(
    dir_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> DirectoryChildrenResponse:
    """List the immediate child directories."""
    children = await mirror_service.children(session, dir_id)
    return DirectoryChildrenResponse(
        dir_id=dir_id,
        children=[DirectoryResponse.model_validate(c) for c in children],
    )

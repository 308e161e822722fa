"""File version ledger query endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dirledger.api.deps import get_session
from dirledger.exceptions import NotFoundError
from dirledger.schemas.file_version import (
    FileHistoryResponse,
    FileListResponse,
    FileVersionResponse,
)
from dirledger.services import ledger_service, mirror_service
from dirledger.services.datetime_service import parse_datetime

router = APIRouter(prefix="/api/dirs/{dir_id}/files", tags=["files"])


@router.get("", response_model=FileListResponse)
async def list_files(
    dir_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> FileListResponse:
    """List the latest version of every file tracked in a directory."""
    await mirror_service.get_directory(session, dir_id)
    tracked = await ledger_service.tracked_files(session, dir_id)
    return FileListResponse(
        dir_id=dir_id,
        files=[FileVersionResponse.model_validate(row) for row in tracked.values()],
    )


@router.get("/{file_name}/latest", response_model=FileVersionResponse)
async def latest_version(
    dir_id: int,
    file_name: str,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> FileVersionResponse:
    """Get the current version of a file."""
    await mirror_service.get_directory(session, dir_id)
    row = await ledger_service.latest(session, dir_id, file_name)
    if row is None:
        raise NotFoundError(f"File {file_name!r} is not tracked in directory {dir_id}")
    return FileVersionResponse.model_validate(row)


@router.get("/{file_name}/history", response_model=FileHistoryResponse)
async def file_history(
    dir_id: int,
    file_name: str,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> FileHistoryResponse:
    """Get every version of a file, oldest first."""
    await mirror_service.get_directory(session, dir_id)
    versions = [
        FileVersionResponse.model_validate(row)
        async for row in ledger_service.history(session, dir_id, file_name)
    ]
    if not versions:
        raise NotFoundError(f"File {file_name!r} is not tracked in directory {dir_id}")
    return FileHistoryResponse(dir_id=dir_id, file_name=file_name, versions=versions)


@router.get("/{file_name}/as-of", response_model=FileVersionResponse)
async def version_as_of(
    dir_id: int,
    file_name: str,
    at: Annotated[str, Query(min_length=1, max_length=64)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> FileVersionResponse:
    """Get the version of a file that was current at a point in time."""
    when = parse_datetime(at)
    await mirror_service.get_directory(session, dir_id)
    row = await ledger_service.as_of(session, dir_id, file_name, when)
    if row is None:
        raise NotFoundError(f"File {file_name!r} has no version at or before {at}")
    return FileVersionResponse.model_validate(row)

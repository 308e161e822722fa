"""File version ledger: append-only history per (directory, file name)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import and_, func, or_, select

from dirledger.exceptions import IntegrityViolation, OutOfOrderError
from dirledger.models.directory import Directory
from dirledger.models.file_version import FileVersion
from dirledger.services.datetime_service import to_storage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from sqlalchemy import ColumnElement
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

HISTORY_BATCH_SIZE = 200


def _same_file(dir_id: int, file_name: str) -> ColumnElement[bool]:
    return and_(FileVersion.dir_id == dir_id, FileVersion.file_name == file_name)


async def latest(session: AsyncSession, dir_id: int, file_name: str) -> FileVersion | None:
    """Return the most recent version of a file, or None if never tracked."""
    stmt = (
        select(FileVersion)
        .where(_same_file(dir_id, file_name))
        .order_by(FileVersion.backup_ts.desc(), FileVersion.id.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def history(
    session: AsyncSession,
    dir_id: int,
    file_name: str,
    *,
    batch_size: int = HISTORY_BATCH_SIZE,
) -> AsyncIterator[FileVersion]:
    """Yield every version of a file, oldest first.

    Rows are fetched lazily in keyset-paged batches; each call starts a fresh
    iteration from the oldest row.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    last: FileVersion | None = None
    while True:
        stmt = select(FileVersion).where(_same_file(dir_id, file_name))
        if last is not None:
            stmt = stmt.where(
                or_(
                    FileVersion.backup_ts > last.backup_ts,
                    and_(FileVersion.backup_ts == last.backup_ts, FileVersion.id > last.id),
                )
            )
        stmt = stmt.order_by(FileVersion.backup_ts, FileVersion.id).limit(batch_size)
        result = await session.execute(stmt)
        batch = list(result.scalars().all())
        for row in batch:
            yield row
        if len(batch) < batch_size:
            return
        last = batch[-1]


async def as_of(
    session: AsyncSession, dir_id: int, file_name: str, when: datetime
) -> FileVersion | None:
    """Return the version that was current at ``when``, or None if none existed yet."""
    stmt = (
        select(FileVersion)
        .where(_same_file(dir_id, file_name), FileVersion.backup_ts <= to_storage(when))
        .order_by(FileVersion.backup_ts.desc(), FileVersion.id.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def count_versions(session: AsyncSession, dir_id: int, file_name: str) -> int:
    stmt = select(func.count()).select_from(FileVersion).where(_same_file(dir_id, file_name))
    result = await session.execute(stmt)
    return result.scalar() or 0


async def tracked_files(session: AsyncSession, dir_id: int) -> dict[str, FileVersion]:
    """Return the latest version of every logical file recorded in a directory."""
    newest = (
        select(
            FileVersion.file_name.label("file_name"),
            func.max(FileVersion.backup_ts).label("backup_ts"),
        )
        .where(FileVersion.dir_id == dir_id)
        .group_by(FileVersion.file_name)
        .subquery()
    )
    stmt = (
        select(FileVersion)
        .join(
            newest,
            and_(
                FileVersion.file_name == newest.c.file_name,
                FileVersion.backup_ts == newest.c.backup_ts,
            ),
        )
        .where(FileVersion.dir_id == dir_id)
        .order_by(FileVersion.file_name, FileVersion.id)
    )
    result = await session.execute(stmt)
    files: dict[str, FileVersion] = {}
    for row in result.scalars().all():
        # Later ids win if two rows ever share a timestamp.
        files[row.file_name] = row
    return files


async def append(
    session: AsyncSession,
    dir_id: int,
    file_name: str,
    fingerprint: str | None,
    timestamp: datetime,
    version: int,
) -> FileVersion:
    """Append a version record.

    The ledger does not decide whether a new version is warranted; it only
    enforces referential integrity and strictly increasing timestamps.

    Raises IntegrityViolation if the directory does not exist, and
    OutOfOrderError if ``timestamp`` is not later than the current latest.
    """
    if not file_name or "/" in file_name:
        raise ValueError(f"Invalid file name: {file_name!r}")
    if await session.get(Directory, dir_id) is None:
        raise IntegrityViolation(
            f"Cannot append {file_name!r}: directory {dir_id} does not exist"
        )

    ts = to_storage(timestamp)
    current = await latest(session, dir_id, file_name)
    if current is not None and ts <= current.backup_ts:
        raise OutOfOrderError(dir_id, file_name, ts, current.backup_ts)

    row = FileVersion(
        version=version,
        dir_id=dir_id,
        file_name=file_name,
        backup_ts=ts,
        hsh=fingerprint,
    )
    session.add(row)
    await session.flush()
    logger.debug(
        "Appended version %d of %r in directory %d (hsh=%s)", row.id, file_name, dir_id, fingerprint
    )
    return row

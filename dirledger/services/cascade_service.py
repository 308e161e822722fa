"""Cascade and retention policy for directories and file versions.

Deletes are issued explicitly by the application, child rows first, so
referential integrity holds even on backends without native cascading deletes.
Every function here runs inside the caller's transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, text

from dirledger.exceptions import IntegrityViolation, NotFoundError
from dirledger.models.directory import Directory
from dirledger.models.file_version import FileStat, FileVersion

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Keeps bound parameter lists well under SQLite's variable limit.
_CHUNK = 500
MAX_TREE_DEPTH = 4096


@dataclass
class RemovalResult:
    """What a cascade removal deleted."""

    dir_ids: list[int] = field(default_factory=list)
    versions_removed: int = 0
    fingerprints: set[str] = field(default_factory=set)


def _chunks(ids: Sequence[int]) -> Iterable[Sequence[int]]:
    for start in range(0, len(ids), _CHUNK):
        yield ids[start : start + _CHUNK]


async def subtree_ids(session: AsyncSession, dir_id: int) -> list[int]:
    """Return ``dir_id`` and all its descendants, shallowest first.

    The depth bound keeps the recursive CTE finite even if the parent chain
    has been corrupted into a loop.
    """
    stmt = text("""
        WITH RECURSIVE subtree(id, depth) AS (
            SELECT :dir_id, 0
            UNION
            SELECT d.id, s.depth + 1
            FROM dirs d
            JOIN subtree s ON d.parent_dir_id = s.id
            WHERE s.depth < :max_depth
        )
        SELECT id, MAX(depth) AS depth FROM subtree GROUP BY id ORDER BY depth, id
    """)
    result = await session.execute(stmt, {"dir_id": dir_id, "max_depth": MAX_TREE_DEPTH})
    return [int(r[0]) for r in result.all()]


async def remove_directory(session: AsyncSession, dir_id: int) -> RemovalResult:
    """Delete a directory, its descendants, and every file version they own.

    Raises NotFoundError if the directory does not exist.
    """
    if await session.get(Directory, dir_id) is None:
        raise NotFoundError(f"Directory {dir_id} not found")

    ids = await subtree_ids(session, dir_id)
    removal = RemovalResult(dir_ids=ids)

    for chunk in _chunks(ids):
        hsh_stmt = (
            select(FileVersion.hsh)
            .where(FileVersion.dir_id.in_(chunk), FileVersion.hsh.is_not(None))
            .distinct()
        )
        hsh_result = await session.execute(hsh_stmt)
        removal.fingerprints.update(h for h in hsh_result.scalars().all() if h is not None)

        await session.execute(delete(FileStat).where(FileStat.dir_id.in_(chunk)))
        version_result = await session.execute(
            delete(FileVersion).where(FileVersion.dir_id.in_(chunk))
        )
        removal.versions_removed += version_result.rowcount or 0  # type: ignore[attr-defined]

    # Deepest directories first so no statement leaves a dangling parent reference.
    for chunk in _chunks(ids[::-1]):
        await session.execute(delete(Directory).where(Directory.id.in_(chunk)))

    await session.flush()
    return removal


async def prune_history(
    session: AsyncSession, dir_id: int, file_name: str, max_copies: int
) -> list[FileVersion]:
    """Delete the oldest versions of a file beyond ``max_copies``.

    The latest version is never pruned. Returns the deleted rows.
    """
    if max_copies < 1:
        raise ValueError("max_copies must be at least 1")
    stmt = (
        select(FileVersion)
        .where(FileVersion.dir_id == dir_id, FileVersion.file_name == file_name)
        .order_by(FileVersion.backup_ts.desc(), FileVersion.id.desc())
        .offset(max_copies)
    )
    result = await session.execute(stmt)
    expired = list(result.scalars().all())
    for row in expired:
        await session.delete(row)
    if expired:
        await session.flush()
        logger.debug(
            "Pruned %d old versions of %r in directory %d", len(expired), file_name, dir_id
        )
    return expired


async def purge_file(session: AsyncSession, dir_id: int, file_name: str) -> int:
    """Delete the whole history of one logical file. Returns the number of rows removed."""
    await session.execute(
        delete(FileStat).where(FileStat.dir_id == dir_id, FileStat.file_name == file_name)
    )
    result = await session.execute(
        delete(FileVersion).where(
            FileVersion.dir_id == dir_id, FileVersion.file_name == file_name
        )
    )
    removed: int = result.rowcount or 0  # type: ignore[attr-defined]
    if removed:
        logger.info("Purged %d versions of %r in directory %d", removed, file_name, dir_id)
    return removed


async def find_orphans(session: AsyncSession) -> list[int]:
    """Return ids of FileVersion rows whose directory does not exist."""
    stmt = (
        select(FileVersion.id)
        .outerjoin(Directory, FileVersion.dir_id == Directory.id)
        .where(Directory.id.is_(None))
        .order_by(FileVersion.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def check_integrity(session: AsyncSession) -> None:
    """Raise IntegrityViolation if any file version references a missing directory."""
    orphans = await find_orphans(session)
    if orphans:
        preview = ", ".join(str(i) for i in orphans[:10])
        raise IntegrityViolation(
            f"{len(orphans)} file versions reference missing directories (ids: {preview})"
        )


async def unreferenced_fingerprints(session: AsyncSession, candidates: Iterable[str]) -> set[str]:
    """Return the candidate fingerprints that no ledger row references any more."""
    remaining = set(candidates)
    if not remaining:
        return set()
    ordered = sorted(remaining)
    for start in range(0, len(ordered), _CHUNK):
        chunk = ordered[start : start + _CHUNK]
        stmt = (
            select(FileVersion.hsh, func.count())
            .where(FileVersion.hsh.in_(chunk))
            .group_by(FileVersion.hsh)
        )
        result = await session.execute(stmt)
        for hsh, _count in result.all():
            remaining.discard(hsh)
    return remaining

"""Directory mirror: path resolution and tree lookups over the ``dirs`` table."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from dirledger.exceptions import IntegrityViolation, NotFoundError
from dirledger.models.directory import Directory
from dirledger.services.cascade_service import RemovalResult, remove_directory

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import ColumnElement
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_SEPARATORS = frozenset(sep for sep in (os.sep, os.altsep) if sep)


def validate_segments(segments: Sequence[str]) -> tuple[str, ...]:
    """Check a sequence of path segments, returning it as a tuple.

    Only the first segment may contain a separator of the host platform,
    and only when it is a filesystem anchor such as ``/`` or ``C:\\``.
    """
    parts = tuple(segments)
    if not parts:
        raise ValueError("Path must contain at least one segment")
    for index, part in enumerate(parts):
        if not part or part in (".", ".."):
            raise ValueError(f"Invalid path segment: {part!r}")
        if index > 0 and _SEPARATORS.intersection(part):
            raise ValueError(f"Path segment contains a separator: {part!r}")
    return parts


def _name_matches(name: str, case_sensitive: bool) -> ColumnElement[bool]:
    if case_sensitive:
        return Directory.dir_name == name
    return func.lower(Directory.dir_name) == name.lower()


async def _find_child(
    session: AsyncSession, parent_id: int | None, name: str, case_sensitive: bool
) -> Directory | None:
    parent_clause = (
        Directory.parent_dir_id.is_(None)
        if parent_id is None
        else Directory.parent_dir_id == parent_id
    )
    stmt = (
        select(Directory)
        .where(parent_clause, _name_matches(name, case_sensitive))
        .order_by(Directory.id)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find(
    session: AsyncSession, segments: Sequence[str], *, case_sensitive: bool = True
) -> Directory | None:
    """Look up the directory for a path without creating anything."""
    current: Directory | None = None
    for name in validate_segments(segments):
        current = await _find_child(
            session, None if current is None else current.id, name, case_sensitive
        )
        if current is None:
            return None
    return current


async def resolve(
    session: AsyncSession, segments: Sequence[str], *, case_sensitive: bool = True
) -> int:
    """Return the directory id for a path, creating every missing prefix.

    Idempotent: resolving the same path again returns the same id. Callers
    running concurrent resolves must serialize them (see
    ``LedgerStore.directory_lock``) to keep sibling names unique.
    """
    dir_id, _created = await resolve_counted(session, segments, case_sensitive=case_sensitive)
    return dir_id


async def resolve_counted(
    session: AsyncSession, segments: Sequence[str], *, case_sensitive: bool = True
) -> tuple[int, int]:
    """Like ``resolve``, also returning how many directories were created."""
    parts = validate_segments(segments)
    parent_id: int | None = None
    created = 0
    for name in parts:
        child = await _find_child(session, parent_id, name, case_sensitive)
        if child is None:
            child = Directory(parent_dir_id=parent_id, dir_name=name)
            session.add(child)
            await session.flush()
            created += 1
        parent_id = child.id
    if created:
        logger.debug("Created %d directories for %s", created, parts)
    assert parent_id is not None
    return parent_id, created


async def get_directory(session: AsyncSession, dir_id: int) -> Directory:
    """Return a directory by id, raising NotFoundError if absent."""
    directory = await session.get(Directory, dir_id)
    if directory is None:
        raise NotFoundError(f"Directory {dir_id} not found")
    return directory


async def children(session: AsyncSession, dir_id: int) -> list[Directory]:
    """Return the immediate child directories, ordered by name."""
    await get_directory(session, dir_id)
    stmt = (
        select(Directory)
        .where(Directory.parent_dir_id == dir_id)
        .order_by(Directory.dir_name, Directory.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def roots(session: AsyncSession) -> list[Directory]:
    """Return all root directories."""
    stmt = select(Directory).where(Directory.parent_dir_id.is_(None)).order_by(Directory.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def path_of(session: AsyncSession, dir_id: int) -> tuple[str, ...]:
    """Return the segments from the root down to ``dir_id``.

    Raises IntegrityViolation if the parent chain loops or references a
    missing directory.
    """
    names: list[str] = []
    seen: set[int] = set()
    current: int | None = dir_id
    while current is not None:
        if current in seen:
            raise IntegrityViolation(f"Parent cycle detected through directory {current}")
        seen.add(current)
        directory = await session.get(Directory, current)
        if directory is None:
            if current == dir_id:
                raise NotFoundError(f"Directory {dir_id} not found")
            raise IntegrityViolation(f"Directory {dir_id} has a dangling parent {current}")
        names.append(directory.dir_name)
        current = directory.parent_dir_id
    return tuple(reversed(names))


async def remove(session: AsyncSession, dir_id: int) -> RemovalResult:
    """Remove a directory subtree and all its file versions.

    Runs inside the caller's transaction, so the removal is all-or-nothing.
    """
    result = await remove_directory(session, dir_id)
    logger.info(
        "Removed directory %d: %d directories, %d file versions",
        dir_id,
        len(result.dir_ids),
        result.versions_removed,
    )
    return result

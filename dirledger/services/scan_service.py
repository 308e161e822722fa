"""Scan/reconciliation engine: mirror a live tree into the directory and version ledger.

One scan walks a root breadth-first. For every directory it resolves a mirror
identity; for every regular file it decides whether the content changed since
the latest recorded version and appends a new version only when it did. After
each directory's files are reconciled, mirror children that no longer exist on
disk are removed with their history, and tracked files that disappeared get a
null-fingerprint tombstone.

Each directory resolve, file append, and cascade removal is its own short
transaction. An interrupted scan leaves a valid ledger and re-running it
converges to the same state.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

from dirledger.exceptions import (
    CycleDetectedError,
    NotFoundError,
    UnreadableContentError,
)
from dirledger.filesystem.walker import DirectoryListing, FileEntry, TreeWalker
from dirledger.models.file_version import FileStat, FileVersion
from dirledger.services import cascade_service, ledger_service, mirror_service
from dirledger.services.datetime_service import Clock, SystemClock, to_storage
from dirledger.services.fingerprint_service import FINGERPRINT_FORMATS, fingerprint_file

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from dirledger.config import Settings
    from dirledger.filesystem.blob_store import BlobStore
    from dirledger.store import LedgerStore

logger = logging.getLogger(__name__)


class FileOutcome(StrEnum):
    """What reconciling one file did."""

    APPENDED = "appended"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


@dataclass
class ScanReport:
    """Counters and skipped paths for one scan of one root."""

    root: Path
    run_ts: datetime
    directories_seen: int = 0
    directories_created: int = 0
    directories_removed: int = 0
    files_seen: int = 0
    files_hashed: int = 0
    files_appended: int = 0
    files_unchanged: int = 0
    files_unreadable: int = 0
    files_skipped: int = 0
    files_tombstoned: int = 0
    versions_removed: int = 0
    blobs_stored: int = 0
    blobs_deleted: int = 0
    cycles: list[Path] = field(default_factory=list)
    unlistable: list[Path] = field(default_factory=list)
    undecodable: list[Path] = field(default_factory=list)


@dataclass
class _AppendResult:
    row: FileVersion
    pruned: list[FileVersion]
    orphaned: set[str]


class ScanEngine:
    """Reconciles live directory trees against a ``LedgerStore``."""

    def __init__(
        self,
        store: LedgerStore,
        settings: Settings,
        *,
        clock: Clock | None = None,
        blob_store: BlobStore | None = None,
    ) -> None:
        if settings.current_format_version not in FINGERPRINT_FORMATS:
            raise ValueError(
                f"Unknown fingerprint format version: {settings.current_format_version}"
            )
        self.store = store
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.blob_store = blob_store
        self.format_version = settings.current_format_version
        self._workers = asyncio.Semaphore(settings.scan_workers)

    # ── Public API ───────────────────────────────────────

    async def scan(self, root: Path) -> ScanReport:
        """Reconcile one root.

        Raises NotFoundError if the root is not an existing directory (nothing
        is removed in that case), ScanInProgressError if the root is already
        being scanned, and propagates OutOfOrderError, IntegrityViolation and
        StorageError from the unit of work that hit them.
        """
        root = root.expanduser().resolve()
        if not root.is_dir():
            raise NotFoundError(f"Backup root is not a directory: {root}")

        async with self.store.scanning(root):
            run_ts = to_storage(self.clock.now())
            report = ScanReport(root=root, run_ts=run_ts)
            logger.info("Scanning %s (run_ts=%s)", root, run_ts)
            walker = TreeWalker(
                root,
                follow_symlinks=self.settings.follow_symlinks,
                skip_hidden=self.settings.skip_hidden,
                include_globs=self.settings.include_globs,
                exclude_globs=self.settings.exclude_globs,
            )

            pending: deque[tuple[str, ...]] = deque([()])
            while pending:
                rel_parts = pending.popleft()
                try:
                    listing = await asyncio.to_thread(walker.list_directory, rel_parts)
                except CycleDetectedError as exc:
                    logger.warning("Skipping %s: %s", exc.path, exc)
                    report.cycles.append(Path(str(exc.path)))
                    continue
                except OSError as exc:
                    path = root.joinpath(*rel_parts)
                    logger.warning("Cannot list %s, leaving its history untouched: %s", path, exc)
                    report.unlistable.append(path)
                    continue

                try:
                    dir_id, created = await self._resolve_counted((*root.parts, *rel_parts))
                except ValueError as exc:
                    logger.warning("Skipping %s: %s", listing.path, exc)
                    report.unlistable.append(listing.path)
                    continue
                report.directories_seen += 1
                report.directories_created += created
                report.undecodable.extend(listing.undecodable)
                await self._reconcile_files(dir_id, listing, run_ts, report)
                await self._remove_vanished_directories(dir_id, listing, report)
                pending.extend((*rel_parts, name) for name in listing.subdirs)

            logger.info(
                "Scan of %s finished: %d dirs (%d new), %d files, %d appended, %d unchanged, "
                "%d unreadable, %d tombstoned, %d dirs removed",
                root,
                report.directories_seen,
                report.directories_created,
                report.files_seen,
                report.files_appended,
                report.files_unchanged,
                report.files_unreadable,
                report.files_tombstoned,
                report.directories_removed,
            )
            return report

    async def scan_many(self, roots: list[Path]) -> list[ScanReport]:
        """Scan independent roots concurrently.

        Every scan runs to completion; the first failure is then raised.
        """
        results = await asyncio.gather(*(self.scan(r) for r in roots), return_exceptions=True)
        reports: list[ScanReport] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            reports.append(result)
        return reports

    async def scan_configured_roots(self) -> list[ScanReport]:
        return await self.scan_many(list(self.settings.backup_roots))

    async def resolve_directory(self, segments: tuple[str, ...]) -> int:
        """Resolve a directory path to its mirror id in its own transaction."""
        dir_id, _created = await self._resolve_counted(segments)
        return dir_id

    async def _resolve_counted(self, segments: tuple[str, ...]) -> tuple[int, int]:
        case_sensitive = self.settings.case_sensitive

        async def unit(session: AsyncSession) -> tuple[int, int]:
            return await mirror_service.resolve_counted(
                session, segments, case_sensitive=case_sensitive
            )

        async with self.store.directory_lock:
            return await self.store.run(unit)

    # ── Files ────────────────────────────────────────────

    async def _reconcile_files(
        self,
        dir_id: int,
        listing: DirectoryListing,
        run_ts: datetime,
        report: ScanReport,
    ) -> None:
        report.files_seen += len(listing.files)
        results = await asyncio.gather(
            *(self._reconcile_file(dir_id, entry, run_ts, report) for entry in listing.files),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        if self.settings.tombstone_deleted:
            live = {entry.name for entry in listing.files}
            await self._tombstone_vanished_files(dir_id, live, run_ts, report)

    async def _reconcile_file(
        self, dir_id: int, entry: FileEntry, run_ts: datetime, report: ScanReport
    ) -> FileOutcome:
        async with self._workers, self.store.file_locks.hold((dir_id, entry.name)):
            outcome = await self._reconcile_locked(dir_id, entry, run_ts, report)
        logger.debug("%s: %s", entry.path, outcome)
        return outcome

    async def _load_state(
        self, dir_id: int, name: str
    ) -> tuple[FileVersion | None, FileStat | None]:
        async def unit(session: AsyncSession) -> tuple[FileVersion | None, FileStat | None]:
            current = await ledger_service.latest(session, dir_id, name)
            stat = await session.get(FileStat, (dir_id, name))
            return current, stat

        return await self.store.run(unit)

    def _stat_is_fresh(
        self, entry: FileEntry, current: FileVersion | None, stat: FileStat | None
    ) -> bool:
        return (
            self.settings.rehash_policy == "metadata"
            and current is not None
            and current.hsh is not None
            and stat is not None
            and stat.file_id == current.id
            and entry.size is not None
            and entry.size == stat.file_size
            and entry.mtime_ns == stat.file_mtime_ns
        )

    async def _reconcile_locked(
        self, dir_id: int, entry: FileEntry, run_ts: datetime, report: ScanReport
    ) -> FileOutcome:
        current, stat = await self._load_state(dir_id, entry.name)

        if self._stat_is_fresh(entry, current, stat):
            report.files_unchanged += 1
            return FileOutcome.UNCHANGED

        # Digest in the stored row's own format, so rows written by an older
        # format are compared like for like.
        versions = [self.format_version]
        if current is not None and current.version in FINGERPRINT_FORMATS:
            versions.append(current.version)
        try:
            digests = await asyncio.to_thread(fingerprint_file, entry.path, versions)
        except UnreadableContentError as exc:
            logger.warning("Recording %s as unreadable: %s", entry.path, exc)
            report.files_unreadable += 1
            digests = {}
        else:
            report.files_hashed += 1
        fingerprint = digests.get(self.format_version)

        if current is not None:
            if current.hsh is None:
                unchanged = fingerprint is None
            else:
                unchanged = digests.get(current.version) == current.hsh
            if unchanged:
                if fingerprint is not None:
                    await self.store.run(
                        partial(self._record_stat, dir_id=dir_id, entry=entry, file_id=current.id)
                    )
                report.files_unchanged += 1
                return FileOutcome.UNCHANGED

        # The blob must not be deleted between storing it and committing the
        # row that references it.
        async with self._blob_guard(fingerprint):
            if fingerprint is not None and self.blob_store is not None:
                try:
                    stored = await asyncio.to_thread(
                        self.blob_store.put, fingerprint, entry.path, self.format_version
                    )
                except UnreadableContentError as exc:
                    logger.warning("Skipping %s until the next scan: %s", entry.path, exc)
                    report.files_skipped += 1
                    return FileOutcome.SKIPPED
                if stored:
                    report.blobs_stored += 1

            result = await self.store.run(
                partial(
                    self._append,
                    dir_id=dir_id,
                    name=entry.name,
                    fingerprint=fingerprint,
                    run_ts=run_ts,
                    entry=entry,
                )
            )
        report.files_appended += 1
        await self._after_append(result, report)
        return FileOutcome.APPENDED

    async def _append(
        self,
        session: AsyncSession,
        dir_id: int,
        name: str,
        fingerprint: str | None,
        run_ts: datetime,
        entry: FileEntry | None,
    ) -> _AppendResult:
        row = await ledger_service.append(
            session, dir_id, name, fingerprint, run_ts, self.format_version
        )
        if entry is not None and fingerprint is not None:
            await self._record_stat(session, dir_id, entry, row.id)
        else:
            stale = await session.get(FileStat, (dir_id, name))
            if stale is not None:
                await session.delete(stale)

        pruned: list[FileVersion] = []
        if self.settings.max_copies is not None:
            pruned = await cascade_service.prune_history(
                session, dir_id, name, self.settings.max_copies
            )
        orphaned: set[str] = set()
        if pruned and self.blob_store is not None:
            orphaned = await cascade_service.unreferenced_fingerprints(
                session, {r.hsh for r in pruned if r.hsh is not None}
            )
        return _AppendResult(row=row, pruned=pruned, orphaned=orphaned)

    async def _record_stat(
        self, session: AsyncSession, dir_id: int, entry: FileEntry, file_id: int
    ) -> None:
        if entry.size is None or entry.mtime_ns is None:
            return
        stat = await session.get(FileStat, (dir_id, entry.name))
        if stat is None:
            stat = FileStat(dir_id=dir_id, file_name=entry.name)
            session.add(stat)
        stat.file_id = file_id
        stat.file_size = entry.size
        stat.file_mtime_ns = entry.mtime_ns
        stat.checked_at = to_storage(self.clock.now())
        await session.flush()

    async def _after_append(self, result: _AppendResult, report: ScanReport) -> None:
        report.versions_removed += len(result.pruned)
        await self._delete_blobs(result.orphaned, report)

    def _blob_guard(self, fingerprint: str | None) -> AbstractAsyncContextManager[None]:
        if fingerprint is None or self.blob_store is None:
            return nullcontext()
        return self.store.blob_locks.hold(fingerprint)

    async def _delete_blobs(self, fingerprints: set[str], report: ScanReport) -> None:
        """Delete blobs found unreferenced, re-checking each under its blob lock."""
        if self.blob_store is None or not fingerprints:
            return
        for fingerprint in sorted(fingerprints):
            async with self.store.blob_locks.hold(fingerprint):
                unreferenced = await self.store.run(
                    partial(cascade_service.unreferenced_fingerprints, candidates={fingerprint})
                )
                if not unreferenced:
                    logger.debug("Keeping blob for %s, referenced again", fingerprint)
                    continue
                if await asyncio.to_thread(self.blob_store.delete, fingerprint):
                    report.blobs_deleted += 1

    async def _tombstone_vanished_files(
        self, dir_id: int, live: set[str], run_ts: datetime, report: ScanReport
    ) -> None:
        async def load(session: AsyncSession) -> dict[str, FileVersion]:
            return await ledger_service.tracked_files(session, dir_id)

        tracked = await self.store.run(load)
        for name, row in tracked.items():
            if name in live or row.hsh is None:
                continue
            async with self.store.file_locks.hold((dir_id, name)):
                result = await self.store.run(
                    partial(
                        self._append,
                        dir_id=dir_id,
                        name=name,
                        fingerprint=None,
                        run_ts=run_ts,
                        entry=None,
                    )
                )
            logger.info("Tombstoned vanished file %r in directory %d", name, dir_id)
            report.files_tombstoned += 1
            await self._after_append(result, report)

    # ── Directories ──────────────────────────────────────

    def _key(self, name: str) -> str:
        return name if self.settings.case_sensitive else name.lower()

    async def _remove_directory(
        self, session: AsyncSession, dir_id: int
    ) -> cascade_service.RemovalResult:
        removal = await mirror_service.remove(session, dir_id)
        if self.blob_store is None:
            removal.fingerprints = set()
        else:
            removal.fingerprints = await cascade_service.unreferenced_fingerprints(
                session, removal.fingerprints
            )
        return removal

    async def _remove_vanished_directories(
        self, dir_id: int, listing: DirectoryListing, report: ScanReport
    ) -> None:
        async def load(session: AsyncSession) -> list[tuple[int, str]]:
            return [(d.id, d.dir_name) for d in await mirror_service.children(session, dir_id)]

        live = {self._key(name) for name in listing.subdirs}
        for child_id, child_name in await self.store.run(load):
            if self._key(child_name) in live:
                continue

            try:
                async with self.store.directory_lock:
                    removal = await self.store.run(partial(self._remove_directory, dir_id=child_id))
            except NotFoundError:
                # Removed concurrently; nothing left to do.
                continue
            logger.info("Removed vanished directory %s", listing.path / child_name)
            report.directories_removed += len(removal.dir_ids)
            report.versions_removed += removal.versions_removed
            await self._delete_blobs(removal.fingerprints, report)


"""Command-line entry point: run scans, check integrity, or serve the query API."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from dirledger.config import Settings
from dirledger.exceptions import LedgerError
from dirledger.filesystem.blob_store import BlobStore
from dirledger.services import cascade_service
from dirledger.services.scan_service import ScanEngine, ScanReport
from dirledger.store import LedgerStore


def print_report(report: ScanReport) -> None:
    print(f"Scan of {report.root} at {report.run_ts.isoformat()}:")
    print(
        f"  Directories:     {report.directories_seen} seen, "
        f"{report.directories_created} created, "
        f"{report.directories_removed} removed"
    )
    print(f"  Files seen:      {report.files_seen}")
    print(f"  Appended:        {report.files_appended}")
    print(f"  Unchanged:       {report.files_unchanged}")
    print(f"  Unreadable:      {report.files_unreadable}")
    print(f"  Skipped:         {report.files_skipped}")
    print(f"  Tombstoned:      {report.files_tombstoned}")
    print(f"  Versions pruned: {report.versions_removed}")
    if report.blobs_stored or report.blobs_deleted:
        print(f"  Blobs:           {report.blobs_stored} stored, {report.blobs_deleted} deleted")
    for path in report.cycles:
        print(f"    ! {path} (cycle, skipped)")
    for path in report.unlistable:
        print(f"    ! {path} (unreadable directory, skipped)")
    for path in report.undecodable:
        print(f"    ! {path!r} (name is not valid UTF-8, skipped)")


async def run_scan(settings: Settings, roots: list[Path]) -> list[ScanReport]:
    """Open the store, scan ``roots`` (or the configured roots), and close it."""
    store = await LedgerStore.open(settings)
    try:
        blob_store = BlobStore(settings.blob_dir) if settings.blob_dir is not None else None
        engine = ScanEngine(store, settings, blob_store=blob_store)
        if roots:
            return await engine.scan_many(roots)
        return await engine.scan_configured_roots()
    finally:
        await store.close()


async def run_check(settings: Settings) -> list[int]:
    """Return the ids of file versions whose directory is missing."""
    store = await LedgerStore.open(settings)
    try:
        async with store.session() as session:
            return await cascade_service.find_orphans(session)
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="dirledger",
        description="Versioned directory ledger for backups",
    )
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("--blob-dir", help="Override BLOB_DIR")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")
    scan_parser = subparsers.add_parser("scan", help="Reconcile backup roots with the ledger")
    scan_parser.add_argument(
        "roots", nargs="*", help="Roots to scan (default: BACKUP_ROOTS from the environment)"
    )
    subparsers.add_parser("check", help="Report file versions with a missing directory")
    subparsers.add_parser("serve", help="Run the read-only query API")

    args = parser.parse_args(argv)

    overrides: dict[str, object] = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.blob_dir:
        overrides["blob_dir"] = Path(args.blob_dir)
    if args.debug:
        overrides["debug"] = True
    settings = Settings(**overrides)  # type: ignore[arg-type]

    from dirledger.main import _configure_logging

    _configure_logging(settings.debug)

    if args.command == "serve":
        import uvicorn

        from dirledger.main import create_app

        uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
        return 0

    try:
        settings.validate_runtime()
    except ValueError as exc:
        print(f"Error: {exc}")
        return 2

    if args.command == "scan":
        roots = [Path(r) for r in args.roots]
        if not roots and not settings.backup_roots:
            print("Error: no roots given and BACKUP_ROOTS is empty")
            return 2
        try:
            reports = asyncio.run(run_scan(settings, roots))
        except LedgerError as exc:
            print(f"Error: {exc}")
            return 1
        for report in reports:
            print_report(report)
        return 0

    if args.command == "check":
        try:
            orphans = asyncio.run(run_check(settings))
        except LedgerError as exc:
            print(f"Error: {exc}")
            return 1
        if orphans:
            print(f"{len(orphans)} file version(s) reference missing directories:")
            for file_id in orphans:
                print(f"  {file_id}")
            return 1
        print("Ledger is consistent.")
        return 0

    parser.print_help()
    return 2


def cli_entry() -> None:
    sys.exit(main())

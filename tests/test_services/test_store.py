"""Tests for the store handle: transactions, retries, and scan locks."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.exc import OperationalError

from dirledger.exceptions import OutOfOrderError, ScanInProgressError, StorageError
from dirledger.services import ledger_service, mirror_service
from dirledger.store import KeyedLocks, LedgerStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from dirledger.config import Settings


def _locked() -> OperationalError:
    return OperationalError("INSERT ...", {}, Exception("database is locked"))


class TestOpen:
    async def test_open_creates_database_directory(self, test_settings: Settings) -> None:
        store = await LedgerStore.open(test_settings)
        try:
            db_path = test_settings.database_url.split("///", 1)[-1]
            assert Path(db_path).parent.is_dir()
            async with store.session() as session:
                assert await mirror_service.roots(session) == []
        finally:
            await store.close()

    async def test_close_twice(self, test_settings: Settings) -> None:
        store = await LedgerStore.open(test_settings)
        await store.close()
        await store.close()


class TestRun:
    async def test_commits_unit_of_work(self, store: LedgerStore) -> None:
        async def unit(session: AsyncSession) -> int:
            return await mirror_service.resolve(session, ("/", "x"))

        dir_id = await store.run(unit)

        async with store.session() as session:
            found = await mirror_service.find(session, ("/", "x"))
        assert found is not None and found.id == dir_id

    async def test_retries_operational_error(self, store: LedgerStore) -> None:
        attempts = 0

        async def unit(session: AsyncSession) -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise _locked()
            return "ok"

        assert await store.run(unit) == "ok"
        assert attempts == 3

    async def test_gives_up_with_storage_error(self, store: LedgerStore) -> None:
        attempts = 0

        async def unit(session: AsyncSession) -> None:
            nonlocal attempts
            attempts += 1
            raise _locked()

        with pytest.raises(StorageError, match="after 3 attempts"):
            await store.run(unit)
        assert attempts == store.retry_attempts

    async def test_ledger_errors_roll_back_and_propagate(
        self, store: LedgerStore, clock
    ) -> None:
        async def setup(session: AsyncSession) -> int:
            dir_id = await mirror_service.resolve(session, ("/", "d"))
            await ledger_service.append(session, dir_id, "f", "h1", clock.now(), 1)
            return dir_id

        dir_id = await store.run(setup)
        attempts = 0

        async def late(session: AsyncSession) -> None:
            nonlocal attempts
            attempts += 1
            await mirror_service.resolve(session, ("/", "d", "new"))
            await ledger_service.append(session, dir_id, "f", "h2", clock.now(), 1)

        with pytest.raises(OutOfOrderError):
            await store.run(late)

        assert attempts == 1
        async with store.session() as session:
            assert await mirror_service.find(session, ("/", "d", "new")) is None
            assert await ledger_service.count_versions(session, dir_id, "f") == 1


class TestScanning:
    async def test_second_scan_of_same_root_is_rejected(
        self, store: LedgerStore, tmp_path: Path
    ) -> None:
        async with store.scanning(tmp_path):
            assert store.is_scanning(tmp_path)
            with pytest.raises(ScanInProgressError):
                async with store.scanning(tmp_path):
                    pass
        assert not store.is_scanning(tmp_path)

    async def test_different_roots_may_scan_together(
        self, store: LedgerStore, tmp_path: Path
    ) -> None:
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        async with store.scanning(tmp_path / "a"), store.scanning(tmp_path / "b"):
            assert store.is_scanning(tmp_path / "a")
            assert store.is_scanning(tmp_path / "b")


class TestKeyedLocks:
    async def test_same_key_is_serialized(self) -> None:
        locks = KeyedLocks()
        order: list[str] = []

        async def worker(tag: str) -> None:
            async with locks.hold("k"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0)
                order.append(f"{tag}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_idle_locks_are_dropped(self) -> None:
        locks = KeyedLocks()
        async with locks.hold(("dir", "name")):
            assert locks.is_held(("dir", "name"))
        assert not locks.is_held(("dir", "name"))
        assert locks._locks == {}

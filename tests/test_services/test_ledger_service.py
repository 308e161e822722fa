"""Tests for the file version ledger."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from typing import TYPE_CHECKING

import pytest

from dirledger.exceptions import IntegrityViolation, OutOfOrderError
from dirledger.services import ledger_service, mirror_service

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

T0 = datetime(2026, 1, 1, 0, 0, 0)


def ts(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
async def dir_id(db_session: AsyncSession) -> int:
    return await mirror_service.resolve(db_session, ("/", "data"))


class TestAppend:
    async def test_append_and_latest(self, db_session: AsyncSession, dir_id: int) -> None:
        row = await ledger_service.append(db_session, dir_id, "a.txt", "X", ts(100), 1)

        latest = await ledger_service.latest(db_session, dir_id, "a.txt")
        assert latest is not None
        assert latest.id == row.id
        assert (latest.hsh, latest.version, latest.backup_ts) == ("X", 1, ts(100))

    async def test_latest_is_newest_timestamp(self, db_session: AsyncSession, dir_id: int) -> None:
        await ledger_service.append(db_session, dir_id, "a.txt", "X", ts(100), 1)
        await ledger_service.append(db_session, dir_id, "a.txt", "Y", ts(200), 1)

        latest = await ledger_service.latest(db_session, dir_id, "a.txt")
        assert latest is not None
        assert latest.hsh == "Y"

    async def test_latest_untracked_is_none(self, db_session: AsyncSession, dir_id: int) -> None:
        assert await ledger_service.latest(db_session, dir_id, "nope") is None

    async def test_equal_timestamp_is_out_of_order(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        await ledger_service.append(db_session, dir_id, "a.txt", "X", ts(100), 1)

        with pytest.raises(OutOfOrderError) as exc_info:
            await ledger_service.append(db_session, dir_id, "a.txt", "Y", ts(100), 1)
        assert exc_info.value.file_name == "a.txt"
        assert exc_info.value.dir_id == dir_id

    async def test_earlier_timestamp_is_out_of_order(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        await ledger_service.append(db_session, dir_id, "a.txt", "X", ts(100), 1)

        with pytest.raises(OutOfOrderError):
            await ledger_service.append(db_session, dir_id, "a.txt", "Y", ts(50), 1)
        assert await ledger_service.count_versions(db_session, dir_id, "a.txt") == 1

    async def test_ordering_is_per_file(self, db_session: AsyncSession, dir_id: int) -> None:
        await ledger_service.append(db_session, dir_id, "a.txt", "X", ts(100), 1)
        await ledger_service.append(db_session, dir_id, "b.txt", "Y", ts(50), 1)

        assert await ledger_service.count_versions(db_session, dir_id, "b.txt") == 1

    async def test_append_to_missing_directory(self, db_session: AsyncSession) -> None:
        with pytest.raises(IntegrityViolation):
            await ledger_service.append(db_session, 999, "a.txt", "X", ts(1), 1)

    @pytest.mark.parametrize("bad", ["", "a/b"])
    async def test_invalid_file_name(self, db_session: AsyncSession, dir_id: int, bad: str) -> None:
        with pytest.raises(ValueError, match="Invalid file name"):
            await ledger_service.append(db_session, dir_id, bad, "X", ts(1), 1)

    async def test_null_fingerprint_is_recorded(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        row = await ledger_service.append(db_session, dir_id, "a.txt", None, ts(1), 1)
        assert row.hsh is None

    async def test_aware_timestamps_are_stored_as_utc(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        plus_two = timezone(timedelta(hours=2))
        await ledger_service.append(
            db_session, dir_id, "a.txt", "X", datetime(2026, 1, 1, 14, 0, tzinfo=plus_two), 1
        )

        latest = await ledger_service.latest(db_session, dir_id, "a.txt")
        assert latest is not None
        assert latest.backup_ts == datetime(2026, 1, 1, 12, 0)


class TestHistory:
    async def test_history_oldest_first(self, db_session: AsyncSession, dir_id: int) -> None:
        for i, h in enumerate(["A", "B", "C"]):
            await ledger_service.append(db_session, dir_id, "a.txt", h, ts(i * 10), 1)

        rows = [r async for r in ledger_service.history(db_session, dir_id, "a.txt")]
        assert [r.hsh for r in rows] == ["A", "B", "C"]

    async def test_history_pages_through_batches(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        for i in range(7):
            await ledger_service.append(db_session, dir_id, "a.txt", f"h{i}", ts(i), 1)

        rows = [
            r async for r in ledger_service.history(db_session, dir_id, "a.txt", batch_size=3)
        ]
        assert [r.hsh for r in rows] == [f"h{i}" for i in range(7)]

    async def test_history_restarts_from_oldest(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        for i in range(3):
            await ledger_service.append(db_session, dir_id, "a.txt", f"h{i}", ts(i), 1)

        first = [r.id async for r in ledger_service.history(db_session, dir_id, "a.txt")]
        second = [r.id async for r in ledger_service.history(db_session, dir_id, "a.txt")]
        assert first == second

    async def test_history_of_untracked_file_is_empty(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        assert [r async for r in ledger_service.history(db_session, dir_id, "x")] == []

    async def test_invalid_batch_size(self, db_session: AsyncSession, dir_id: int) -> None:
        with pytest.raises(ValueError, match="batch_size"):
            [r async for r in ledger_service.history(db_session, dir_id, "a", batch_size=0)]


class TestAsOf:
    async def test_as_of_picks_version_current_at_time(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        await ledger_service.append(db_session, dir_id, "a.txt", "v1", ts(100), 1)
        await ledger_service.append(db_session, dir_id, "a.txt", "v2", ts(200), 1)

        at_150 = await ledger_service.as_of(db_session, dir_id, "a.txt", ts(150))
        at_200 = await ledger_service.as_of(db_session, dir_id, "a.txt", ts(200))
        before = await ledger_service.as_of(db_session, dir_id, "a.txt", ts(50))

        assert at_150 is not None and at_150.hsh == "v1"
        assert at_200 is not None and at_200.hsh == "v2"
        assert before is None

    async def test_as_of_accepts_aware_datetime(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        await ledger_service.append(db_session, dir_id, "a.txt", "v1", ts(100), 1)

        row = await ledger_service.as_of(
            db_session, dir_id, "a.txt", ts(100).replace(tzinfo=UTC)
        )
        assert row is not None


class TestTrackedFiles:
    async def test_tracked_files_returns_latest_per_name(
        self, db_session: AsyncSession, dir_id: int
    ) -> None:
        await ledger_service.append(db_session, dir_id, "a.txt", "a1", ts(1), 1)
        await ledger_service.append(db_session, dir_id, "a.txt", "a2", ts(2), 1)
        await ledger_service.append(db_session, dir_id, "b.txt", "b1", ts(1), 1)
        other = await mirror_service.resolve(db_session, ("/", "other"))
        await ledger_service.append(db_session, other, "c.txt", "c1", ts(1), 1)

        tracked = await ledger_service.tracked_files(db_session, dir_id)

        assert {name: row.hsh for name, row in tracked.items()} == {"a.txt": "a2", "b.txt": "b1"}

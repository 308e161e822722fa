"""Store handle: engine lifecycle, transaction scoping, and scan locks.

One ``LedgerStore`` is opened per process and passed explicitly to every
engine operation. Transactions are scoped to one unit of work (a directory
resolve, a file append, a cascade removal), never to a whole tree walk.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy.exc import OperationalError

from dirledger.database import create_engine, create_schema
from dirledger.exceptions import ScanInProgressError, StorageError

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable, Hashable

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from dirledger.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLocks:
    """Lazily created asyncio locks, one per key, dropped when released and idle."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncGenerator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_held(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class LedgerStore:
    """Explicit handle on the ledger database shared by all scan workers."""

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.05,
    ) -> None:
        self.engine = engine
        self.session_factory = session_factory
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        # Serializes directory creation so concurrent resolves of a shared
        # prefix never create duplicate siblings.
        self.directory_lock = asyncio.Lock()
        self.file_locks = KeyedLocks()
        # Held per fingerprint from storing a blob until its row commits, and
        # while deciding to delete it.
        self.blob_locks = KeyedLocks()
        self._active_roots: set[Path] = set()
        self._closed = False

    @classmethod
    async def open(cls, settings: Settings) -> LedgerStore:
        """Create the engine, ensure the schema exists, and return the handle."""
        db_url = settings.database_url
        if db_url.startswith("sqlite"):
            db_path = db_url.split("///", 1)[-1] if "///" in db_url else None
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        engine, session_factory = create_engine(settings)
        try:
            await create_schema(engine)
        except Exception:
            await engine.dispose()
            raise
        logger.info("Opened ledger store at %s", engine.url.render_as_string(hide_password=True))
        return cls(
            engine,
            session_factory,
            retry_attempts=settings.storage_retry_attempts,
            retry_base_delay=settings.storage_retry_base_delay,
        )

    async def close(self) -> None:
        """Dispose of the engine. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self.engine.dispose()
        logger.info("Closed ledger store")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Yield a session for read-only queries."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession]:
        """Yield a session inside one transaction, committed on success."""
        async with self.session_factory() as session, session.begin():
            yield session

    async def run(self, unit: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run one unit of work in its own transaction, retrying storage failures.

        Only ``OperationalError`` (locked or unavailable database) is retried,
        with exponential backoff. Ledger errors raised by the unit roll the
        transaction back and propagate unchanged.
        """
        delay = self.retry_base_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with self.transaction() as session:
                    return await unit(session)
            except OperationalError as exc:
                if attempt == self.retry_attempts:
                    raise StorageError(
                        f"Storage unavailable after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "Storage error (attempt %d/%d), retrying in %.2fs: %s",
                    attempt,
                    self.retry_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    @asynccontextmanager
    async def scanning(self, root: Path) -> AsyncGenerator[None]:
        """Mark ``root`` as being scanned for the duration of the block.

        Raises ScanInProgressError if a scan of the same root is in flight.
        The check and the mark happen without an await in between.
        """
        key = root.resolve()
        if key in self._active_roots:
            raise ScanInProgressError(f"A scan of {key} is already running")
        self._active_roots.add(key)
        try:
            yield
        finally:
            self._active_roots.discard(key)

    def is_scanning(self, root: Path) -> bool:
        return root.resolve() in self._active_roots

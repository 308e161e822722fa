"""Database engine, session management, and schema creation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dirledger.models import FileStat

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

    from dirledger.config import Settings

logger = logging.getLogger(__name__)

SCHEMA_TABLES = ("dirs", "files")
SCHEMA_SQL_PATH = Path(__file__).parent / "sql" / "create.sql"


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    SQLite connections get ``PRAGMA foreign_keys=ON`` so the schema's
    ``ON DELETE CASCADE`` and parent references are enforced by the backend
    too.

    Returns (engine, session_factory) tuple.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


def load_schema_statements() -> list[str]:
    """Return the statements of the authoritative ``create.sql``, in order."""
    sql = SCHEMA_SQL_PATH.read_text(encoding="utf-8")
    return [stmt.strip() for stmt in sql.split(";") if stmt.strip()]


def _create_schema(conn: Connection) -> None:
    existing = set(inspect(conn).get_table_names())
    present = [name for name in SCHEMA_TABLES if name in existing]
    if not present:
        for statement in load_schema_statements():
            conn.exec_driver_sql(statement)
        logger.info("Created ledger schema")
    elif len(present) != len(SCHEMA_TABLES):
        missing = sorted(set(SCHEMA_TABLES) - set(present))
        msg = f"Partial ledger schema found; missing tables: {', '.join(missing)}"
        raise RuntimeError(msg)
    FileStat.__table__.create(conn, checkfirst=True)


async def create_schema(engine: AsyncEngine) -> None:
    """Create the ledger schema if absent; existing databases are left untouched.

    ``dirs`` and ``files`` are created from the verbatim DDL so databases
    written by earlier engines stay byte-compatible. The auxiliary
    ``file_stats`` table is created from its ORM definition.
    """
    async with engine.begin() as conn:
        await conn.run_sync(_create_schema)


async def check_connection(session: AsyncSession) -> bool:
    """Return True if the database answers a trivial query."""
    result = await session.execute(text("SELECT 1"))
    return result.scalar() == 1

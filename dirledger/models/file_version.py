"""File version ledger models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from dirledger.models.base import Base


class FileVersion(Base):
    """One snapshot of a file's content at a point in time.

    ``version`` is the fingerprint format the row was written with, not a
    content revision counter. A null ``hsh`` means the content was unreadable
    at backup time, or marks the file as deleted (tombstone).
    """

    __tablename__ = "files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    dir_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("dirs.id", ondelete="CASCADE"), nullable=False
    )
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    backup_ts: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    hsh: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("idx_entrs_file_name", "file_name"),)

    def __repr__(self) -> str:
        return (
            f"FileVersion(id={self.id!r}, dir_id={self.dir_id!r}, "
            f"file_name={self.file_name!r}, backup_ts={self.backup_ts!r}, hsh={self.hsh!r})"
        )


class FileStat(Base):
    """Size/mtime observed alongside a file's latest fingerprint.

    Auxiliary pre-check cache, not part of the authoritative schema. An entry
    is only trusted while ``file_id`` still names the latest version row.
    """

    __tablename__ = "file_stats"

    dir_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("dirs.id", ondelete="CASCADE"), primary_key=True
    )
    file_name: Mapped[str] = mapped_column(Text, primary_key=True)
    file_id: Mapped[int] = mapped_column(Integer, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    file_mtime_ns: Mapped[int] = mapped_column(Integer, nullable=False)
    checked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

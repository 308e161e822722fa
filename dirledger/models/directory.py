"""Directory mirror model."""

from __future__ import annotations

from sqlalchemy import ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from dirledger.models.base import Base


class Directory(Base):
    """One filesystem directory; a null parent marks a root."""

    __tablename__ = "dirs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    parent_dir_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("dirs.id"), nullable=True
    )
    dir_name: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("idx_dirs_path_name", "dir_name"),)

    def __repr__(self) -> str:
        return (
            f"Directory(id={self.id!r}, parent_dir_id={self.parent_dir_id!r}, "
            f"dir_name={self.dir_name!r})"
        )

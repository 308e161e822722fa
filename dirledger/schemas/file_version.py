"""File version ledger schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class FileVersionResponse(BaseModel):
    """One ledger row. ``hsh`` is null for unreadable content and for tombstones."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    version: int
    dir_id: int
    file_name: str
    backup_ts: datetime
    hsh: str | None = None


class FileListResponse(BaseModel):
    """Latest version of every file tracked in a directory."""

    dir_id: int
    files: list[FileVersionResponse] = Field(default_factory=list)


class FileHistoryResponse(BaseModel):
    """All versions of one file, oldest first."""

    dir_id: int
    file_name: str
    versions: list[FileVersionResponse] = Field(default_factory=list)

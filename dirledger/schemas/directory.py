"""Directory mirror schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class DirectoryResponse(BaseModel):
    """One mirrored directory."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    parent_dir_id: int | None = None
    dir_name: str


class DirectoryDetailResponse(DirectoryResponse):
    """Directory with its path segments from the root."""

    path: list[str] = Field(default_factory=list)


class DirectoryChildrenResponse(BaseModel):
    """Immediate children of a directory."""

    dir_id: int
    children: list[DirectoryResponse] = Field(default_factory=list)

"""SQLAlchemy ORM models for dirledger."""

from dirledger.models.base import Base
from dirledger.models.directory import Directory
from dirledger.models.file_version import FileStat, FileVersion

__all__ = [
    "Base",
    "Directory",
    "FileStat",
    "FileVersion",
]

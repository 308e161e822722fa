"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """dirledger settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/dirledger.db"

    # Scanning
    backup_roots: list[Path] = Field(default_factory=list)
    include_globs: list[str] = Field(default_factory=list)
    exclude_globs: list[str] = Field(default_factory=list)
    skip_hidden: bool = True
    follow_symlinks: bool = False
    case_sensitive: bool = True
    rehash_policy: Literal["metadata", "always"] = "metadata"
    current_format_version: int = Field(default=1, ge=1)
    tombstone_deleted: bool = True
    scan_workers: int = Field(default=8, ge=1, le=256)

    # Retention
    max_copies: int | None = Field(default=None, ge=1)

    # Payload storage
    blob_dir: Path | None = None

    # Storage retries
    storage_retry_attempts: int = Field(default=3, ge=1)
    storage_retry_base_delay: float = Field(default=0.05, ge=0)

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    def validate_runtime(self) -> None:
        """Validate settings that depend on each other or on the registry."""
        from dirledger.services.fingerprint_service import FINGERPRINT_FORMATS

        violations: list[str] = []
        if self.current_format_version not in FINGERPRINT_FORMATS:
            known = ", ".join(str(v) for v in sorted(FINGERPRINT_FORMATS))
            violations.append(
                f"CURRENT_FORMAT_VERSION={self.current_format_version} is not a "
                f"registered fingerprint format (known: {known})"
            )
        if self.blob_dir is not None and self.blob_dir.exists() and not self.blob_dir.is_dir():
            violations.append(f"BLOB_DIR exists but is not a directory: {self.blob_dir}")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid configuration: {joined}")

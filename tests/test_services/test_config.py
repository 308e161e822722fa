"""Tests for application configuration."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from dirledger.config import Settings


class TestSettings:
    def test_default_settings(self) -> None:
        s = Settings(_env_file=None)  # type: ignore[call-arg]
        assert s.debug is False
        assert s.port == 8000
        assert s.current_format_version == 1
        assert s.rehash_policy == "metadata"
        assert s.tombstone_deleted is True
        assert s.max_copies is None
        assert s.blob_dir is None

    def test_custom_settings(self, tmp_path: Path) -> None:
        s = Settings(
            _env_file=None,  # type: ignore[call-arg]
            debug=True,
            backup_roots=[tmp_path],
            blob_dir=tmp_path / "blobs",
            max_copies=3,
        )
        assert s.debug is True
        assert s.backup_roots == [tmp_path]
        assert s.max_copies == 3

    def test_settings_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REHASH_POLICY", "always")
        monkeypatch.setenv("SCAN_WORKERS", "2")
        s = Settings(_env_file=None)  # type: ignore[call-arg]
        assert s.rehash_policy == "always"
        assert s.scan_workers == 2

    def test_invalid_rehash_policy(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, rehash_policy="sometimes")  # type: ignore[call-arg, arg-type]

    def test_max_copies_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, max_copies=0)  # type: ignore[call-arg]


class TestValidateRuntime:
    def test_valid_configuration(self) -> None:
        Settings(_env_file=None).validate_runtime()  # type: ignore[call-arg]

    def test_unknown_format_version(self) -> None:
        s = Settings(_env_file=None, current_format_version=99)  # type: ignore[call-arg]
        with pytest.raises(ValueError, match="CURRENT_FORMAT_VERSION=99"):
            s.validate_runtime()

    def test_blob_dir_is_a_file(self, tmp_path: Path) -> None:
        not_a_dir = tmp_path / "file"
        not_a_dir.write_text("x")
        s = Settings(_env_file=None, blob_dir=not_a_dir)  # type: ignore[call-arg]
        with pytest.raises(ValueError, match="BLOB_DIR"):
            s.validate_runtime()


class TestCliEntry:
    def test_cli_entry_uses_app_settings(self) -> None:
        """cli_entry() should use the global app's settings, not create a new Settings()."""
        from dirledger.main import app, cli_entry

        original_settings = getattr(app.state, "settings", None)
        app.state.settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            host="127.0.0.1",
            port=9999,
            debug=True,
        )

        try:
            with patch("uvicorn.run") as mock_run:
                cli_entry()

            mock_run.assert_called_once_with(
                "dirledger.main:app",
                host="127.0.0.1",
                port=9999,
                reload=True,
            )
        finally:
            app.state.settings = original_settings

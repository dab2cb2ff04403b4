"""Unit tests for configuration."""

import os
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from school_mining.config import Settings
from school_mining.errors import ConfigError


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            s = Settings(_env_file=None)
        assert s.storage_path == Path("data")
        assert s.state_path is None
        assert s.state_check_url is None
        assert s.recent_success_minutes == 60.0
        assert s.lock_stale_minutes == 120.0
        assert s.peer_timeout_seconds == 5.0
        assert s.log_level == "WARNING"

    def test_env_names_have_no_prefix(self) -> None:
        env = {
            "STORAGE_PATH": "/srv/data",
            "STATE_PATH": "/var/www/state.json",
            "STATE_CHECK_URL": "https://primary.example.org/state.json",
            "SECRET": "xyz",
            "RECENT_SUCCESS_MINUTES": "15",
        }
        with patch.dict(os.environ, env):
            s = Settings(_env_file=None)
        assert s.storage_path == Path("/srv/data")
        assert s.state_path == Path("/var/www/state.json")
        assert s.state_check_url == "https://primary.example.org/state.json"
        assert s.secret == "xyz"
        assert s.recent_success == timedelta(minutes=15)

    def test_threshold_properties(self) -> None:
        s = Settings(_env_file=None, recent_success_minutes=30, lock_stale_minutes=90)
        assert s.recent_success == timedelta(minutes=30)
        assert s.lock_stale_after == timedelta(minutes=90)

    def test_env_file(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("SCHOOL=from-file\nHOST_ID=failover\n", encoding="utf-8")
        s = Settings(_env_file=env_file)
        assert s.school == "from-file"
        assert s.host_id == "failover"

    def test_ensure_dirs(self, tmp_path: Path) -> None:
        s = Settings(
            _env_file=None,
            storage_path=tmp_path / "store",
            log_path=tmp_path / "logs",
        )
        s.ensure_dirs()
        assert (tmp_path / "store").is_dir()
        assert (tmp_path / "logs").is_dir()


class TestRequireCredentials:
    """Tests for Settings.require_credentials."""

    def test_complete(self, settings: Settings) -> None:
        settings.require_credentials()

    def test_missing_lists_variables(self) -> None:
        s = Settings(_env_file=None, server="x", school="y", username="", password="", secret="")
        with pytest.raises(ConfigError, match="USERNAME, PASSWORD, SECRET"):
            s.require_credentials()

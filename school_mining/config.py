"""Configuration for the school mining scraper using pydantic-settings.

All settings are driven by environment variables (no prefix) and an
optional ``.env`` file. See .env.example for the full list of options.
"""

from __future__ import annotations

import logging
import socket
from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Scraper configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Timetable API (fetcher only)
    server: str = ""
    school: str = ""
    username: str = ""
    password: str = ""

    secret: str = ""

    storage_path: Path = Path("data")
    state_path: Optional[Path] = None
    state_check_url: Optional[str] = None
    host_id: str = socket.gethostname()

    recent_success_minutes: float = 60.0
    lock_stale_minutes: float = 120.0
    peer_timeout_seconds: float = 5.0

    user_agent: str = "school-mining-scraper/0.1"
    timeout_total: float = 30.0
    max_attempts: int = 3
    backoff_multiplier: float = 1.0
    backoff_min: float = 1.0
    backoff_max: float = 10.0

    log_path: Path = Path("log")
    log_level: str = "WARNING"

    @property
    def recent_success(self) -> timedelta:
        return timedelta(minutes=self.recent_success_minutes)

    @property
    def lock_stale_after(self) -> timedelta:
        return timedelta(minutes=self.lock_stale_minutes)

    def require_credentials(self) -> None:
        """Raise ConfigError unless everything the fetcher needs is set."""
        missing = [
            name.upper()
            for name in ("server", "school", "username", "password", "secret")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigError(f"Missing configuration: {', '.join(missing)}")

    def ensure_dirs(self) -> None:
        """Create storage and log directories if they don't exist."""
        for d in (self.storage_path, self.log_path):
            d.mkdir(parents=True, exist_ok=True)
            logger.debug("Ensured directory: %s", d)


def get_settings() -> Settings:
    """Load settings from environment and ensure directories exist."""
    s = Settings()
    s.ensure_dirs()
    return s

"""Shared test fixtures for school mining tests."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from school_mining.config import Settings
from school_mining.models import Lesson, LessonCode, ScheduleSnapshot

SECRET = "shared-test-secret"


def utc(hour: int, minute: int = 0, day: int = 16) -> datetime:
    """A fixed UTC time on 2023-10-16."""
    return datetime(2023, 10, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in tmp_path for a primary host without a peer."""
    s = Settings(
        server="mese.webuntis.com",
        school="example-school",
        username="scraper",
        password="pw",
        secret=SECRET,
        storage_path=tmp_path / "data",
        state_path=tmp_path / "www" / "state.json",
        state_check_url=None,
        host_id="primary",
        recent_success_minutes=30,
        lock_stale_minutes=120,
        peer_timeout_seconds=1.0,
        log_path=tmp_path / "log",
        max_attempts=1,
        backoff_min=0.0,
        backoff_max=0.0,
    )
    s.ensure_dirs()
    return s


@pytest.fixture
def lessons() -> List[Lesson]:
    """Two lessons of class 5a, one of them cancelled."""
    return [
        Lesson(
            classes=["5a"],
            teachers=["t1"],
            rooms=["R101"],
            topic="MA",
            date=20231016,
            start_time=800,
            end_time=845,
        ),
        Lesson(
            classes=["5a"],
            teachers=["t2"],
            rooms=["R102"],
            lesson_code=LessonCode.CANCELLED,
            topic="DE",
            sub_text="entfällt",
            date=20231016,
            start_time=850,
            end_time=935,
        ),
    ]


@pytest.fixture
def make_snapshot(lessons: List[Lesson]) -> Callable[..., ScheduleSnapshot]:
    """Factory for snapshots; defaults to the ``lessons`` fixture at 02:00."""

    def _make(
        fetched_at: Optional[datetime] = None,
        lessons_override: Optional[List[Lesson]] = None,
    ) -> ScheduleSnapshot:
        return ScheduleSnapshot(
            school="example-school",
            server="mese.webuntis.com",
            fetched_at=fetched_at or utc(2),
            lessons=lessons if lessons_override is None else lessons_override,
        )

    return _make

"""School mining scraper: timetable snapshots with primary/failover coordination."""

from .config import Settings, get_settings
from .coordinator import FailoverCoordinator, PeerCheck, PeerStatus, check_peer, decide
from .errors import (
    AlreadyRunning,
    ConfigError,
    CorruptData,
    FetchError,
    NotFound,
    ScraperError,
    StorageWriteError,
)
from .lock import RunLock, acquire
from .models import Decision, Lesson, RunOutcome, RunState, ScheduleSnapshot, SnapshotRecord
from .pipeline import run_pipeline
from .publisher import StatePublisher
from .store import SnapshotStore
from .verify import CheckResult, VerificationReport, run_verification

__all__ = [
    "Settings",
    "get_settings",
    "FailoverCoordinator",
    "PeerCheck",
    "PeerStatus",
    "check_peer",
    "decide",
    "AlreadyRunning",
    "ConfigError",
    "CorruptData",
    "FetchError",
    "NotFound",
    "ScraperError",
    "StorageWriteError",
    "RunLock",
    "acquire",
    "Decision",
    "Lesson",
    "RunOutcome",
    "RunState",
    "ScheduleSnapshot",
    "SnapshotRecord",
    "run_pipeline",
    "StatePublisher",
    "SnapshotStore",
    "run_verification",
    "VerificationReport",
    "CheckResult",
]

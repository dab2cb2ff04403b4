"""Pipeline driver: decide, lock, fetch, store, publish."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx

from .config import Settings
from .coordinator import FailoverCoordinator
from .errors import AlreadyRunning, ConfigError, FetchError, StorageWriteError
from .lock import RunLock, lock_path_for
from .models import RunOutcome, RunState, ScheduleSnapshot
from .publisher import StatePublisher
from .store import SnapshotStore
from .untis import UntisFetcher

logger = logging.getLogger(__name__)

Fetcher = Callable[[], ScheduleSnapshot]

EXIT_OK = 0
EXIT_FETCH_FAILED = 1
EXIT_STORAGE_FAILED = 2
EXIT_LOCK_FAILED = 3
EXIT_CONFIG_ERROR = 4


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _StateReporter:
    """Publishes RunState when STATE_PATH is configured, else does nothing."""

    def __init__(self, settings: Settings, clock: Callable[[], datetime]) -> None:
        self.settings = settings
        self.clock = clock
        self.publisher = (
            StatePublisher(settings.state_path, settings.secret)
            if settings.state_path is not None
            else None
        )

    def report(
        self,
        outcome: RunOutcome,
        *,
        content_hash: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.publisher is None:
            return
        now = self.clock()
        state = RunState(
            host_id=self.settings.host_id,
            timestamp=now,
            outcome=outcome,
            content_hash=content_hash,
            last_success_at=now if outcome == RunOutcome.SUCCESS else None,
            error=error,
        )
        try:
            self.publisher.publish(state)
        except OSError as exc:
            logger.error("[publish] Could not write state %s: %s", outcome.value, exc)


def run_pipeline(
    settings: Settings,
    fetcher: Optional[Fetcher] = None,
    *,
    now: Optional[datetime] = None,
    peer_transport: Optional[httpx.BaseTransport] = None,
) -> int:
    """Run one invocation and return the process exit code.

    Args:
        settings: Scraper settings.
        fetcher: Zero-argument callable returning a ScheduleSnapshot.
            Defaults to the WebUntis fetcher built from ``settings``.
        now: Fixed clock for the whole invocation (tests).
        peer_transport: httpx transport for the peer check (tests).
    """
    clock = (lambda: now) if now is not None else _utc_now

    decision = FailoverCoordinator(settings, transport=peer_transport).decide(clock())
    if not decision.should_run:
        logger.info("Deferring run: %s", decision.reason.value)
        return EXIT_OK

    if fetcher is None:
        try:
            settings.require_credentials()
        except ConfigError as exc:
            logger.error("[config] %s", exc)
            return EXIT_CONFIG_ERROR
        fetcher = UntisFetcher(settings)

    lock = RunLock(
        lock_path_for(settings.storage_path),
        settings.lock_stale_after,
        host_id=settings.host_id,
        now=now,
    )
    try:
        lock.acquire()
    except AlreadyRunning as exc:
        logger.info("[lock] %s; exiting", exc)
        return EXIT_OK
    except OSError as exc:
        logger.error("[lock] Could not create run lock: %s", exc)
        return EXIT_LOCK_FAILED

    reporter = _StateReporter(settings, clock)
    store = SnapshotStore(settings.storage_path)

    with lock:
        reporter.report(RunOutcome.STARTED)

        try:
            snapshot = fetcher()
        except FetchError as exc:
            logger.error("[fetch] %s", exc)
            reporter.report(RunOutcome.FAILURE, error=f"fetch: {exc}")
            return EXIT_FETCH_FAILED
        except Exception as exc:
            logger.exception("[fetch] Unexpected fetcher error: %s", exc)
            reporter.report(RunOutcome.FAILURE, error=f"fetch: {exc!r}")
            return EXIT_FETCH_FAILED

        try:
            content_hash = store.put(snapshot)
        except StorageWriteError as exc:
            logger.error("[store] %s", exc)
            reporter.report(RunOutcome.FAILURE, error=f"store: {exc}")
            return EXIT_STORAGE_FAILED
        except Exception as exc:
            logger.exception("[store] Unexpected storage error: %s", exc)
            reporter.report(RunOutcome.FAILURE, error=f"store: {exc!r}")
            return EXIT_STORAGE_FAILED

        reporter.report(RunOutcome.SUCCESS, content_hash=content_hash)

    logger.info("Run complete, snapshot %s", content_hash[:12])
    return EXIT_OK

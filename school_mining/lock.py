"""Filesystem run lock guarding the shared storage directory."""

from __future__ import annotations

import logging
import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import AlreadyRunning
from .models import LockRecord

logger = logging.getLogger(__name__)

LOCK_NAME = ".lock"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def lock_path_for(storage_path: Path) -> Path:
    return Path(storage_path) / LOCK_NAME


def _read_marker(path: Path) -> Optional[LockRecord]:
    """Return the marker's record, or None if missing or unreadable.

    An unreadable marker is aged by its mtime instead.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return LockRecord.model_validate_json(text)
    except ValidationError:
        try:
            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except FileNotFoundError:
            return None
        logger.warning("Lock marker %s is unreadable; aging it by mtime", path)
        return LockRecord(pid=-1, host_id="unknown", acquired_at=mtime)


def _is_stale(record: LockRecord, stale_after: timedelta, now: datetime) -> bool:
    return now - record.acquired_at > stale_after


def held_by(
    path: Path, stale_after: timedelta, now: Optional[datetime] = None
) -> Optional[LockRecord]:
    """Return the live holder of the lock at ``path`` without taking it."""
    record = _read_marker(path)
    if record is None:
        return None
    if _is_stale(record, stale_after, now or _utc_now()):
        return None
    return record


class RunLock:
    """Exclusive create-if-absent marker file, usable as a context manager.

    >>> with RunLock(path, timedelta(hours=2)):
    ...     do_the_run()

    The marker is removed on every exit from the ``with`` block. A marker
    older than ``stale_after`` belongs to a crashed run and is replaced.
    """

    def __init__(
        self,
        path: Path,
        stale_after: timedelta,
        *,
        host_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.path = Path(path)
        self.stale_after = stale_after
        self.host_id = host_id or socket.gethostname()
        self._now = now
        self.record: Optional[LockRecord] = None

    @property
    def is_held(self) -> bool:
        return self.record is not None

    def _create(self, record: LockRecord) -> bool:
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(record.model_dump_json())
        return True

    def acquire(self) -> "RunLock":
        """Take the lock.

        Raises:
            AlreadyRunning: If a live holder owns the marker.
            OSError: If the marker cannot be created for other reasons.
        """
        now = self._now or _utc_now()
        record = LockRecord(pid=os.getpid(), host_id=self.host_id, acquired_at=now)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if self._create(record):
            self.record = record
            logger.debug("Acquired run lock %s", self.path)
            return self

        existing = _read_marker(self.path)
        if existing is not None and not _is_stale(existing, self.stale_after, now):
            raise AlreadyRunning(
                f"Run lock {self.path} held by pid {existing.pid} on {existing.host_id} "
                f"since {existing.acquired_at.isoformat()}",
                holder=existing,
            )

        if existing is not None:
            logger.warning(
                "Reclaiming stale run lock %s (pid %d on %s since %s)",
                self.path, existing.pid, existing.host_id, existing.acquired_at.isoformat(),
            )
        self._move_aside_stale(now)
        if not self._create(record):
            raise AlreadyRunning(f"Run lock {self.path} was taken during reclaim")
        self.record = record
        logger.debug("Acquired run lock %s", self.path)
        return self

    def _move_aside_stale(self, now: datetime) -> None:
        """Rename the marker to a private name, then delete it.

        Only one rename can move a given marker. A marker that is live once
        moved belongs to a faster reclaimer: it is linked back and this
        caller gets AlreadyRunning.
        """
        aside = self.path.with_name(f"{self.path.name}.stale.{uuid.uuid4().hex}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            # moved by another reclaimer; _create picks the winner
            return
        try:
            moved = _read_marker(aside)
            if moved is not None and not _is_stale(moved, self.stale_after, now):
                try:
                    os.link(aside, self.path)
                except FileExistsError:
                    logger.warning("Could not restore live run lock %s", self.path)
                raise AlreadyRunning(
                    f"Run lock {self.path} was reclaimed by pid {moved.pid} on {moved.host_id}",
                    holder=moved,
                )
        finally:
            aside.unlink(missing_ok=True)

    def release(self) -> None:
        self.path.unlink(missing_ok=True)
        self.record = None
        logger.debug("Released run lock %s", self.path)

    def __enter__(self) -> "RunLock":
        if not self.is_held:
            self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def acquire(
    path: Path,
    stale_after: timedelta,
    *,
    host_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RunLock:
    """Acquire the run lock at ``path`` and return it, already held."""
    return RunLock(path, stale_after, host_id=host_id, now=now).acquire()

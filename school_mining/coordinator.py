"""Failover coordinator: decides whether this invocation should scrape.

The protocol is fail-open. An unreachable, malformed or untrusted peer is
treated as absent and the decision falls back to local state; only fresh,
authenticated evidence that someone else already did the work (or a live
run lock) leads to a deferral.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

import httpx
from pydantic import ValidationError

from .config import Settings
from .lock import held_by, lock_path_for
from .models import Decision, DeferReason, RunOutcome, RunState
from .publisher import AUTH_FIELD, read_state, verify_token
from .store import SnapshotStore

logger = logging.getLogger(__name__)


class PeerStatus(str, Enum):
    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class PeerCheck:
    status: PeerStatus
    state: Optional[RunState] = None


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def check_peer(
    url: str,
    *,
    secret: str,
    timeout: float,
    transport: Optional[httpx.BaseTransport] = None,
) -> PeerCheck:
    """Fetch the peer's published RunState with a single bounded request.

    Never raises for peer problems: timeouts, connection errors, non-2xx
    responses and malformed documents all yield ``UNREACHABLE``.
    """
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            resp = client.get(url, headers={"accept": "application/json"})
        resp.raise_for_status()
        doc = resp.json()
    except httpx.HTTPError as exc:
        logger.warning("Peer state check failed for %s: %s", url, exc)
        return PeerCheck(PeerStatus.UNREACHABLE)
    except ValueError as exc:
        logger.warning("Peer state at %s is not valid JSON: %s", url, exc)
        return PeerCheck(PeerStatus.UNREACHABLE)

    if not isinstance(doc, dict):
        logger.warning("Peer state at %s is not a JSON object", url)
        return PeerCheck(PeerStatus.UNREACHABLE)

    token = doc.pop(AUTH_FIELD, None)
    if not verify_token(secret, token):
        logger.warning("Peer state at %s failed authentication; ignoring it", url)
        return PeerCheck(PeerStatus.UNTRUSTED)

    try:
        state = RunState.model_validate(doc)
    except ValidationError as exc:
        logger.warning("Peer state at %s has unexpected shape: %s", url, exc.error_count())
        return PeerCheck(PeerStatus.UNREACHABLE)

    logger.info(
        "Peer %s reports %s at %s", state.host_id, state.outcome.value, state.timestamp.isoformat()
    )
    return PeerCheck(PeerStatus.TRUSTED, state)


def decide(
    local_state: Optional[RunState],
    peer_check_url: Optional[str],
    now: datetime,
    *,
    secret: str,
    recent_success: timedelta,
    lock_path: Optional[Path] = None,
    lock_stale_after: timedelta = timedelta(hours=2),
    timeout: float = 5.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> Decision:
    """Return Run or Defer(reason) for this invocation."""
    now = _as_utc(now)

    if lock_path is not None:
        holder = held_by(lock_path, lock_stale_after, now)
        if holder is not None:
            logger.info("Run lock held by pid %d on %s", holder.pid, holder.host_id)
            return Decision.defer(DeferReason.LOCKED)

    if not peer_check_url:
        return Decision.run()

    peer = check_peer(peer_check_url, secret=secret, timeout=timeout, transport=transport)

    candidates = []
    if peer.status == PeerStatus.TRUSTED and peer.state is not None:
        if (
            peer.state.outcome == RunOutcome.STARTED
            and now - _as_utc(peer.state.timestamp) <= lock_stale_after
        ):
            logger.info("Peer %s is currently running", peer.state.host_id)
            return Decision.defer(DeferReason.PEER_RUNNING)
        if peer.state.last_success is not None:
            candidates.append(_as_utc(peer.state.last_success))
    else:
        logger.info("Peer %s; falling back to local state", peer.status.value)

    if local_state is not None and local_state.last_success is not None:
        candidates.append(_as_utc(local_state.last_success))

    if not candidates:
        return Decision.run()

    freshness = now - max(candidates)
    if freshness <= recent_success:
        logger.info("Last success %s ago is within %s; deferring", freshness, recent_success)
        return Decision.defer(DeferReason.PEER_RECENT_SUCCESS)
    return Decision.run()


def local_run_state(settings: Settings) -> Optional[RunState]:
    """Return this host's RunState from its state file, else from the index."""
    state = read_state(settings.state_path)
    if state is not None:
        return state
    latest = SnapshotStore(settings.storage_path).get_latest()
    if latest is None:
        return None
    return RunState(
        host_id=settings.host_id,
        timestamp=latest.timestamp,
        outcome=RunOutcome.SUCCESS,
        content_hash=latest.content_hash,
    )


class FailoverCoordinator:
    """Binds ``decide`` to the configured paths and thresholds."""

    def __init__(
        self, settings: Settings, *, transport: Optional[httpx.BaseTransport] = None
    ) -> None:
        self.settings = settings
        self.transport = transport

    def decide(self, now: Optional[datetime] = None) -> Decision:
        s = self.settings
        decision = decide(
            local_run_state(s),
            s.state_check_url,
            now or datetime.now(timezone.utc),
            secret=s.secret,
            recent_success=s.recent_success,
            lock_path=lock_path_for(s.storage_path),
            lock_stale_after=s.lock_stale_after,
            timeout=s.peer_timeout_seconds,
            transport=self.transport,
        )
        logger.info("Decision: %s", decision.to_dict())
        return decision

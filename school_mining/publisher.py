"""Publishes this host's RunState for the peer to poll over HTTP."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .models import RunState
from .store import write_bytes_atomic

logger = logging.getLogger(__name__)

AUTH_FIELD = "secret"
_AUTH_LABEL = b"school-mining-peer-state"


def auth_token(secret: str) -> str:
    """Derive the published authentication value from the shared secret."""
    return hmac.new(secret.encode("utf-8"), _AUTH_LABEL, hashlib.sha256).hexdigest()


def verify_token(secret: str, value: Any) -> bool:
    """Return True if ``value`` was produced from the same shared secret."""
    if not secret or not isinstance(value, str):
        return False
    return hmac.compare_digest(auth_token(secret), value)


def state_document(state: RunState, secret: str) -> Dict[str, Any]:
    doc = state.model_dump(mode="json")
    doc[AUTH_FIELD] = auth_token(secret)
    return doc


def read_state(path: Optional[Path]) -> Optional[RunState]:
    """Read a published RunState. Returns None if absent or unreadable."""
    if path is None or not Path(path).exists():
        return None
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable state file %s: %s", path, exc)
        return None
    if isinstance(raw, dict):
        raw.pop(AUTH_FIELD, None)
    try:
        return RunState.model_validate(raw)
    except ValidationError:
        logger.warning("Ignoring state file %s with unexpected shape", path)
        return None


class StatePublisher:
    """Overwrites the state document in place, atomically."""

    def __init__(self, path: Path, secret: str) -> None:
        self.path = Path(path)
        self.secret = secret

    def read(self) -> Optional[RunState]:
        return read_state(self.path)

    def publish(self, state: RunState) -> RunState:
        """Write ``state`` and return what was actually published.

        The timestamp never moves backwards for the same host: an older
        timestamp is clamped to the previous document's.
        """
        previous = self.read()
        if (
            previous is not None
            and previous.host_id == state.host_id
            and state.timestamp < previous.timestamp
        ):
            logger.warning(
                "Clock regression for %s (%s < %s); keeping previous timestamp",
                state.host_id, state.timestamp.isoformat(), previous.timestamp.isoformat(),
            )
            state = state.model_copy(update={"timestamp": previous.timestamp})

        # started/failure documents keep reporting the last good run
        if previous is not None and previous.host_id == state.host_id:
            carried = {}
            if state.last_success_at is None:
                carried["last_success_at"] = previous.last_success
            if state.content_hash is None:
                carried["content_hash"] = previous.content_hash
            state = state.model_copy(update=carried)

        doc = state_document(state, self.secret)
        write_bytes_atomic(self.path, json.dumps(doc, indent=2).encode("utf-8"))
        logger.info("Published state %s for %s", state.outcome.value, state.host_id)
        return state

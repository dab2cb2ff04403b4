"""Tests for the RunState publisher."""

import json

from school_mining.models import RunOutcome, RunState
from school_mining.publisher import (
    StatePublisher,
    auth_token,
    read_state,
    state_document,
    verify_token,
)

from conftest import SECRET, utc


def _state(hour: int, outcome: RunOutcome = RunOutcome.SUCCESS, **kw) -> RunState:
    return RunState(host_id="primary", timestamp=utc(hour), outcome=outcome, **kw)


class TestAuthToken:
    """Tests for auth_token and verify_token."""

    def test_raw_secret_not_published(self) -> None:
        doc = state_document(_state(2), SECRET)
        assert SECRET not in json.dumps(doc)
        assert doc["secret"] == auth_token(SECRET)

    def test_verify(self) -> None:
        assert verify_token(SECRET, auth_token(SECRET)) is True
        assert verify_token(SECRET, auth_token("other")) is False
        assert verify_token(SECRET, None) is False
        assert verify_token("", auth_token("")) is False


class TestPublish:
    """Tests for StatePublisher.publish."""

    def test_document_shape(self, tmp_path) -> None:
        path = tmp_path / "www" / "state.json"
        StatePublisher(path, SECRET).publish(_state(2, content_hash="h1"))
        doc = json.loads(path.read_text(encoding="utf-8"))
        assert doc["outcome"] == "success"
        assert doc["content_hash"] == "h1"
        assert doc["host_id"] == "primary"
        assert "timestamp" in doc
        assert "secret" in doc

    def test_read_back(self, tmp_path) -> None:
        path = tmp_path / "state.json"
        StatePublisher(path, SECRET).publish(_state(2, content_hash="h1"))
        state = read_state(path)
        assert state.timestamp == utc(2)
        assert state.content_hash == "h1"

    def test_overwrites_in_place(self, tmp_path) -> None:
        path = tmp_path / "state.json"
        pub = StatePublisher(path, SECRET)
        pub.publish(_state(2))
        pub.publish(_state(3, RunOutcome.STARTED))
        assert read_state(path).outcome == RunOutcome.STARTED
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_timestamp_never_regresses(self, tmp_path) -> None:
        path = tmp_path / "state.json"
        pub = StatePublisher(path, SECRET)
        pub.publish(_state(5))
        published = pub.publish(_state(4, RunOutcome.FAILURE, error="boom"))
        assert published.timestamp == utc(5)
        assert read_state(path).timestamp == utc(5)
        assert read_state(path).outcome == RunOutcome.FAILURE

    def test_other_host_not_clamped(self, tmp_path) -> None:
        path = tmp_path / "state.json"
        pub = StatePublisher(path, SECRET)
        pub.publish(_state(5))
        other = RunState(host_id="failover", timestamp=utc(4), outcome=RunOutcome.SUCCESS)
        assert pub.publish(other).timestamp == utc(4)

    def test_failure_carries_last_success(self, tmp_path) -> None:
        path = tmp_path / "state.json"
        pub = StatePublisher(path, SECRET)
        pub.publish(_state(2, content_hash="h1"))
        pub.publish(_state(3, RunOutcome.FAILURE, error="fetch: down"))
        state = read_state(path)
        assert state.last_success == utc(2)
        assert state.content_hash == "h1"
        assert state.error == "fetch: down"


class TestReadState:
    """Tests for read_state."""

    def test_missing(self, tmp_path) -> None:
        assert read_state(tmp_path / "nope.json") is None
        assert read_state(None) is None

    def test_corrupt(self, tmp_path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        assert read_state(path) is None

    def test_wrong_shape(self, tmp_path) -> None:
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"hello": "world"}), encoding="utf-8")
        assert read_state(path) is None

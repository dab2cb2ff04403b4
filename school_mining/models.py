"""Pydantic models shared across the scraper."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LessonCode(str, Enum):
    """Kind of lesson as reported by the timetable."""

    REGULAR = "regular"
    IRREGULAR = "irregular"
    CANCELLED = "cancelled"


class Lesson(BaseModel):
    """A single lesson on a class timetable."""

    classes: List[str] = Field(default_factory=list)
    # Pseudonymised before the lesson is created, never clear names.
    teachers: List[str] = Field(default_factory=list)
    rooms: List[str] = Field(default_factory=list)
    lesson_code: LessonCode = LessonCode.REGULAR
    description: str = ""
    topic: str = "None"
    sub_text: Optional[str] = None
    date: Optional[int] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None


class ScheduleSnapshot(BaseModel):
    """One fetch result: the lessons plus where and when they were fetched."""

    model_config = ConfigDict(frozen=True)

    school: str
    server: str
    fetched_at: datetime
    lessons: List[Lesson] = Field(default_factory=list)

    def canonical_payload(self) -> bytes:
        """Serialize the lessons to their canonical byte form.

        Metadata is excluded and lessons are ordered by their own canonical
        JSON, so the same timetable always yields the same bytes.
        """
        rows = sorted(
            json.dumps(
                lesson.model_dump(mode="json"),
                sort_keys=True,
                ensure_ascii=False,
                separators=(",", ":"),
            )
            for lesson in self.lessons
        )
        return ("[" + ",".join(rows) + "]").encode("utf-8")

    def content_hash(self) -> str:
        return hashlib.sha256(self.canonical_payload()).hexdigest()


class SnapshotRecord(BaseModel):
    """An entry of the append-only store index."""

    timestamp: datetime
    content_hash: str
    path: str


class RunOutcome(str, Enum):
    STARTED = "started"
    SUCCESS = "success"
    FAILURE = "failure"


class RunState(BaseModel):
    """Latest run outcome of one host, as published for its peer."""

    host_id: str
    timestamp: datetime
    outcome: RunOutcome
    content_hash: Optional[str] = None
    last_success_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def last_success(self) -> Optional[datetime]:
        """Return the newest known successful run time, if any."""
        if self.outcome == RunOutcome.SUCCESS:
            if self.last_success_at is None or self.timestamp > self.last_success_at:
                return self.timestamp
        return self.last_success_at


class LockRecord(BaseModel):
    """Contents of the run lock marker."""

    pid: int
    host_id: str
    acquired_at: datetime


class DecisionAction(str, Enum):
    RUN = "run"
    DEFER = "defer"


class DeferReason(str, Enum):
    LOCKED = "locked"
    PEER_RECENT_SUCCESS = "peer_recent_success"
    PEER_RUNNING = "peer_running"


@dataclass(frozen=True)
class Decision:
    """Outcome of the coordinator for a single invocation."""

    action: DecisionAction
    reason: Optional[DeferReason] = None

    @classmethod
    def run(cls) -> "Decision":
        return cls(DecisionAction.RUN)

    @classmethod
    def defer(cls, reason: DeferReason) -> "Decision":
        return cls(DecisionAction.DEFER, reason)

    @property
    def should_run(self) -> bool:
        return self.action == DecisionAction.RUN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason.value if self.reason else None,
        }

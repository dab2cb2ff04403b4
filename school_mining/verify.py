"""Snapshot store verification and reconciliation.

Checks that the index and the object files agree: every indexed object is
present and decodes to its hash, and no object is missing from the index.
Repair only ever appends to the index.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .errors import CorruptData, NotFound
from .models import SnapshotRecord
from .store import SnapshotStore

logger = logging.getLogger(__name__)

MAX_DETAILS = 10


@dataclass(frozen=True)
class CheckResult:
    check: str
    ok: bool
    message: str
    details: List[str] = field(default_factory=list)


def _outcome(check: str, problems: List[str], ok_message: str, fail_message: str) -> CheckResult:
    if problems:
        return CheckResult(check, False, fail_message, problems[:MAX_DETAILS])
    return CheckResult(check, True, ok_message)


@dataclass
class VerificationReport:
    """Check results for one storage directory, plus any repaired hashes."""

    storage_path: Path
    results: List[CheckResult] = field(default_factory=list)
    repaired: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(r.ok for r in self.results)

    def summary(self) -> str:
        lines = [f"Storage: {self.storage_path}"]
        for r in self.results:
            lines.append(f"  {'ok  ' if r.ok else 'FAIL'} {r.check}: {r.message}")
            lines.extend(f"         {d}" for d in r.details)
        if self.repaired:
            lines.append(f"Indexed {len(self.repaired)} orphan object(s)")
        good = sum(1 for r in self.results if r.ok)
        lines.append(f"{good}/{len(self.results)} checks passed")
        return "\n".join(lines)


def check_index_readable(store: SnapshotStore) -> CheckResult:
    """Check that every non-empty index line parses as a record."""
    if not store.index_path.exists():
        return CheckResult("index_readable", True, "No index yet")
    bad: List[str] = []
    total = 0
    with store.index_path.open("r", encoding="utf-8") as f:
        for i, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            total += 1
            try:
                SnapshotRecord.model_validate_json(line)
            except ValueError:
                bad.append(f"Line {i} is not a valid record")
    return _outcome(
        "index_readable",
        bad,
        f"All {total} index lines readable",
        f"{len(bad)} of {total} index line(s) unreadable",
    )


def check_indexed_objects_present(store: SnapshotStore) -> CheckResult:
    """Check that every hash named in the index has an object file."""
    missing = sorted({r.content_hash for r in store.records()} - store.object_hashes())
    return _outcome(
        "indexed_objects_present",
        missing,
        "All indexed objects present",
        f"{len(missing)} indexed object(s) missing",
    )


def check_objects_intact(store: SnapshotStore) -> CheckResult:
    """Decode every object and compare it against its file name."""
    errors: List[str] = []
    hashes = sorted(store.object_hashes())
    for h in hashes:
        try:
            store.get(h)
        except (CorruptData, NotFound) as exc:
            errors.append(str(exc))
    return _outcome(
        "objects_intact",
        errors,
        f"All {len(hashes)} objects decode and match their hash",
        f"{len(errors)} corrupt object(s)",
    )


def check_no_orphans(store: SnapshotStore) -> CheckResult:
    """Check for objects that were written but never indexed."""
    orphans = store.orphans()
    return _outcome(
        "no_orphans",
        orphans,
        "Every object is indexed",
        f"{len(orphans)} object(s) not in the index",
    )

CHECKS = (
    check_index_readable,
    check_indexed_objects_present,
    check_objects_intact,
    check_no_orphans,
)


def repair_orphans(store: SnapshotStore) -> List[str]:
    """Append index records for intact orphan objects.

    The record timestamp is the snapshot's own fetch time. Corrupt orphans
    are left alone.
    """
    repaired: List[str] = []
    for h in store.orphans():
        try:
            snapshot = store.get(h)
        except CorruptData as exc:
            logger.warning("Not indexing corrupt orphan %s: %s", h[:12], exc)
            continue
        store.append_record(
            SnapshotRecord(
                timestamp=snapshot.fetched_at,
                content_hash=h,
                path=store.object_path(h).name,
            )
        )
        logger.info("Indexed orphan object %s", h[:12])
        repaired.append(h)
    return repaired


def run_verification(storage_path: Path, *, repair: bool = False) -> VerificationReport:
    """Run all checks on the store at ``storage_path``.

    With ``repair``, orphan objects are indexed before the checks run.
    """
    store = SnapshotStore(storage_path)
    report = VerificationReport(storage_path=Path(storage_path))

    if repair:
        report.repaired = repair_orphans(store)
        if report.repaired:
            logger.info("Repaired %d orphan object(s)", len(report.repaired))

    for check in CHECKS:
        report.results.append(check(store))
    return report

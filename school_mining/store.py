"""Content-addressed snapshot store with an append-only run index."""

from __future__ import annotations

import gzip
import json
import logging
import os
import tempfile
import zlib
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, List, Optional, Set

from pydantic import ValidationError

from .errors import CorruptData, NotFound, StorageWriteError
from .models import ScheduleSnapshot, SnapshotRecord

logger = logging.getLogger(__name__)

INDEX_NAME = "index.jsonl"
OBJECT_SUFFIX = ".bin"
FORMAT_VERSION = 1


@contextmanager
def atomic_target(path: Path) -> Iterator[IO[bytes]]:
    """Yield a temp file beside ``path`` that replaces it on clean exit.

    The temp file is removed on every other exit path, so ``path`` only
    ever holds complete content.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            yield fh
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """Write bytes atomically via tmp-file rename."""
    with atomic_target(path) as fh:
        fh.write(data)


def _encode_object(snapshot: ScheduleSnapshot) -> bytes:
    envelope = {
        "format": FORMAT_VERSION,
        "school": snapshot.school,
        "server": snapshot.server,
        "fetched_at": snapshot.fetched_at.isoformat(),
        "lessons": json.loads(snapshot.canonical_payload()),
    }
    raw = json.dumps(envelope, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return gzip.compress(raw.encode("utf-8"), mtime=0)


def _decode_object(data: bytes, content_hash: str) -> ScheduleSnapshot:
    try:
        envelope = json.loads(gzip.decompress(data).decode("utf-8"))
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError) as exc:
        raise CorruptData(f"Object {content_hash} cannot be decoded: {exc}") from exc

    if not isinstance(envelope, dict) or envelope.get("format") != FORMAT_VERSION:
        raise CorruptData(f"Object {content_hash} has an unknown format")
    envelope.pop("format")

    try:
        snapshot = ScheduleSnapshot.model_validate(envelope)
    except ValidationError as exc:
        raise CorruptData(f"Object {content_hash} failed schema validation") from exc

    actual = snapshot.content_hash()
    if actual != content_hash:
        raise CorruptData(
            f"Object {content_hash} hash mismatch (content hashes to {actual})"
        )
    return snapshot


class SnapshotStore:
    """Flat hash-to-file store rooted at ``root``.

    Objects are immutable and named ``<sha256>.bin``. Every ``put`` appends
    one line to ``index.jsonl``, whether or not the object was new.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_NAME

    def object_path(self, content_hash: str) -> Path:
        return self.root / f"{content_hash}{OBJECT_SUFFIX}"

    def put(self, snapshot: ScheduleSnapshot) -> str:
        """Persist a snapshot and record this occurrence in the index.

        Raises:
            StorageWriteError: If the object could not be written. No
                partial object is left behind.
        """
        content_hash = snapshot.content_hash()
        path = self.object_path(content_hash)

        if path.exists():
            logger.info("Object %s already stored, recording occurrence only", content_hash[:12])
        else:
            try:
                write_bytes_atomic(path, _encode_object(snapshot))
            except OSError as exc:
                raise StorageWriteError(f"Could not write object {path}: {exc}") from exc
            logger.info("Stored object %s (%d lessons)", content_hash[:12], len(snapshot.lessons))

        record = SnapshotRecord(
            timestamp=snapshot.fetched_at,
            content_hash=content_hash,
            path=path.name,
        )
        try:
            self.append_record(record)
        except OSError as exc:
            logger.warning(
                "Object %s stored but index append failed: %s", content_hash[:12], exc
            )
        return content_hash

    def append_record(self, record: SnapshotRecord) -> None:
        """Append a record to the index with a single write."""
        self.root.mkdir(parents=True, exist_ok=True)
        line = record.model_dump_json() + "\n"
        with self.index_path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    def records(self) -> List[SnapshotRecord]:
        """Return all readable index entries ordered by timestamp."""
        if not self.index_path.exists():
            return []
        out: List[SnapshotRecord] = []
        with self.index_path.open("r", encoding="utf-8") as fh:
            for i, line in enumerate(fh, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(SnapshotRecord.model_validate_json(line))
                except ValidationError:
                    logger.warning("Skipping unreadable index line %d in %s", i, self.index_path)
        # sorted() is stable: equal timestamps keep append order
        return sorted(out, key=lambda r: r.timestamp)

    def get_latest(self) -> Optional[SnapshotRecord]:
        records = self.records()
        return records[-1] if records else None

    def get(self, content_hash: str) -> ScheduleSnapshot:
        """Load the snapshot stored under ``content_hash``.

        Raises:
            NotFound: If no object exists for the hash.
            CorruptData: If the object fails to decode or verify.
        """
        path = self.object_path(content_hash)
        try:
            data = path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFound(f"No object for hash {content_hash}") from exc
        return _decode_object(data, content_hash)

    def object_hashes(self) -> Set[str]:
        """Return the hashes of all objects present on disk."""
        if not self.root.exists():
            return set()
        return {p.name[: -len(OBJECT_SUFFIX)] for p in self.root.glob(f"*{OBJECT_SUFFIX}")}

    def orphans(self) -> List[str]:
        """Return hashes of objects that no index entry references."""
        indexed = {r.content_hash for r in self.records()}
        return sorted(self.object_hashes() - indexed)

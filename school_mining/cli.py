"""Command-line interface for the school mining scraper."""

from __future__ import annotations

import argparse
import json
import logging
import logging.handlers
import sys
from pathlib import Path

from .config import Settings, get_settings
from .coordinator import FailoverCoordinator
from .errors import CorruptData, NotFound
from .pipeline import run_pipeline
from .store import SnapshotStore
from .verify import run_verification

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "school-mining.log"
LOG_BACKUPS = 10


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    p = argparse.ArgumentParser(
        prog="school-mining",
        description="Scrape timetable snapshots with primary/failover coordination.",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Decide, fetch, store and publish state")
    sub.add_parser("decide", help="Print the run decision without running")
    sub.add_parser("latest", help="Print the newest index record")

    show = sub.add_parser("show", help="Print a stored snapshot")
    show.add_argument("content_hash", help="SHA-256 content hash of the snapshot")

    verify = sub.add_parser("verify", help="Check store integrity")
    verify.add_argument(
        "--repair",
        action="store_true",
        help="Append index records for objects missing from the index",
    )

    return p


def _log_level(verbose: bool, settings: Settings) -> int:
    if verbose:
        return logging.DEBUG
    return getattr(logging, settings.log_level.upper(), logging.WARNING)


def _configure_logging(verbose: bool, settings: Settings) -> None:
    """Set up root logging to stderr and a file rotated at midnight."""
    log_dir = Path(settings.log_path)
    log_dir.mkdir(parents=True, exist_ok=True)
    handlers = [
        logging.StreamHandler(sys.stderr),
        logging.handlers.TimedRotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            when="midnight",
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        ),
    ]
    logging.basicConfig(
        level=_log_level(verbose, settings),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
        force=True,
    )


def main(argv: list[str] | None = None) -> int:
    """Entry point for the CLI."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    _configure_logging(args.verbose, settings)

    if args.cmd == "run":
        return run_pipeline(settings)

    if args.cmd == "decide":
        decision = FailoverCoordinator(settings).decide()
        print(json.dumps(decision.to_dict(), indent=2))
        return 0

    store = SnapshotStore(settings.storage_path)

    if args.cmd == "latest":
        record = store.get_latest()
        if record is None:
            logger.error("Store at %s has no index entries", settings.storage_path)
            return 1
        print(json.dumps(record.model_dump(mode="json"), indent=2))
        return 0

    if args.cmd == "show":
        try:
            snapshot = store.get(args.content_hash)
        except (NotFound, CorruptData) as exc:
            logger.error("%s", exc)
            return 1
        print(json.dumps(snapshot.model_dump(mode="json"), indent=2, ensure_ascii=False))
        return 0

    if args.cmd == "verify":
        report = run_verification(settings.storage_path, repair=args.repair)
        print(report.summary())
        return 0 if report.passed else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())

"""Exceptions raised by the scraper.

Peer health-check problems are deliberately absent: an unreachable or
untrusted peer is an input to the coordinator, see ``coordinator.PeerStatus``.
"""

from __future__ import annotations


class ScraperError(Exception):
    """Base class for all scraper errors."""


class ConfigError(ScraperError):
    """Required configuration is missing or invalid."""


class FetchError(ScraperError):
    """The timetable API could not deliver a snapshot."""


class AlreadyRunning(ScraperError):
    """Another live invocation holds the run lock."""

    def __init__(self, message: str, holder=None) -> None:
        super().__init__(message)
        self.holder = holder


class StorageWriteError(ScraperError):
    """Persisting a snapshot object failed; nothing was left behind."""


class NotFound(ScraperError):
    """No stored object exists for the requested hash."""


class CorruptData(ScraperError):
    """A stored object failed to decode or its hash does not match."""

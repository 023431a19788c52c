"""Error taxonomy shared by the cache, projection and sync layers."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable reason attached to an unapplied operation."""

    TRANSPORT = "transport"
    NOT_FOUND = "not_found"
    STALE_PROJECTION = "stale_projection"
    MALFORMED_NOTIFICATION = "malformed_notification"
    UNSUPPORTED = "unsupported"


class WatchSyncError(Exception):
    """Base class for errors handled inside the sync engine."""

    kind: ErrorKind = ErrorKind.TRANSPORT


class TransportError(WatchSyncError):
    """A remote fetch or write could not be completed."""

    kind = ErrorKind.TRANSPORT


class NotFoundError(WatchSyncError):
    """An item id could not be resolved by the media server."""

    kind = ErrorKind.NOT_FOUND


class StaleProjectionError(WatchSyncError):
    """A requested page no longer exists after a filter or sort change."""

    kind = ErrorKind.STALE_PROJECTION

    def __init__(self, page: int, total_pages: int):
        super().__init__(f"Page {page} exceeds {total_pages} available pages")
        self.page = page
        self.total_pages = total_pages


class MalformedNotification(WatchSyncError):
    """A real-time payload is missing the fields the invalidator needs."""

    kind = ErrorKind.MALFORMED_NOTIFICATION

"""Utility helpers for the WatchSync service."""

from __future__ import annotations

import math
import re
from datetime import datetime, time, timezone

FRACTION_RE = re.compile(r"\.(\d+)")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
TICKS_PER_SECOND = 10_000_000


def parse_timestamp(value: object) -> datetime | None:
    """Parse a media-server timestamp into an aware UTC datetime."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip().replace("Z", "+00:00")
        # The server emits seven fractional digits; fromisoformat wants six.
        raw = FRACTION_RE.sub(
            lambda match: "." + match.group(1)[:6].ljust(6, "0"), raw, count=1
        )
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def timestamp_or_epoch(value: object) -> datetime:
    """Return the parsed timestamp, falling back to the Unix epoch."""

    return parse_timestamp(value) or EPOCH


def end_of_day(now: datetime | None = None) -> datetime:
    """Return the last instant of the local day containing ``now``."""

    local_now = (now or datetime.now().astimezone()).astimezone()
    cutoff = datetime.combine(local_now.date(), time.max, tzinfo=local_now.tzinfo)
    return cutoff.astimezone(timezone.utc)


def page_count(length: int, page_size: int) -> int:
    """Number of pages needed to show ``length`` items."""

    if page_size <= 0:
        return 0
    return math.ceil(length / page_size)


def ticks_to_seconds(ticks: object) -> int:
    if isinstance(ticks, (int, float)) and ticks > 0:
        return int(ticks // TICKS_PER_SECOND)
    return 0


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""

    return datetime.now(timezone.utc).replace(tzinfo=None)

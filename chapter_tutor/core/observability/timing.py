from __future__ import annotations

import time
from datetime import datetime, timezone


def perf_now() -> float:
    """Monotonic timer for latency measurements."""

    return time.perf_counter()


def elapsed_ms(start: float) -> int:
    """Whole milliseconds elapsed since `start` (from perf_now())."""

    return int(round((time.perf_counter() - start) * 1000))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    """Parses ISO-8601 timestamps written by `to_iso`; returns None for blank or invalid input."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

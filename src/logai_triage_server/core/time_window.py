"""Time-window helpers.

Everything is normalized to timezone-aware UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_iso_dt(s: str) -> datetime:
    """Parse ISO8601 datetime. If tz is missing, assume UTC."""
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    return ensure_utc(dt)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def lookback_window(hours: int, *, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return the closed window [now - hours, now] in UTC."""
    if hours < 1:
        raise ValueError("lookback hours must be >= 1")
    until = ensure_utc(now) if now is not None else utcnow()
    return until - timedelta(hours=hours), until


def in_window(ts: datetime, since: datetime, until: datetime) -> bool:
    ts = ensure_utc(ts)
    return since <= ts <= until

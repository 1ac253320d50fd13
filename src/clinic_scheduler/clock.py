from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_utc(dt: datetime) -> datetime:
    # Naive datetimes are taken to already be UTC instants
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def dt_to_iso(dt: datetime) -> str:
    # Fixed width keeps stored values lexicographically ordered
    return to_utc(dt).isoformat(timespec="microseconds")


def iso_to_dt(s: str) -> datetime:
    return to_utc(datetime.fromisoformat(s))

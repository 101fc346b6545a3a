from __future__ import annotations

from datetime import datetime, timezone

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """UTC now as an ISO-8601 string with a Z suffix (second precision)."""
    return to_iso_z(utc_now().replace(microsecond=0))


def to_iso_z(value: datetime, timespec: str = "auto") -> str:
    """Render a datetime as ISO-8601 UTC with a Z suffix.

    Naive datetimes are taken to be UTC already. Use timespec="microseconds"
    where the strings must sort chronologically.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec=timespec).replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string (Z suffix allowed) into an aware UTC datetime."""
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

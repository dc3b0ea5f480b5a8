from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

# Fixed-width so lexical order equals chronological order.
ISO_UTC_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
ISO_UTC_LENGTH = 27

# Values written by older builds before timestamps were enforced.
ZERO_TIMESTAMPS = ("", "0001-01-01T00:00:00.0000000Z", "0001-01-01T00:00:00Z", "0001-01-01 00:00:00")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_datetime_iso_utc(value: datetime) -> str:
    aware = value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value
    return aware.astimezone(timezone.utc).strftime(ISO_UTC_FORMAT)


def parse_datetime_iso_utc(value: str | None) -> datetime | None:
    cleaned = (value or "").strip()
    if not cleaned or cleaned in ZERO_TIMESTAMPS:
        return None
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    # Seven fractional digits (100ns ticks) appear in rows from older builds.
    head, dot, tail = cleaned.partition(".")
    if dot:
        count = 0
        while count < len(tail) and tail[count].isdigit():
            count += 1
        digits, offset = tail[:count], tail[count:]
        cleaned = f"{head}.{digits[:6]}{offset}"
    parsed = datetime.fromisoformat(cleaned)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class UtcIsoText(TypeDecorator):
    """Aware UTC datetimes stored as sortable ISO-8601 text."""

    impl = String(ISO_UTC_LENGTH)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            return value
        return format_datetime_iso_utc(value)

    def process_result_value(self, value, dialect):
        return parse_datetime_iso_utc(value)

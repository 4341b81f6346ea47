"""Time helpers"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time; the default clock of every store"""
    return datetime.now(timezone.utc)


def to_key_timestamp(value: datetime) -> str:
    """
    Fixed-width UTC ISO timestamp (millisecond precision, ``Z`` suffix)

    Strings in this form sort chronologically, so they can be used as key parts.
    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

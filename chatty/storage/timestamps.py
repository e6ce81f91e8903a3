"""
Timestamp encoding for persisted rows.

Every timestamp is stored as UTC text with seconds precision
(``YYYY-MM-DDTHH:MM:SSZ``) and is produced by SQLite itself through
``SQL_NOW`` so that all rows share one clock.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone

from .errors import ParseFailure

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# SQL expression evaluating to "now" in TIMESTAMP_FORMAT.
SQL_NOW = "(strftime('%Y-%m-%dT%H:%M:%SZ','now'))"

# Returned for blank stored values.
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

# Zero-padded fields, offset either Z or +HH:MM / -HH:MM.
_TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(Z|[+-]\d{2}:\d{2})")
_PARSE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def parse_timestamp(value: str | None) -> datetime:
    """
    Decode a stored timestamp into an aware UTC ``datetime``.

    Blank values decode to ``ZERO_TIME``.  Anything else that is not an
    RFC3339 timestamp raises ``ParseFailure``.
    """
    if value is None or not value.strip():
        return ZERO_TIME
    if not _TIMESTAMP_RE.fullmatch(value):
        raise ParseFailure(f"parse timestamp {value!r}: expected YYYY-MM-DDTHH:MM:SSZ")
    try:
        parsed = datetime.strptime(value, _PARSE_FORMAT)
    except ValueError as exc:
        raise ParseFailure(f"parse timestamp {value!r}: {exc}") from exc
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Encode *value* in the stored format; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)

#!/usr/bin/env python3
"""
Utility functions for the feed archiving pipeline.

Shared helpers used by the fetcher, normalizer, store and task layers:
content hashing, cache file naming, list/boolean coercion for columns that
SQLite stores as text or integers, and date parsing.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from hashlib import sha256
from time import time
from calendar import timegm
from typing import Any, Iterable, List, Optional, Union

from feedparser.datetimes import _parse_date as _feedparser_parse_date

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


def sha256_hex(data: Union[bytes, str]) -> str:
    """Return the lowercase hex SHA-256 digest of bytes or UTF-8 text."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return sha256(data).hexdigest()


def cache_filename(request_url: str, timestamp: Union[int, str]) -> str:
    """Blob key for a feed file: derived from the request URL hash and fetch timestamp."""
    return f"cached-file-{sha256_hex(request_url)}-{timestamp}.rss"


def now_ts() -> int:
    return int(time())


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def as_bool(value: Any) -> bool:
    """Coerce SQLite integers and text flags into booleans."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def as_string_list(value: Union[str, Iterable[str], None]) -> List[str]:
    """Split a comma-joined column into a list of trimmed, non-empty strings."""
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(",")
    else:
        parts = list(value)
    return [part.strip() for part in parts if part and part.strip()]


def join_string_list(values: Iterable[str]) -> str:
    return ",".join(v.strip() for v in values if v and v.strip())


def as_optional_int(value: Any) -> Optional[int]:
    """Best-effort integer conversion for numeric feed fields ("12", "12.0")."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None


def _parse_with_feedparser(date_str: str) -> Optional[int]:
    try:
        time_struct = _feedparser_parse_date(date_str)
        if time_struct:
            # feedparser normalizes to UTC struct_time
            return int(timegm(time_struct))
    except (ValueError, TypeError, AttributeError, OverflowError):
        return None
    return None


def _parse_with_email_utils(date_str: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(date_str)
        if dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
    except (TypeError, ValueError, OverflowError):
        return None
    return None


def _parse_with_custom_formats(date_str: str) -> Optional[int]:
    custom_formats = [
        "%d %b %Y %H:%M:%S %z",
        "%d %b %Y %H:%M:%S %Z",
        "%d %b %Y %H:%M:%S",
        "%Y-%m-%d",
    ]
    for fmt in custom_formats:
        try:
            dt = datetime.strptime(date_str, fmt)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        except (ValueError, TypeError):
            continue
    return None


def parse_date(value: Any) -> Optional[int]:
    """Convert a feed date (RFC 822, ISO 8601, epoch number) to Unix seconds.

    Tries feedparser's date handlers first, then email.utils and a handful of
    fixed formats. Returns None when nothing matches.
    """
    if value in (None, ''):
        return None

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None

    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    date_str = str(value).strip()
    if not date_str:
        return None

    for parser in (_parse_with_feedparser, _parse_with_email_utils, _parse_with_custom_formats):
        timestamp = parser(date_str)
        if timestamp is not None:
            return timestamp

    logger.debug(f"Unparseable date value: {date_str!r}")
    return None


def format_timestamp(timestamp: Optional[int]) -> str:
    """Return a human-readable UTC timestamp for diagnostics."""
    if timestamp in (None, ""):
        return "n/a"
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
    except (OSError, OverflowError, ValueError, TypeError):
        return str(timestamp)

#!/usr/bin/env python3
"""
Archive backfill planning against a Wayback-style snapshot index.

The index can hold thousands of captures of a feed URL. Planning picks a
small representative subset: roughly one capture per sampling interval,
always the first and last, and both sides of every gap longer than the
interval.
"""

from asyncio import TimeoutError
from calendar import timegm
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from telemetry import trace_span

# Module-specific logger
logger = get_logger("archive")

ONE_DAY_MS = 24 * 60 * 60 * 1000
THIRTY_DAYS_MS = 30 * ONE_DAY_MS


@dataclass(frozen=True)
class Snapshot:
    """One capture listed by the archive index."""

    timestamp: int
    original: str
    digest: str = ""


def wayback_timestamp_to_ms(timestamp) -> int:
    """Convert a YYYYMMDD[HHMMSS] archive timestamp to epoch milliseconds (UTC).

    Missing hour, minute or second components count as zero.
    """
    s = str(timestamp).strip()
    if len(s) < 8 or not s.isdigit():
        raise ValueError(f"Invalid archive timestamp: {timestamp!r}")
    s = s[:14].ljust(14, "0")
    fields = (int(s[0:4]), int(s[4:6]), int(s[6:8]), int(s[8:10]), int(s[10:12]), int(s[12:14]))
    # Validates ranges (month 13, hour 25 ...)
    datetime(*fields, tzinfo=timezone.utc)
    return timegm(fields + (0, 0, 0)) * 1000


def select_snapshots(snapshots: Sequence[Snapshot], interval_ms: float) -> List[Snapshot]:
    """Pick a representative subset of snapshots sorted ascending by timestamp."""
    if not snapshots:
        return []
    if len(snapshots) == 1:
        return [snapshots[0]]

    times = [wayback_timestamp_to_ms(s.timestamp) for s in snapshots]
    selected = {0, len(snapshots) - 1}

    last_selected = 0
    for i in range(1, len(snapshots)):
        if times[i] - times[last_selected] >= interval_ms:
            selected.add(i)
            last_selected = i

    # Bridge long gaps from both sides
    for i in range(1, len(snapshots)):
        if times[i] - times[i - 1] > interval_ms:
            selected.add(i - 1)
            selected.add(i)

    return [snapshots[i] for i in sorted(selected)]


def estimate_interval_ms(fetch_times: Sequence[int], item_date_range: Optional[Tuple[int, int]] = None) -> float:
    """Sampling interval from observed cadence, clamped to [1 day, 30 days].

    Args:
        fetch_times: FeedFile fetch timestamps (Unix seconds), ascending.
        item_date_range: (earliest, latest) item publish dates in Unix seconds.
    """
    if len(fetch_times) >= 2:
        gaps = [(b - a) * 1000 for a, b in zip(fetch_times, fetch_times[1:])]
        interval = sum(gaps) / len(gaps) / 2
    elif item_date_range:
        earliest, latest = item_date_range
        interval = (latest - earliest) * 1000 / 2
    else:
        interval = THIRTY_DAYS_MS
    return max(ONE_DAY_MS, min(THIRTY_DAYS_MS, interval))


def wayback_snapshot_url(timestamp, original: str) -> str:
    """URL of the raw captured bytes (the id_ flag disables archive rewriting)."""
    return f"{config.ARCHIVE_SNAPSHOT_BASE_URL}/{timestamp}id_/{original}"


def archive_query_params(url: str, from_year: Optional[int] = None) -> List[Tuple[str, str]]:
    if from_year is None:
        from_year = datetime.now(timezone.utc).year - config.ARCHIVE_LOOKBACK_YEARS
    return [
        ("url", url),
        ("matchType", "prefix"),
        ("output", "json"),
        ("fl", "timestamp,original,digest"),
        ("from", str(from_year)),
        ("filter", "statuscode:200"),
        ("collapse", "timestamp:8"),
        ("collapse", "digest"),
    ]


def parse_archive_rows(rows) -> List[Snapshot]:
    """Turn index JSON rows into snapshots; the first row is the column header."""
    snapshots: List[Snapshot] = []
    if not isinstance(rows, list):
        return snapshots
    for row in rows[1:]:
        if not isinstance(row, list) or len(row) < 2:
            continue
        try:
            timestamp = int(row[0])
            wayback_timestamp_to_ms(timestamp)
        except (TypeError, ValueError):
            logger.debug(f"Skipping archive row with bad timestamp: {row!r}")
            continue
        digest = row[2] if len(row) > 2 else ""
        snapshots.append(Snapshot(timestamp=timestamp, original=row[1], digest=digest))
    snapshots.sort(key=lambda s: wayback_timestamp_to_ms(s.timestamp))
    return snapshots


@trace_span(
    "archive.fetch_archive_list",
    tracer_name="archive",
    attr_from_args=lambda url, session, **kwargs: {"feed.url": url},
)
async def fetch_archive_list(url: str, session: ClientSession) -> List[Snapshot]:
    """Query the snapshot index for successful captures of a URL."""
    try:
        async with session.get(
            config.ARCHIVE_INDEX_URL,
            params=archive_query_params(url),
            headers={"Accept": "application/json", "User-Agent": config.USER_AGENT},
            timeout=ClientTimeout(total=config.HTTP_TIMEOUT * 2),
        ) as response:
            if response.status != 200:
                logger.warning(f"Archive index returned HTTP {response.status} for {url}")
                return []
            try:
                rows = await response.json(content_type=None)
            except ValueError:
                logger.info(f"Archive index returned no JSON for {url}")
                return []
    except (ClientError, TimeoutError) as e:
        logger.warning(f"Archive index request failed for {url}: {e.__class__.__name__} {e}")
        return []

    snapshots = parse_archive_rows(rows)
    logger.info(f"Archive index lists {len(snapshots)} snapshot(s) for {url}")
    return snapshots

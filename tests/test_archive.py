from datetime import datetime, timezone

import pytest
from aiohttp import ClientConnectionError

from archive import (
    ONE_DAY_MS, THIRTY_DAYS_MS, Snapshot,
    archive_query_params, estimate_interval_ms, fetch_archive_list, parse_archive_rows,
    select_snapshots, wayback_snapshot_url, wayback_timestamp_to_ms,
)
from config import config

from feed_fixtures import FakeResponse, FakeSession


def ms(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def snap(timestamp):
    return Snapshot(timestamp=timestamp, original="https://example.com/feed", digest=str(timestamp))


# Timestamp conversion

@pytest.mark.parametrize("timestamp,expected", [
    (20230615083045, ms(2023, 6, 15, 8, 30, 45)),
    (20230101, ms(2023, 1, 1)),
    (20200301000000, ms(2020, 3, 1)),
    (20231231235959, ms(2023, 12, 31, 23, 59, 59)),
    ("2023061508", ms(2023, 6, 15, 8)),
])
def test_wayback_timestamp_to_ms(timestamp, expected):
    assert wayback_timestamp_to_ms(timestamp) == expected


@pytest.mark.parametrize("bad", ["2023", "abcdefgh", 20231301, 20230132])
def test_invalid_wayback_timestamps(bad):
    with pytest.raises(ValueError):
        wayback_timestamp_to_ms(bad)


# Snapshot selection

def test_no_snapshots_selects_nothing():
    assert select_snapshots([], ONE_DAY_MS) == []


def test_single_snapshot_is_selected():
    only = snap(20230101000000)
    assert select_snapshots([only], ONE_DAY_MS) == [only]


def test_long_interval_keeps_first_and_last():
    snapshots = [snap(20230101000000), snap(20230102000000), snap(20230103000000), snap(20230104000000)]

    selected = select_snapshots(snapshots, 365 * ONE_DAY_MS)

    assert selected == [snapshots[0], snapshots[-1]]


def test_daily_snapshots_sampled_every_two_days():
    snapshots = [snap(20230101000000 + day * 1000000) for day in range(5)]

    selected = select_snapshots(snapshots, 2 * ONE_DAY_MS)

    assert selected == [snapshots[0], snapshots[2], snapshots[4]]


def test_both_sides_of_a_gap_are_selected():
    snapshots = [snap(20230101000000), snap(20230102000000), snap(20230201000000), snap(20230202000000)]

    selected = select_snapshots(snapshots, 7 * ONE_DAY_MS)

    assert selected == snapshots


def test_selection_is_sorted_and_unique():
    snapshots = [snap(20230101000000 + day * 1000000) for day in range(9)]

    selected = select_snapshots(snapshots, 3 * ONE_DAY_MS)
    times = [s.timestamp for s in selected]

    assert times == sorted(set(times))
    assert selected[0] is snapshots[0]
    assert selected[-1] is snapshots[-1]


# Interval estimation

def test_interval_is_half_the_mean_fetch_gap():
    day = 24 * 60 * 60
    fetch_times = [0, 4 * day, 8 * day, 12 * day]

    assert estimate_interval_ms(fetch_times) == 2 * ONE_DAY_MS


def test_interval_from_item_dates_when_few_fetches():
    day = 24 * 60 * 60

    assert estimate_interval_ms([5], (0, 20 * day)) == 10 * ONE_DAY_MS


def test_interval_defaults_and_clamps():
    day = 24 * 60 * 60

    assert estimate_interval_ms([]) == THIRTY_DAYS_MS
    assert estimate_interval_ms([0, 60]) == ONE_DAY_MS
    assert estimate_interval_ms([0, 400 * day]) == THIRTY_DAYS_MS
    assert estimate_interval_ms([], (0, 0)) == ONE_DAY_MS


# Index queries

def test_snapshot_url_requests_raw_capture(monkeypatch):
    monkeypatch.setattr(config, "ARCHIVE_SNAPSHOT_BASE_URL", "https://web.archive.org/web")

    assert wayback_snapshot_url(20230101000000, "https://example.com/feed") == \
        "https://web.archive.org/web/20230101000000id_/https://example.com/feed"


def test_query_params_filter_and_collapse():
    params = archive_query_params("https://example.com/feed", from_year=2010)

    assert ("url", "https://example.com/feed") in params
    assert ("from", "2010") in params
    assert ("filter", "statuscode:200") in params
    assert ("collapse", "timestamp:8") in params
    assert ("collapse", "digest") in params
    assert ("fl", "timestamp,original,digest") in params


def test_archive_rows_skip_header_and_bad_rows():
    rows = [
        ["timestamp", "original", "digest"],
        ["20230301000000", "https://example.com/feed", "CCC"],
        ["not-a-date", "https://example.com/feed", "XXX"],
        ["20230101000000", "https://example.com/feed", "AAA"],
        ["20230201"],
    ]

    snapshots = parse_archive_rows(rows)

    assert [s.timestamp for s in snapshots] == [20230101000000, 20230301000000]
    assert snapshots[0].digest == "AAA"


@pytest.mark.asyncio
async def test_fetch_archive_list(monkeypatch):
    monkeypatch.setattr(config, "ARCHIVE_INDEX_URL", "https://index.example.com/cdx")
    rows = [
        ["timestamp", "original", "digest"],
        ["20230101000000", "https://example.com/feed", "AAA"],
        ["20230105000000", "https://example.com/feed", "BBB"],
    ]
    session = FakeSession({"https://index.example.com/cdx": FakeResponse(json_data=rows)})

    snapshots = await fetch_archive_list("https://example.com/feed", session)

    assert [s.digest for s in snapshots] == ["AAA", "BBB"]
    _, kwargs = session.requests[0]
    assert ("url", "https://example.com/feed") in kwargs["params"]


@pytest.mark.asyncio
async def test_fetch_archive_list_failures_return_empty(monkeypatch):
    monkeypatch.setattr(config, "ARCHIVE_INDEX_URL", "https://index.example.com/cdx")

    unavailable = FakeSession({"https://index.example.com/cdx": FakeResponse(status=503)})
    broken = FakeSession({"https://index.example.com/cdx": ClientConnectionError("reset")})
    empty = FakeSession({"https://index.example.com/cdx": FakeResponse(body=b"")})

    assert await fetch_archive_list("https://example.com/feed", unavailable) == []
    assert await fetch_archive_list("https://example.com/feed", broken) == []
    assert await fetch_archive_list("https://example.com/feed", empty) == []

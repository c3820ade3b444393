import pytest

from entities import (
    DEFERRED, FEED_ITEM_POLICY, FEED_POLICY, Feed, FeedFile, FeedItem, FeedSource, UpsertPolicy,
)
from errors import PersistenceError
from models import FeedDatabase, build_upsert

from feed_fixtures import open_store


def make_feed(guid="feed-1", **overrides):
    values = dict(
        guid=guid, input_url="https://example.com/", source_url="https://example.com/feed",
        title="Example", type="podcast",
    )
    values.update(overrides)
    return Feed(**values)


def make_item(guid="item-1", feed_guid="feed-1", **overrides):
    values = dict(guid=guid, feed_guid=feed_guid, title="Episode", date=1000)
    values.update(overrides)
    return FeedItem(**values)


def test_build_upsert_update_excludes_protected_columns():
    sql, values = build_upsert("feeds", "guid", {"guid": "g", "title": "t", "alias": "a"}, FEED_POLICY)

    assert "ON CONFLICT(guid) DO UPDATE SET title = excluded.title" in sql
    assert "alias = excluded.alias" not in sql
    assert values == ["g", "t", "a"]


def test_build_upsert_ignore_policy():
    sql, _ = build_upsert("feed_items", "guid", {"guid": "g", "title": "t"}, DEFERRED)

    assert sql.endswith("ON CONFLICT DO NOTHING")


def test_update_policy_with_everything_excluded_does_nothing_on_conflict():
    policy = UpsertPolicy("update", frozenset({"title"}))

    sql, _ = build_upsert("feeds", "guid", {"guid": "g", "title": "t"}, policy)

    assert sql.endswith("ON CONFLICT DO NOTHING")


@pytest.mark.asyncio
async def test_feed_reingestion_preserves_user_fields(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        await db.execute("upsert_feed", feed=make_feed(alias="My alias", categories=("news",)))
        await db.execute("update_feed_categories", guid="feed-1", categories=["tech", "daily"])

        stored = await db.execute("upsert_feed", feed=make_feed(
            title="Renamed upstream", alias="", active=False, categories=(), input_url="https://other.example/",
        ))

        assert stored.title == "Renamed upstream"
        assert stored.alias == "My alias"
        assert stored.active is True
        assert stored.categories == ("tech", "daily")
        assert stored.input_url == "https://example.com/"


@pytest.mark.asyncio
async def test_item_reingestion_preserves_user_state(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        await db.execute("upsert_feed", feed=make_feed())
        await db.execute("upsert_feed_item", item=make_item())
        await db.execute("update_feed_item_state", guid="item-1", finished=True, progress=0.5, bookmarked=True)

        stored = await db.execute("upsert_feed_item", item=make_item(title="Edited title"), policy=FEED_ITEM_POLICY)

        assert stored.title == "Edited title"
        assert stored.finished is True
        assert stored.progress == 0.5
        assert stored.bookmarked is True


@pytest.mark.asyncio
async def test_deferred_policy_never_overwrites(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        await db.execute("upsert_feed", feed=make_feed())
        await db.execute("upsert_feed_item", item=make_item(title="Live title"))

        stored = await db.execute("upsert_feed_item", item=make_item(title="Archived title"), policy=DEFERRED)
        added = await db.execute("upsert_feed_item", item=make_item(guid="item-old", title="Old"), policy=DEFERRED)

        assert stored.title == "Live title"
        assert added.title == "Old"


@pytest.mark.asyncio
async def test_feed_file_rows_are_unique_per_hash(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        await db.execute("upsert_feed", feed=make_feed())
        for url in ("https://a.example/feed", "https://b.example/feed"):
            await db.execute("upsert_feed_source", source=FeedSource(feed_url=url, feed_guid="feed-1"))

        first = await db.execute("insert_feed_file", feed_file=FeedFile(
            sha256_hash="abc", feed_url="https://a.example/feed", feed_guid="feed-1",
            fetched_at=100, cached_file="a.rss",
        ))
        second = await db.execute("insert_feed_file", feed_file=FeedFile(
            sha256_hash="abc", feed_url="https://b.example/feed", feed_guid="feed-1",
            fetched_at=200, cached_file="b.rss",
        ))

        assert first is True
        assert second is False
        assert await db.execute("count_feed_files") == 1
        stored = await db.execute("get_feed_file", sha256_hash="abc")
        assert stored.feed_url == "https://a.example/feed"
        assert await db.execute("get_feed_file_by_source", feed_url="https://a.example/feed", fetched_at=100) == stored


@pytest.mark.asyncio
async def test_updatable_sources_exclude_archives(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        await db.execute("upsert_feed", feed=make_feed())
        await db.execute("upsert_feed_source", source=FeedSource("https://live.example/feed", "feed-1"))
        await db.execute("upsert_feed_source", source=FeedSource(
            "https://web.archive.org/web/2020id_/https://live.example/feed", "feed-1",
            actively_updating=False, archive=True,
        ))
        await db.execute("upsert_feed_source", source=FeedSource(
            "https://stale.example/feed", "feed-1", actively_updating=False,
        ))

        updatable = await db.execute("list_updatable_feed_sources", feed_guid="feed-1")
        every = await db.execute("list_feed_sources", feed_guid="feed-1")

        assert [s.feed_url for s in updatable] == ["https://live.example/feed"]
        assert all(s.pollable for s in updatable)
        assert len(every) == 3


@pytest.mark.asyncio
async def test_active_feed_listing_flags(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        await db.execute("upsert_feed", feed=make_feed("recent"))
        await db.execute("upsert_feed", feed=make_feed("older"))
        await db.execute("upsert_feed", feed=make_feed("hidden", active=False))
        await db.execute("upsert_feed_item", item=make_item("r1", "recent", date=2000))
        await db.execute("upsert_feed_item", item=make_item("o1", "older", date=1000))
        await db.execute("update_feed_item_state", guid="o1", finished=True)
        await db.execute("upsert_feed_source", source=FeedSource(
            "https://archive.example/older", "older", actively_updating=False, archive=True,
        ))

        listing = await db.execute("list_active_feeds")

        assert [entry["feed"].guid for entry in listing] == ["recent", "older"]
        assert listing[0]["has_unread"] is True
        assert listing[0]["has_archives"] is False
        assert listing[1]["has_unread"] is False
        assert listing[1]["has_archives"] is True


@pytest.mark.asyncio
async def test_item_listing_filters_and_pages(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        await db.execute("upsert_feed", feed=make_feed())
        for index in range(5):
            await db.execute("upsert_feed_item", item=make_item(f"i{index}", date=1000 + index))
        await db.execute("update_feed_item_state", guid="i4", finished=True)

        newest = await db.execute("list_feed_items", feed_guid="feed-1", limit=2)
        oldest = await db.execute("list_feed_items", sort_order="asc", limit=2, offset=1)
        everything = await db.execute("list_feed_items", include_finished=True, limit=10)

        assert [i.guid for i in newest] == ["i3", "i2"]
        assert [i.guid for i in oldest] == ["i1", "i2"]
        assert len(everything) == 5
        assert await db.execute("get_feed_item_date_range", feed_guid="feed-1") == (1000, 1004)


@pytest.mark.asyncio
async def test_category_and_state_validation(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        await db.execute("upsert_feed", feed=make_feed())
        await db.execute("upsert_feed_item", item=make_item())

        with pytest.raises(ValueError):
            await db.execute("update_feed_categories", guid="feed-1", categories=["a,b"])
        with pytest.raises(ValueError):
            await db.execute("update_feed_item_state", guid="item-1", progress=1.5)
        with pytest.raises(ValueError):
            await db.execute("update_feed_item_state", guid="item-1", title="nope")

        assert await db.execute("update_feed_item_state", guid="item-1") is False
        assert await db.execute("update_feed_item_state", guid="missing", finished=True) is False


@pytest.mark.asyncio
async def test_deleting_a_feed_cascades(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        await db.execute("upsert_feed", feed=make_feed())
        await db.execute("upsert_feed_source", source=FeedSource("https://a.example/feed", "feed-1"))
        await db.execute("insert_feed_file", feed_file=FeedFile("abc", "https://a.example/feed", "feed-1", 1, "a.rss"))
        await db.execute("upsert_feed_item", item=make_item())

        db.conn.execute("DELETE FROM feeds WHERE guid = ?", ("feed-1",))
        db.conn.commit()

        assert await db.execute("list_feed_sources", feed_guid="feed-1") == []
        assert await db.execute("count_feed_files") == 0
        assert await db.execute("count_feed_items") == 0


@pytest.mark.asyncio
async def test_store_errors_are_surfaced(tmp_path, monkeypatch):
    async with open_store(tmp_path, monkeypatch) as (db, _):
        # Source for a feed that does not exist violates the foreign key
        with pytest.raises(PersistenceError):
            await db.execute("upsert_feed_source", source=FeedSource("https://a.example/feed", "missing"))
        with pytest.raises(ValueError):
            await db.execute("no_such_operation")
        with pytest.raises(ValueError):
            await db.execute("_upsert", entity=make_feed(), policy=FEED_POLICY)


@pytest.mark.asyncio
async def test_unopenable_database_raises(tmp_path):
    db = FeedDatabase(str(tmp_path / "missing-dir" / "feeds.db"))

    with pytest.raises(PersistenceError):
        await db.start()

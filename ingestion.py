#!/usr/bin/env python3
"""
Turning fetched feed content into stored entities.

Resolution order for one ingestion pass: Feed by channel guid, FeedSource by
request URL, FeedFile by content hash, then every parsed item. All writes are
conditional upserts, so running the same pass twice (at-least-once delivery)
leaves the store unchanged.

Raw bytes go to the blob store under a key derived from the request URL and
fetch time. The metadata row and the blob are written independently; when
only one of them lands a PartialPersistenceError reports which. Items are
stored before the feed file, so a content hash counts as ingested only once
its row and blob both exist; anything less is processed again on the next
fetch of the same bytes.
"""

import asyncio
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from aiohttp import ClientSession

from blob_store import BlobStore
from config import get_logger
from entities import (
    Feed, FeedFile, FeedItem, FeedSource, UpsertPolicy,
    FEED_ITEM_POLICY, FEED_POLICY,
)
from errors import FetchError, IngestionError, MalformedFeedError, PartialPersistenceError, PersistenceError
from fetcher import FeedFetcher, FetchSuccess, REASON_BOT_PROTECTION, REASON_NO_FEED_LINK
from normalizer import ParsedChannel, ParsedFeed, ParsedItem, parse_feed
from tasks import PlanFeedArchivesTask, RefreshFeedTask, TaskQueue
from telemetry import trace_span
from utils import cache_filename, validate_url

# Module-specific logger
logger = get_logger("ingestion")

USER_MESSAGES = {
    REASON_BOT_PROTECTION: "URL is protected by bot detection. Try providing the direct RSS feed URL instead.",
    REASON_NO_FEED_LINK: "No RSS feed found at the provided URL.",
}
DEFAULT_USER_MESSAGE = "Provided URL was not accessible."
STORAGE_USER_MESSAGE = "The feed could not be saved. Please try again later."


def user_message_for(reason: str) -> str:
    return USER_MESSAGES.get(reason, DEFAULT_USER_MESSAGE)


@dataclass(frozen=True)
class FeedFileStatus:
    """Whether both halves of a stored feed file exist."""

    sha256_hash: str
    metadata_stored: bool
    blob_stored: bool

    @property
    def complete(self) -> bool:
        return self.metadata_stored and self.blob_stored


@dataclass(frozen=True)
class SubscribeResult:
    status: str  # "created", "linked" or "refreshing"
    feed_guid: str
    items_stored: int = 0


def feed_from_channel(channel: ParsedChannel, input_url: str, guid: Optional[str] = None) -> Feed:
    return Feed(
        guid=guid or channel.guid,
        input_url=input_url,
        source_url=channel.source_url,
        title=channel.title,
        type="podcast" if channel.type == "podcast" else "blog",
        description=channel.description,
        author=channel.author,
        ongoing=True,
        active=True,
        image_src=channel.image_src,
        image_alt=channel.image_alt,
        last_updated=channel.last_updated,
        link=channel.link,
        categories=channel.categories,
    )


def live_source(feed_guid: str, fetch: FetchSuccess, channel: Optional[ParsedChannel] = None) -> FeedSource:
    return FeedSource(
        feed_url=fetch.request_url,
        feed_guid=feed_guid,
        actively_updating=True,
        archive=False,
        primary_source=False,
        last_fetched=fetch.timestamp,
        last_updated=channel.last_updated if channel else fetch.timestamp,
    )


def feed_file_for(source: FeedSource, fetch: FetchSuccess, fetched_at: Optional[int] = None,
                  key_timestamp=None) -> FeedFile:
    fetched_at = fetched_at if fetched_at is not None else fetch.timestamp
    return FeedFile(
        sha256_hash=fetch.content_hash,
        feed_url=source.feed_url,
        feed_guid=source.feed_guid,
        fetched_at=fetched_at,
        cached_file=cache_filename(fetch.request_url, key_timestamp if key_timestamp is not None else fetched_at),
    )


def item_from_parsed(feed_guid: str, parsed: ParsedItem) -> FeedItem:
    return FeedItem(
        guid=parsed.guid,
        feed_guid=feed_guid,
        title=parsed.title,
        season=parsed.season,
        episode=parsed.episode,
        description=parsed.description,
        link=parsed.link,
        date=parsed.date,
        enclosure_url=parsed.enclosure_url,
        enclosure_length=parsed.enclosure_length,
        enclosure_type=parsed.enclosure_type,
        duration=parsed.duration,
        duration_unit=parsed.duration_unit,
        encoded_content=parsed.encoded_content,
        keywords=parsed.keywords,
        finished=False,
        progress=0.0,
        bookmarked=False,
    )


class FeedIngestor:
    """Persists fetched and parsed feeds through the relational and blob stores."""

    def __init__(self, db, blobs: BlobStore):
        self.db = db
        self.blobs = blobs

    async def persist_feed_file(self, feed_file: FeedFile, content: bytes) -> bool:
        """Store a feed file row and its raw bytes.

        Returns True when the content hash was new. Bytes are written only for
        a new hash (or to repair a missing blob of an existing one).

        Raises:
            PartialPersistenceError: exactly one of row and blob was stored.
            PersistenceError: neither could be stored.
        """
        metadata_error: Optional[Exception] = None
        inserted = False
        blob_key = feed_file.cached_file
        try:
            inserted = await self.db.execute("insert_feed_file", feed_file=feed_file)
            if not inserted:
                existing = await self.db.execute("get_feed_file", sha256_hash=feed_file.sha256_hash)
                if existing:
                    blob_key = existing.cached_file
        except PersistenceError as e:
            logger.error(f"Failed to store feed file row {feed_file.sha256_hash}: {e}")
            metadata_error = e

        blob_error: Optional[Exception] = None
        try:
            if inserted or metadata_error is not None or not await self.blobs.exists(blob_key):
                await self.blobs.put(blob_key, content)
        except PersistenceError as e:
            logger.error(f"Failed to store blob {blob_key}: {e}")
            blob_error = e

        if metadata_error and blob_error:
            raise PersistenceError(f"Feed file {feed_file.sha256_hash} not stored: {metadata_error}; {blob_error}")
        if metadata_error or blob_error:
            raise PartialPersistenceError(
                f"Feed file {feed_file.sha256_hash} partially stored: {metadata_error or blob_error}",
                metadata_stored=metadata_error is None,
                blob_stored=blob_error is None,
            )
        if not inserted:
            logger.info(f"Feed file {feed_file.sha256_hash[:12]} already stored")
        return inserted

    async def verify_feed_file(self, sha256_hash: str) -> FeedFileStatus:
        feed_file = await self.db.execute("get_feed_file", sha256_hash=sha256_hash)
        if feed_file is None:
            return FeedFileStatus(sha256_hash, metadata_stored=False, blob_stored=False)
        return FeedFileStatus(
            sha256_hash,
            metadata_stored=True,
            blob_stored=await self.blobs.exists(feed_file.cached_file),
        )

    async def is_ingested(self, sha256_hash: str) -> bool:
        status = await self.verify_feed_file(sha256_hash)
        if status.metadata_stored and not status.blob_stored:
            logger.warning(f"Feed file {sha256_hash[:12]} has no stored blob, processing it again")
        return status.complete

    async def upsert_items(self, feed_guid: str, items: Iterable[ParsedItem],
                           policy: UpsertPolicy = FEED_ITEM_POLICY) -> Tuple[int, int]:
        """Upsert items one by one; a failing item does not stop its siblings.

        Returns (stored, failed) counts.
        """
        stored = failed = 0
        for parsed in items:
            try:
                await self.db.execute("upsert_feed_item", item=item_from_parsed(feed_guid, parsed), policy=policy)
                stored += 1
            except PersistenceError as e:
                failed += 1
                logger.warning(f"Failed to store item {parsed.guid!r} of feed {feed_guid}: {e}")
        return stored, failed

    async def refresh_feed_metadata(self, feed: Feed, channel: ParsedChannel) -> Feed:
        """Track upstream editorial fields; user-owned fields survive via the feed policy."""
        updated = feed_from_channel(channel, feed.input_url, guid=feed.guid)
        return await self.db.execute("upsert_feed", feed=updated, policy=FEED_POLICY)

    @trace_span(
        "ingestion.ingest_source_fetch",
        tracer_name="ingestion",
        attr_from_args=lambda self, feed, source, fetch: {"feed.guid": feed.guid, "feed.url": source.feed_url},
    )
    async def ingest_source_fetch(self, feed: Feed, source: FeedSource, fetch: FetchSuccess) -> int:
        """Ingest a fresh fetch of a live source; returns the number of items stored.

        Unchanged content (a fully stored hash) stores nothing.

        Raises:
            MalformedFeedError: the content is not a feed.
            PersistenceError: the feed file could not be stored.
        """
        if await self.is_ingested(fetch.content_hash):
            logger.info(f"No changes at {source.feed_url}")
            await self.db.execute("mark_feed_source_fetched", feed_url=source.feed_url, fetched_at=fetch.timestamp)
            return 0

        parsed = await asyncio.to_thread(parse_feed, fetch.content)
        stored, failed = await self.upsert_items(feed.guid, parsed.items)
        await self.persist_feed_file(feed_file_for(source, fetch), fetch.content)
        await self.refresh_feed_metadata(feed, parsed.channel)
        await self.db.execute(
            "mark_feed_source_fetched", feed_url=source.feed_url, fetched_at=fetch.timestamp, updated=True
        )
        logger.info(f"Stored {stored} item(s) from {source.feed_url} ({failed} failed)")
        return stored

    @trace_span(
        "ingestion.subscribe",
        tracer_name="ingestion",
        attr_from_args=lambda self, input_url, *args, **kwargs: {"feed.input_url": input_url},
    )
    async def subscribe(self, input_url: str, fetcher: FeedFetcher, session: ClientSession,
                        tasks: TaskQueue) -> SubscribeResult:
        """Add a feed from a user-supplied URL.

        Raises:
            IngestionError: with a user-facing message when no feed can be
                loaded or the new feed could not be stored.
        """
        input_url = (input_url or "").strip()
        if not validate_url(input_url):
            raise IngestionError(DEFAULT_USER_MESSAGE)

        result = await fetcher.fetch(input_url, session)
        if not result.ok:
            raise IngestionError(user_message_for(result.reason)) from FetchError(result.reason, result.url or input_url)

        existing_source = await self.db.execute("get_feed_source", feed_url=result.request_url)
        if existing_source:
            await tasks.send(RefreshFeedTask(existing_source.feed_guid))
            await tasks.send(PlanFeedArchivesTask(existing_source.feed_guid))
            logger.info(f"Feed already exists for {result.request_url}, refreshing {existing_source.feed_guid}")
            return SubscribeResult("refreshing", existing_source.feed_guid)

        try:
            parsed: ParsedFeed = await asyncio.to_thread(parse_feed, result.content)
        except MalformedFeedError as e:
            logger.info(f"Content at {result.request_url} is not a feed: {e}")
            raise IngestionError(USER_MESSAGES[REASON_NO_FEED_LINK]) from e

        try:
            feed = None
            existing_file = await self.db.execute("get_feed_file", sha256_hash=result.content_hash)
            if existing_file:
                # Same bytes already known under another URL: this is a mirror of that feed
                feed = await self.db.execute("get_feed", guid=existing_file.feed_guid)
            if feed is None:
                feed = await self.db.execute("get_feed", guid=parsed.channel.guid)
            status = "linked"
            if feed is None:
                feed = await self.db.execute("upsert_feed", feed=feed_from_channel(parsed.channel, input_url))
                status = "created"
                logger.info(f"Created feed {feed.guid} ({feed.title}) from {input_url}")

            source = await self.db.execute("upsert_feed_source", source=live_source(feed.guid, result, parsed.channel))
            stored, _ = await self.upsert_items(feed.guid, parsed.items)
            await self.persist_feed_file(feed_file_for(source, result), result.content)
        except PersistenceError as e:
            logger.error(f"Failed to store feed from {input_url}: {e}")
            raise IngestionError(STORAGE_USER_MESSAGE) from e

        await tasks.send(PlanFeedArchivesTask(feed.guid))
        return SubscribeResult(status, feed.guid, items_stored=stored)

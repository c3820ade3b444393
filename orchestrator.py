#!/usr/bin/env python3
"""
Task orchestrator: runs refresh, archive planning and snapshot fetch tasks.

Messages arrive at least once. Every handler is idempotent because all writes
are conditional upserts, and every delivered message is acknowledged whatever
the handler outcome; the next periodic refresh is the retry.
"""

import asyncio
from typing import List, Optional

from aiohttp import ClientSession

from archive import (
    estimate_interval_ms, fetch_archive_list, select_snapshots,
    wayback_snapshot_url, wayback_timestamp_to_ms,
)
from blob_store import BlobStore
from config import config, get_logger
from entities import DEFERRED, FeedSource
from errors import MalformedFeedError, PersistenceError
from fetcher import FeedFetcher
from ingestion import FeedIngestor, feed_file_for
from normalizer import parse_feed
from tasks import (
    FetchArchiveSnapshotTask, PlanFeedArchivesTask, RefreshFeedTask,
    Task, TaskMessage, TaskQueue,
)
from telemetry import trace_span

# Module-specific logger
logger = get_logger("orchestrator")


class TaskOrchestrator:
    """Dispatches ingestion tasks to the fetch, parse and store layers."""

    def __init__(self, db, blobs: BlobStore, tasks: TaskQueue, session: ClientSession,
                 fetcher: Optional[FeedFetcher] = None) -> None:
        self.db = db
        self.tasks = tasks
        self.session = session
        self.fetcher = fetcher or FeedFetcher()
        self.ingestor = FeedIngestor(db, blobs)

    @trace_span(
        "task.refresh_feed",
        tracer_name="orchestrator",
        attr_from_args=lambda self, feed_guid: {"feed.guid": feed_guid},
    )
    async def refresh_feed(self, feed_guid: str) -> int:
        """Poll every live source of a feed; returns the number of items stored."""
        feed = await self.db.execute("get_feed", guid=feed_guid)
        if feed is None:
            logger.warning(f"Refresh requested for unknown feed {feed_guid}")
            return 0

        sources = await self.db.execute("list_updatable_feed_sources", feed_guid=feed_guid)
        if not sources:
            logger.info(f"Feed {feed_guid} has no live sources to refresh")
            return 0

        semaphore = asyncio.Semaphore(config.FETCH_CONCURRENCY)

        async def refresh_source(source: FeedSource) -> int:
            async with semaphore:
                result = await self.fetcher.fetch(source.feed_url, self.session)
            if not result.ok:
                logger.info(f"Skipping source {source.feed_url}: {result.reason}")
                return 0
            try:
                return await self.ingestor.ingest_source_fetch(feed, source, result)
            except MalformedFeedError as e:
                logger.warning(f"Malformed feed at {source.feed_url}: {e}")
            except PersistenceError as e:
                logger.error(f"Failed to store content from {source.feed_url}: {e}")
            return 0

        results = await asyncio.gather(*(refresh_source(s) for s in sources), return_exceptions=True)
        stored = 0
        for source, result in zip(sources, results):
            if isinstance(result, Exception):
                logger.error(f"Refresh of {source.feed_url} failed: {result.__class__.__name__} {result}")
            else:
                stored += result
        logger.info(f"Refreshed feed {feed_guid}: {len(sources)} source(s), {stored} item(s) stored")
        return stored

    @trace_span(
        "task.plan_feed_archives",
        tracer_name="orchestrator",
        attr_from_args=lambda self, feed_guid: {"feed.guid": feed_guid},
    )
    async def plan_feed_archives(self, feed_guid: str) -> int:
        """Queue snapshot fetches for a feed's archive history; returns the number queued.

        A feed that already has an archive source has been planned before and
        is skipped.
        """
        sources = await self.db.execute("list_feed_sources", feed_guid=feed_guid)
        if any(source.archive for source in sources):
            logger.info(f"Archives already planned for feed {feed_guid}")
            return 0

        files = await self.db.execute("list_feed_files", feed_guid=feed_guid)
        date_range = await self.db.execute("get_feed_item_date_range", feed_guid=feed_guid)
        interval_ms = estimate_interval_ms([f.fetched_at for f in files], date_range)

        queued = 0
        for source in sources:
            snapshots = await fetch_archive_list(source.feed_url, self.session)
            selected = select_snapshots(snapshots, interval_ms)
            for snapshot in selected:
                await self.tasks.send(FetchArchiveSnapshotTask(
                    feed_guid=feed_guid,
                    feed_source_url=source.feed_url,
                    snapshot_url=wayback_snapshot_url(snapshot.timestamp, snapshot.original),
                    timestamp=snapshot.timestamp,
                ))
            queued += len(selected)
            logger.info(
                f"Planned {len(selected)} of {len(snapshots)} snapshot(s) for {source.feed_url} "
                f"(interval {interval_ms / 86400000:.1f} days)"
            )
        return queued

    @trace_span(
        "task.fetch_archive_snapshot",
        tracer_name="orchestrator",
        attr_from_args=lambda self, task: {"feed.guid": task.feed_guid, "archive.url": task.snapshot_url},
    )
    async def fetch_archive_snapshot(self, task: FetchArchiveSnapshotTask) -> int:
        """Fetch one archived capture and fill gaps in the feed's items.

        Archive content never overwrites anything written from a live source.
        """
        if await self.db.execute("get_feed", guid=task.feed_guid) is None:
            logger.warning(f"Snapshot task for unknown feed {task.feed_guid}")
            return 0

        result = await self.fetcher.fetch_raw(task.snapshot_url, self.session)
        if not result.ok:
            logger.info(f"Abandoning snapshot {task.snapshot_url}: {result.reason}")
            return 0

        try:
            parsed = await asyncio.to_thread(parse_feed, result.content)
        except MalformedFeedError as e:
            logger.info(f"Snapshot {task.snapshot_url} is not a feed: {e}")
            return 0

        if await self.ingestor.is_ingested(result.content_hash):
            logger.info(f"Snapshot {task.snapshot_url} duplicates stored content")
            return 0

        captured_at = wayback_timestamp_to_ms(task.timestamp) // 1000
        source = await self.db.execute("upsert_feed_source", source=FeedSource(
            feed_url=task.snapshot_url,
            feed_guid=task.feed_guid,
            actively_updating=False,
            archive=True,
            primary_source=False,
            last_fetched=captured_at,
            last_updated=captured_at,
        ), policy=DEFERRED)
        feed_file = feed_file_for(source, result, fetched_at=captured_at, key_timestamp=task.timestamp)
        stored, failed = await self.ingestor.upsert_items(task.feed_guid, parsed.items, policy=DEFERRED)
        await self.ingestor.persist_feed_file(feed_file, result.content)
        logger.info(f"Archived snapshot {task.snapshot_url}: {stored} item(s) offered ({failed} failed)")
        return stored

    async def dispatch(self, task: Task) -> None:
        if isinstance(task, RefreshFeedTask):
            await self.refresh_feed(task.feed_guid)
        elif isinstance(task, PlanFeedArchivesTask):
            await self.plan_feed_archives(task.feed_guid)
        elif isinstance(task, FetchArchiveSnapshotTask):
            await self.fetch_archive_snapshot(task)

    async def handle(self, message: TaskMessage) -> None:
        """Run one message and acknowledge it, whatever the outcome."""
        task = message.task
        try:
            if task is None:
                logger.error(f"Dropping task message {message.id} with unknown body: {message.body!r}")
            else:
                await self.dispatch(task)
        except Exception as e:
            logger.error(f"Task {message.id} ({task.type}) failed: {e.__class__.__name__} {e}")
        finally:
            await self.tasks.ack(message.id)
            logger.info(f"Acknowledged task {message.id} (attempt {message.attempts})")

    async def run_worker(self, once: bool = False) -> int:
        """Poll the task queue and handle messages.

        With once=True, returns as soon as the queue has nothing visible.
        Returns the number of messages handled.
        """
        handled = 0
        logger.info("Task worker started")
        while True:
            messages: List[TaskMessage] = await self.tasks.receive()
            for message in messages:
                await self.handle(message)
                handled += 1
            if not messages:
                if once:
                    break
                await asyncio.sleep(config.TASK_POLL_INTERVAL)
        logger.info(f"Task worker finished after {handled} message(s)")
        return handled

    async def enqueue_refresh_for_active_feeds(self) -> int:
        guids = await self.db.execute("list_active_feed_guids")
        for guid in guids:
            await self.tasks.send(RefreshFeedTask(guid))
        logger.info(f"Queued refresh for {len(guids)} active feed(s)")
        return len(guids)

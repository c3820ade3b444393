#!/usr/bin/env python3
"""
Feed Archiver command line.

Subscribes to feeds, refreshes them, plans and runs archive backfill through
the task queue, and manages the playback queue:

    python main.py subscribe https://example.com/blog
    python main.py import                # every feed listed in feeds.yaml
    python main.py refresh-all           # queue a refresh of every active feed
    python main.py worker --once         # drain the task queue
    python main.py queue list
    python main.py status
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession

from blob_store import BlobStore, create_blob_store
from config import config, get_logger
from errors import FeedArchiverError
from fetcher import FeedFetcher
from ingestion import FeedIngestor, SubscribeResult
from library import FeedLibrary
from models import FeedDatabase
from orchestrator import TaskOrchestrator
from playback_queue import DEFAULT_QUEUE, close_queues, get_queue
from tasks import PlanFeedArchivesTask, RefreshFeedTask, TaskQueue
from telemetry import init_telemetry, trace_span
from utils import format_timestamp

# Module-specific logger
logger = get_logger("main")


class FeedArchiver:
    """Owns the long-lived resources shared by every command."""

    def __init__(self) -> None:
        self.db: Optional[FeedDatabase] = None
        self.blobs: Optional[BlobStore] = None
        self.session: Optional[ClientSession] = None
        self.tasks: Optional[TaskQueue] = None
        self.fetcher = FeedFetcher()

    async def initialize(self) -> None:
        self.db = FeedDatabase()
        await self.db.start()
        self.blobs = create_blob_store()
        await self.blobs.initialize()
        self.session = ClientSession()
        self.tasks = TaskQueue(self.db)

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
        if self.blobs:
            await self.blobs.close()
        await close_queues()
        if self.db:
            await self.db.stop()

    @property
    def ingestor(self) -> FeedIngestor:
        return FeedIngestor(self.db, self.blobs)

    @property
    def orchestrator(self) -> TaskOrchestrator:
        return TaskOrchestrator(self.db, self.blobs, self.tasks, self.session, fetcher=self.fetcher)

    @property
    def library(self) -> FeedLibrary:
        return FeedLibrary(self.db)

    async def subscribe(self, url: str) -> SubscribeResult:
        return await self.ingestor.subscribe(url, self.fetcher, self.session, self.tasks)

    async def subscribe_all(self, urls) -> int:
        """Subscribe to each URL in turn; returns the number of failures."""
        failures = 0
        for url in urls:
            try:
                result = await self.subscribe(url)
                print(f"✅ {url}: {result.status} {result.feed_guid} ({result.items_stored} items)")
            except FeedArchiverError as e:
                failures += 1
                print(f"❌ {url}: {e}")
        return failures

    @trace_span("cli.import_feeds", tracer_name="main")
    async def import_feeds(self) -> int:
        """Subscribe to every feed in feeds.yaml; returns the number of failures."""
        failures = 0
        for slug, url in config.FEED_SOURCES.items():
            try:
                result = await self.subscribe(url)
                logger.info(f"{slug}: {result.status} ({result.feed_guid})")
            except FeedArchiverError as e:
                failures += 1
                logger.error(f"{slug}: {e}")
        return failures

    async def check_status(self) -> Dict[str, Any]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_feeds": len(await self.db.execute("list_active_feed_guids")),
            "feed_files": await self.db.execute("count_feed_files"),
            "feed_items": await self.db.execute("count_feed_items"),
            "pending_tasks": await self.tasks.pending(),
            "config": config.get_config_summary(),
        }


def print_status(status: Dict[str, Any]) -> None:
    print(f"\n📊 Feed Archiver Status")
    print(f"⏰ {status['timestamp']}")
    print(f"📡 Active feeds: {status['active_feeds']}")
    print(f"💾 Feed files: {status['feed_files']}")
    print(f"📰 Items: {status['feed_items']}")
    print(f"⏳ Pending tasks: {status['pending_tasks']}")
    print(f"\n⚙️ Configuration:")
    for key, value in status["config"].items():
        print(f"   {key}: {value}")


def print_items(items: List[Any]) -> None:
    if not items:
        print("(queue is empty)")
    for position, item in enumerate(items):
        print(f"{position:3d}  {format_timestamp(item.date)}  {item.guid}  {item.title}")


async def run_queue_command(app: FeedArchiver, args) -> int:
    queue = await get_queue(args.name)
    library = app.library
    if args.queue_command == "list":
        items = await library.get_queue_items(queue)
    elif args.queue_command == "add":
        items = await library.add_to_queue(queue, args.guid, position=args.position)
    elif args.queue_command == "insert":
        items = await library.move_in_queue(queue, args.guid, args.position)
    elif args.queue_command == "remove":
        items = await library.remove_from_queue(queue, args.guid)
    else:
        items = await library.clear_queue(queue, keep_first=args.keep_first)
    print_items(items)
    return 0


async def run_command(args) -> int:
    app = FeedArchiver()
    await app.initialize()
    try:
        if args.command == "subscribe":
            return 1 if await app.subscribe_all(args.urls) else 0

        if args.command == "import":
            return 1 if await app.import_feeds() else 0

        if args.command == "refresh":
            if args.queue_only:
                await app.tasks.send(RefreshFeedTask(args.guid))
            else:
                await app.orchestrator.refresh_feed(args.guid)
            return 0

        if args.command == "plan-archives":
            if args.queue_only:
                await app.tasks.send(PlanFeedArchivesTask(args.guid))
            else:
                queued = await app.orchestrator.plan_feed_archives(args.guid)
                print(f"🗄️ Queued {queued} snapshot fetch(es)")
            return 0

        if args.command == "refresh-all":
            await app.orchestrator.enqueue_refresh_for_active_feeds()
            return 0

        if args.command == "worker":
            await app.orchestrator.run_worker(once=args.once)
            return 0

        if args.command == "queue":
            return await run_queue_command(app, args)

        if args.command == "status":
            print_status(await app.check_status())
            return 0
    finally:
        await app.close()
    return 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Feed Archiver")
    commands = parser.add_subparsers(dest="command", required=True)

    subscribe = commands.add_parser("subscribe", help="Add feeds from blog, podcast or feed URLs")
    subscribe.add_argument("urls", nargs="+", help="URL(s) to subscribe to")

    commands.add_parser("import", help="Subscribe to every feed listed in feeds.yaml")

    refresh = commands.add_parser("refresh", help="Poll the live sources of one feed")
    refresh.add_argument("guid", help="Feed GUID")
    refresh.add_argument("--queue-only", action="store_true", help="Queue the task instead of running it")

    plan = commands.add_parser("plan-archives", help="Plan archive backfill for one feed")
    plan.add_argument("guid", help="Feed GUID")
    plan.add_argument("--queue-only", action="store_true", help="Queue the task instead of running it")

    commands.add_parser("refresh-all", help="Queue a refresh of every active feed")

    worker = commands.add_parser("worker", help="Process queued tasks")
    worker.add_argument("--once", action="store_true", help="Exit when the task queue is empty")

    queue = commands.add_parser("queue", help="Manage the playback queue")
    queue.add_argument("--name", default=DEFAULT_QUEUE, help="Queue name")
    queue_commands = queue.add_subparsers(dest="queue_command", required=True)
    queue_commands.add_parser("list", help="Show the queue")
    add = queue_commands.add_parser("add", help="Queue a podcast episode")
    add.add_argument("guid", help="Feed item GUID")
    add.add_argument("--position", type=int, default=None, help="Insert at this position instead of appending")
    insert = queue_commands.add_parser("insert", help="Move a queued item to a position")
    insert.add_argument("guid", help="Feed item GUID")
    insert.add_argument("position", type=int, help="Target position")
    remove = queue_commands.add_parser("remove", help="Remove an item from the queue")
    remove.add_argument("guid", help="Feed item GUID")
    clear = queue_commands.add_parser("clear", help="Empty the queue")
    clear.add_argument("--keep-first", action="store_true", help="Keep the item at the head of the queue")

    commands.add_parser("status", help="Show store and configuration status")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    init_telemetry("feed-archiver-cli")

    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Feed Archiver shutting down")
    except (FeedArchiverError, ValueError) as e:
        logger.error(f"💥 {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

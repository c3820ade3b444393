#!/usr/bin/env python3
"""
User-facing library operations over the stored feeds and the playback queue.

These are the only paths that change user-owned state: feed categories and
item finished/progress/bookmarked flags. Ingestion never touches them.
"""

from typing import Any, Dict, List, Optional, Sequence

from config import get_logger
from entities import FeedItem
from errors import QueueError
from playback_queue import PlaybackQueue

# Module-specific logger
logger = get_logger("library")


class FeedLibrary:
    """Reads and user edits for feeds, items and the playback queue."""

    def __init__(self, db):
        self.db = db

    async def list_active_feeds(self) -> List[Dict[str, Any]]:
        return await self.db.execute("list_active_feeds")

    async def list_feed_items(self, feed_guid: Optional[str] = None, include_finished: bool = False,
                              sort_order: str = "desc", limit: int = 20, offset: int = 0) -> List[FeedItem]:
        return await self.db.execute(
            "list_feed_items",
            feed_guid=feed_guid,
            include_finished=include_finished,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )

    async def list_bookmarked_items(self) -> List[FeedItem]:
        return await self.db.execute("list_bookmarked_items")

    async def update_feed_categories(self, guid: str, categories: Sequence[str]) -> bool:
        """Replace a feed's categories.

        Raises:
            ValueError: a category name contains a comma.
        """
        updated = await self.db.execute("update_feed_categories", guid=guid, categories=list(categories))
        if updated:
            logger.info(f"Updated categories of feed {guid}")
        return updated

    async def update_feed_item_state(self, guid: str, finished: Optional[bool] = None,
                                     progress: Optional[float] = None,
                                     bookmarked: Optional[bool] = None) -> Optional[FeedItem]:
        """Set any of finished, progress and bookmarked; None leaves a field as it is."""
        await self.db.execute(
            "update_feed_item_state", guid=guid, finished=finished, progress=progress, bookmarked=bookmarked
        )
        return await self.db.execute("get_feed_item", guid=guid)

    async def hydrate(self, guids: Sequence[str]) -> List[FeedItem]:
        """Stored items for the GUIDs, in order; GUIDs with no stored item are dropped."""
        items = []
        for guid in guids:
            item = await self.db.execute("get_feed_item", guid=guid)
            if item is not None:
                items.append(item)
        return items

    async def get_queue_items(self, queue: PlaybackQueue) -> List[FeedItem]:
        return await self.hydrate(await queue.execute("items"))

    async def add_to_queue(self, queue: PlaybackQueue, guid: str, position: Optional[int] = None) -> List[FeedItem]:
        """Queue a podcast episode, at a position when given, otherwise at the end.

        Raises:
            QueueError: the item does not exist or is not from a podcast feed.
        """
        item = await self.db.execute("get_feed_item", guid=guid)
        if item is None:
            raise QueueError(f"No feed item found with id: {guid}")
        feed = await self.db.execute("get_feed", guid=item.feed_guid)
        if feed is None or feed.type != "podcast":
            raise QueueError("Only podcast feed items can be queued")

        if position is None:
            guids = await queue.execute("enqueue", guid=guid)
        else:
            guids = await queue.execute("insert", guid=guid, index=position)
        return await self.hydrate(guids)

    async def move_in_queue(self, queue: PlaybackQueue, guid: str, position: int) -> List[FeedItem]:
        return await self.hydrate(await queue.execute("insert", guid=guid, index=position))

    async def remove_from_queue(self, queue: PlaybackQueue, guid: str) -> List[FeedItem]:
        return await self.hydrate(await queue.execute("remove", guid=guid))

    async def clear_queue(self, queue: PlaybackQueue, keep_first: bool = False) -> List[FeedItem]:
        """Empty the queue; with keep_first the current head stays queued."""
        head = None
        if keep_first:
            current = await queue.execute("items")
            head = current[0] if current else None
        guids = await queue.execute("clear")
        if head is not None:
            guids = await queue.execute("enqueue", guid=head)
        return await self.hydrate(guids)

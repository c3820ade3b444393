#!/usr/bin/env python3
"""
Ordered playback queue.

Each named queue is its own SQLite file owned by one DatabaseQueue worker, so
every operation (including the renumbering done by insert and remove) runs to
completion before the next one starts. Insert and compacting removes leave
the ordinals as exactly 0..n-1.
"""

import asyncio
import os
import re
from typing import Dict, List, Tuple

from config import config, get_logger
from models import DatabaseQueue

# Module-specific logger
logger = get_logger("playback_queue")

QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_item (
    queue_order INTEGER PRIMARY KEY,
    feed_item_guid TEXT UNIQUE NOT NULL
);
"""

DEFAULT_QUEUE = "default"

# db path -> (queue, event loop its worker runs on)
_queues: Dict[str, Tuple["PlaybackQueue", asyncio.AbstractEventLoop]] = {}


class PlaybackQueue(DatabaseQueue):
    """A uniquely keyed, densely ordered list of feed item GUIDs."""

    def __init__(self, db_path: str, name: str = DEFAULT_QUEUE):
        super().__init__(db_path)
        self.name = name

    def initialize(self, conn) -> None:
        conn.executescript(QUEUE_SCHEMA)
        conn.commit()

    def _guids(self) -> List[str]:
        rows = self.conn.execute("SELECT feed_item_guid FROM queue_item ORDER BY queue_order").fetchall()
        return [row["feed_item_guid"] for row in rows]

    def _rewrite(self, guids: List[str]) -> None:
        self.conn.execute("DELETE FROM queue_item")
        self.conn.executemany(
            "INSERT INTO queue_item (queue_order, feed_item_guid) VALUES (?, ?)",
            list(enumerate(guids)),
        )

    def items(self) -> List[str]:
        return self._guids()

    def enqueue(self, guid: str) -> List[str]:
        """Append at the end; a GUID already queued keeps its place."""
        with self.conn:
            present = self.conn.execute(
                "SELECT 1 FROM queue_item WHERE feed_item_guid = ?", (guid,)
            ).fetchone()
            if not present:
                next_order = self.conn.execute(
                    "SELECT COALESCE(MAX(queue_order), -1) + 1 FROM queue_item"
                ).fetchone()[0]
                self.conn.execute(
                    "INSERT INTO queue_item (queue_order, feed_item_guid) VALUES (?, ?)",
                    (next_order, guid),
                )
        return self._guids()

    def insert(self, guid: str, index: int) -> List[str]:
        """Move or add a GUID to a position (clamped to [0, length]) and renumber."""
        with self.conn:
            guids = [g for g in self._guids() if g != guid]
            index = max(0, min(int(index), len(guids)))
            guids.insert(index, guid)
            self._rewrite(guids)
        return self._guids()

    def remove(self, guid: str, compact: bool = True) -> List[str]:
        with self.conn:
            self.conn.execute("DELETE FROM queue_item WHERE feed_item_guid = ?", (guid,))
            if compact:
                self._rewrite(self._guids())
        return self._guids()

    def clear(self) -> List[str]:
        with self.conn:
            self.conn.execute("DELETE FROM queue_item")
        return []

    def ordinals(self) -> List[int]:
        rows = self.conn.execute("SELECT queue_order FROM queue_item ORDER BY queue_order").fetchall()
        return [row["queue_order"] for row in rows]


def queue_path(name: str) -> str:
    """Database file for a named queue; names are reduced to a safe file stem."""
    stem = re.sub(r"[^A-Za-z0-9_-]+", "_", name or DEFAULT_QUEUE).strip("_") or DEFAULT_QUEUE
    return os.path.join(config.QUEUE_DATABASE_DIR, f"{stem}.db")


def _discard(queue: PlaybackQueue) -> None:
    """Drop a queue whose worker belonged to an event loop that is gone."""
    queue.running = False
    if queue.conn:
        queue.conn.close()
        queue.conn = None


async def get_queue(name: str = DEFAULT_QUEUE) -> PlaybackQueue:
    """Return the running queue actor for a name, starting it on first use.

    Actors are tied to the event loop that started them; a call from another
    loop (e.g. a second asyncio.run) gets a fresh actor on the same file.
    """
    db_path = queue_path(name)
    loop = asyncio.get_running_loop()
    queue, owner = _queues.get(db_path, (None, None))
    if queue is not None and owner is not loop:
        logger.debug(f"Restarting playback queue {name!r} on a new event loop")
        _discard(queue)
        queue = None
    if queue is None or not queue.running:
        os.makedirs(os.path.dirname(db_path), exist_ok=True)
        queue = PlaybackQueue(db_path, name=name)
        await queue.start()
        _queues[db_path] = (queue, loop)
        logger.debug(f"Opened playback queue {name!r} at {db_path}")
    return queue


async def close_queues() -> None:
    loop = asyncio.get_running_loop()
    for queue, owner in list(_queues.values()):
        if owner is loop:
            await queue.stop()
        else:
            _discard(queue)
    _queues.clear()

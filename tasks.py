#!/usr/bin/env python3
"""
Ingestion task types and their at-least-once transport.

Tasks travel as JSON objects with a ``type`` field. The transport is a table
in the feed database: receiving a message leases it for TASK_LEASE_SECONDS,
acking deletes it, and a message that is never acked (worker crash) becomes
visible again when its lease runs out. There is no deduplication; handlers
are idempotent instead.
"""

import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Union

from config import config, get_logger

# Module-specific logger
logger = get_logger("tasks")

REFRESH_FEED = "refresh-feed"
PLAN_FEED_ARCHIVES = "plan-feed-archives"
FETCH_ARCHIVE_SNAPSHOT = "fetch-archive-snapshot"


@dataclass(frozen=True)
class RefreshFeedTask:
    feed_guid: str

    type = REFRESH_FEED


@dataclass(frozen=True)
class PlanFeedArchivesTask:
    feed_guid: str

    type = PLAN_FEED_ARCHIVES


@dataclass(frozen=True)
class FetchArchiveSnapshotTask:
    feed_guid: str
    feed_source_url: str
    snapshot_url: str
    timestamp: int

    type = FETCH_ARCHIVE_SNAPSHOT


Task = Union[RefreshFeedTask, PlanFeedArchivesTask, FetchArchiveSnapshotTask]

TASK_TYPES = {
    REFRESH_FEED: RefreshFeedTask,
    PLAN_FEED_ARCHIVES: PlanFeedArchivesTask,
    FETCH_ARCHIVE_SNAPSHOT: FetchArchiveSnapshotTask,
}


def task_to_dict(task: Task) -> Dict[str, Any]:
    return {"type": task.type, **asdict(task)}


def task_from_dict(data: Dict[str, Any]) -> Optional[Task]:
    """Rebuild a task; None for unknown types or missing fields."""
    cls = TASK_TYPES.get(data.get("type"))
    if cls is None:
        return None
    fields = {k: v for k, v in data.items() if k != "type"}
    try:
        return cls(**fields)
    except TypeError:
        return None


@dataclass(frozen=True)
class TaskMessage:
    id: int
    body: Dict[str, Any]
    attempts: int = 1

    @property
    def task(self) -> Optional[Task]:
        return task_from_dict(self.body)


class TaskQueue:
    """At-least-once queue of ingestion tasks stored in the feed database."""

    def __init__(self, db, lease_seconds: Optional[int] = None):
        self.db = db
        self.lease_seconds = lease_seconds or config.TASK_LEASE_SECONDS

    async def send(self, task: Task) -> int:
        message_id = await self.db.execute("enqueue_task", body=json.dumps(task_to_dict(task)))
        logger.debug(f"Queued {task.type} task {message_id} for feed {task.feed_guid}")
        return message_id

    async def receive(self, batch_size: Optional[int] = None, now: Optional[int] = None) -> List[TaskMessage]:
        rows = await self.db.execute(
            "lease_tasks",
            batch_size=batch_size or config.TASK_BATCH_SIZE,
            lease_seconds=self.lease_seconds,
            now=now,
        )
        messages = []
        for row in rows:
            try:
                body = json.loads(row["body"])
            except ValueError:
                logger.error(f"Task message {row['id']} is not valid JSON")
                body = {}
            if not isinstance(body, dict):
                body = {}
            messages.append(TaskMessage(id=row["id"], body=body, attempts=row["attempts"]))
        return messages

    async def ack(self, message_id: int) -> None:
        await self.db.execute("ack_task", task_id=message_id)

    async def pending(self) -> int:
        return await self.db.execute("count_tasks")

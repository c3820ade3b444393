#!/usr/bin/env python3
"""
Database models and operations for the Feed Archiver.

All SQLite access goes through a DatabaseQueue: one asyncio worker task owns
the connection and runs operations one at a time, so every operation is
atomic with respect to every other caller. Callers use
`await db.execute('operation_name', **params)`.
"""

from os import path, access, R_OK
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import config, get_logger
from entities import (
    Feed, FeedSource, FeedFile, FeedItem, UpsertPolicy,
    FEED_POLICY, FEED_SOURCE_POLICY, FEED_FILE_POLICY, FEED_ITEM_POLICY,
)
from errors import PersistenceError
from telemetry import trace_span
from utils import join_string_list, now_ts

# Module-specific logger
logger = get_logger("models")

FEED_ITEM_STATE_FIELDS = ("finished", "progress", "bookmarked")


def _read_schema_file(schema_path: str) -> str:
    """Read a schema from an SQL file."""
    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except (OSError, ValueError) as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def build_upsert(table: str, key: str, row: Dict[str, Any], policy: UpsertPolicy) -> Tuple[str, List[Any]]:
    """Build an INSERT ... ON CONFLICT statement for one row.

    Returns the SQL and its bound values. With an "ignore" policy (or nothing
    left to update) the conflict clause is DO NOTHING.
    """
    columns = list(row.keys())
    placeholders = ", ".join("?" for _ in columns)
    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
    update_columns = policy.update_columns(columns, key)
    if update_columns:
        assignments = ", ".join(f"{column} = excluded.{column}" for column in update_columns)
        sql += f" ON CONFLICT({key}) DO UPDATE SET {assignments}"
    else:
        sql += " ON CONFLICT DO NOTHING"
    return sql, [row[c] for c in columns]


class DatabaseQueue:
    """A queue for database operations to ensure single-writer access."""

    def __init__(self, db_path: str, schema_path: Optional[str] = None):
        self.db_path = db_path
        self.schema_path = schema_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()
        self._init_error: Optional[BaseException] = None

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self._init_error is not None:
            raise PersistenceError(f"Could not open database {self.db_path}: {self._init_error}")
        logger.debug(f"Database worker started for {self.db_path}")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": PersistenceError("Database worker stopped")})
            event.set()
        self.events.clear()

        logger.debug(f"Database worker stopped for {self.db_path}")

    def initialize(self, conn) -> None:
        """Apply the schema. Statements are CREATE ... IF NOT EXISTS, so this is idempotent."""
        if self.schema_path:
            conn.executescript(_read_schema_file(self.schema_path))
            conn.commit()

    def _connect(self):
        if self.db_path != ":memory:" and not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        conn = connect(self.db_path)
        conn.row_factory = Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        try:
            self.conn = self._connect()
            self.initialize(self.conn)
        except (Error, OSError, ValueError) as e:
            logger.error(f"Error initializing database {self.db_path}: {e}")
            self._init_error = e
            self.running = False
            return
        finally:
            self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if method is None or operation_name.startswith("_"):
                        self.results[operation_id] = {"error": ValueError(f"Unknown operation: {operation_name}")}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Error as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": PersistenceError(f"{operation_name} failed: {e}")}
                except Exception as e:
                    # Validation errors raised by operations travel back to the caller unchanged
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result."""
        if not self.running:
            raise PersistenceError(f"Database worker for {self.db_path} is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id)
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)


class FeedDatabase(DatabaseQueue):
    """Relational store for feeds, sources, feed files, items and tasks."""

    def __init__(self, db_path: Optional[str] = None):
        super().__init__(db_path or config.DATABASE_PATH, config.SCHEMA_FILE_PATH)

    # Generic upsert
    def _upsert(self, entity, policy: UpsertPolicy) -> bool:
        sql, values = build_upsert(entity.table, entity.key, entity.to_row(), policy)
        with self.conn:
            cursor = self.conn.execute(sql, values)
            return cursor.rowcount > 0

    def _get_one(self, cls, where: str, params: Sequence[Any]):
        row = self.conn.execute(f"SELECT * FROM {cls.table} WHERE {where}", tuple(params)).fetchone()
        return cls.from_row(row) if row else None

    # Feed operations
    def get_feed(self, guid: str) -> Optional[Feed]:
        return self._get_one(Feed, "guid = ?", (guid,))

    def upsert_feed(self, feed: Feed, policy: UpsertPolicy = FEED_POLICY) -> Feed:
        self._upsert(feed, policy)
        return self.get_feed(feed.guid)

    def list_active_feeds(self) -> List[Dict[str, Any]]:
        """Active feeds, most recently updated content first, with unread/archive flags."""
        rows = self.conn.execute("""
            SELECT feeds.*,
                   COALESCE(MAX(CASE WHEN feed_items.finished = 0 THEN 1 ELSE 0 END), 0) AS has_unread,
                   EXISTS(SELECT 1 FROM feed_sources
                          WHERE feed_sources.feed_guid = feeds.guid AND feed_sources.archive = 1) AS has_archives
            FROM feeds
            LEFT JOIN feed_items ON feed_items.feed_guid = feeds.guid
            WHERE feeds.active = 1
            GROUP BY feeds.guid
            ORDER BY MAX(feed_items.date) DESC
        """).fetchall()
        return [{
            "feed": Feed.from_row(row),
            "has_unread": bool(row["has_unread"]),
            "has_archives": bool(row["has_archives"]),
        } for row in rows]

    def list_active_feed_guids(self) -> List[str]:
        rows = self.conn.execute("SELECT guid FROM feeds WHERE active = 1 ORDER BY guid").fetchall()
        return [row["guid"] for row in rows]

    def update_feed_categories(self, guid: str, categories: Sequence[str]) -> bool:
        """Replace a feed's categories. Category names may not contain commas."""
        for category in categories:
            if "," in category:
                raise ValueError("Category names cannot contain commas")
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE feeds SET categories = ? WHERE guid = ?",
                (join_string_list(categories), guid),
            )
        return cursor.rowcount > 0

    # Feed source operations
    def get_feed_source(self, feed_url: str) -> Optional[FeedSource]:
        return self._get_one(FeedSource, "feed_url = ?", (feed_url,))

    def upsert_feed_source(self, source: FeedSource, policy: UpsertPolicy = FEED_SOURCE_POLICY) -> FeedSource:
        self._upsert(source, policy)
        return self.get_feed_source(source.feed_url)

    def list_feed_sources(self, feed_guid: str) -> List[FeedSource]:
        rows = self.conn.execute(
            "SELECT * FROM feed_sources WHERE feed_guid = ? ORDER BY feed_url", (feed_guid,)
        ).fetchall()
        return [FeedSource.from_row(row) for row in rows]

    def list_updatable_feed_sources(self, feed_guid: str) -> List[FeedSource]:
        """Live, non-archive sources that are still actively updating."""
        rows = self.conn.execute("""
            SELECT * FROM feed_sources
            WHERE feed_guid = ? AND actively_updating = 1 AND archive = 0
            ORDER BY feed_url
        """, (feed_guid,)).fetchall()
        return [FeedSource.from_row(row) for row in rows]

    def mark_feed_source_fetched(self, feed_url: str, fetched_at: Optional[int] = None,
                                 updated: bool = False) -> bool:
        """Record a poll of a source; last_updated moves only when new content arrived."""
        fetched_at = fetched_at or now_ts()
        with self.conn:
            if updated:
                cursor = self.conn.execute(
                    "UPDATE feed_sources SET last_fetched = ?, last_updated = ? WHERE feed_url = ?",
                    (fetched_at, fetched_at, feed_url),
                )
            else:
                cursor = self.conn.execute(
                    "UPDATE feed_sources SET last_fetched = ? WHERE feed_url = ?",
                    (fetched_at, feed_url),
                )
        return cursor.rowcount > 0

    # Feed file operations
    def get_feed_file(self, sha256_hash: str) -> Optional[FeedFile]:
        return self._get_one(FeedFile, "sha256_hash = ?", (sha256_hash,))

    def get_feed_file_by_source(self, feed_url: str, fetched_at: int) -> Optional[FeedFile]:
        return self._get_one(FeedFile, "feed_url = ? AND fetched_at = ?", (feed_url, fetched_at))

    def insert_feed_file(self, feed_file: FeedFile) -> bool:
        """Insert a feed file row; returns False if the content hash was already stored."""
        return self._upsert(feed_file, FEED_FILE_POLICY)

    def upsert_feed_file(self, feed_file: FeedFile, policy: UpsertPolicy = FEED_FILE_POLICY) -> FeedFile:
        self._upsert(feed_file, policy)
        return self.get_feed_file(feed_file.sha256_hash)

    def list_feed_files(self, feed_guid: str) -> List[FeedFile]:
        rows = self.conn.execute(
            "SELECT * FROM feed_files WHERE feed_guid = ? ORDER BY fetched_at ASC", (feed_guid,)
        ).fetchall()
        return [FeedFile.from_row(row) for row in rows]

    def count_feed_files(self, feed_guid: Optional[str] = None) -> int:
        if feed_guid:
            row = self.conn.execute("SELECT COUNT(*) FROM feed_files WHERE feed_guid = ?", (feed_guid,)).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM feed_files").fetchone()
        return row[0]

    # Feed item operations
    def get_feed_item(self, guid: str) -> Optional[FeedItem]:
        return self._get_one(FeedItem, "guid = ?", (guid,))

    def upsert_feed_item(self, item: FeedItem, policy: UpsertPolicy = FEED_ITEM_POLICY) -> FeedItem:
        self._upsert(item, policy)
        return self.get_feed_item(item.guid)

    def get_feed_item_date_range(self, feed_guid: str) -> Optional[Tuple[int, int]]:
        row = self.conn.execute("""
            SELECT MIN(date) AS earliest, MAX(date) AS latest
            FROM feed_items
            WHERE feed_guid = ? AND date IS NOT NULL
        """, (feed_guid,)).fetchone()
        if not row or row["earliest"] is None or row["latest"] is None:
            return None
        return int(row["earliest"]), int(row["latest"])

    def list_feed_items(self, feed_guid: Optional[str] = None, include_finished: bool = False,
                        sort_order: str = "desc", limit: int = 20, offset: int = 0) -> List[FeedItem]:
        """Page through items of one feed, or of all active feeds when no feed is given."""
        direction = "DESC" if str(sort_order).lower() == "desc" else "ASC"
        conditions = []
        params: List[Any] = []
        if feed_guid:
            conditions.append("feed_items.feed_guid = ?")
            params.append(feed_guid)
        else:
            conditions.append("feeds.active = 1")
        if not include_finished:
            conditions.append("feed_items.finished = 0")
        params.extend([int(limit), int(offset)])
        rows = self.conn.execute(f"""
            SELECT feed_items.* FROM feed_items
            JOIN feeds ON feed_items.feed_guid = feeds.guid
            WHERE {' AND '.join(conditions)}
            ORDER BY feed_items.date {direction}, feed_items.guid
            LIMIT ? OFFSET ?
        """, params).fetchall()
        return [FeedItem.from_row(row) for row in rows]

    def list_bookmarked_items(self) -> List[FeedItem]:
        rows = self.conn.execute(
            "SELECT * FROM feed_items WHERE bookmarked = 1 ORDER BY date DESC"
        ).fetchall()
        return [FeedItem.from_row(row) for row in rows]

    def count_feed_items(self, feed_guid: Optional[str] = None) -> int:
        if feed_guid:
            row = self.conn.execute("SELECT COUNT(*) FROM feed_items WHERE feed_guid = ?", (feed_guid,)).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM feed_items").fetchone()
        return row[0]

    def update_feed_item_state(self, guid: str, **state: Any) -> bool:
        """Update user-owned item state (finished, progress, bookmarked)."""
        unknown = set(state) - set(FEED_ITEM_STATE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update the feed item field(s): {', '.join(sorted(unknown))}")
        updates = {k: v for k, v in state.items() if v is not None}
        if not updates:
            return False
        if "progress" in updates:
            progress = float(updates["progress"])
            if not 0.0 <= progress <= 1.0:
                raise ValueError("progress must be between 0 and 1")
            updates["progress"] = progress
        for flag in ("finished", "bookmarked"):
            if flag in updates:
                updates[flag] = int(bool(updates[flag]))
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self.conn:
            cursor = self.conn.execute(
                f"UPDATE feed_items SET {assignments} WHERE guid = ?",
                [*updates.values(), guid],
            )
        return cursor.rowcount > 0

    # Task transport operations
    def enqueue_task(self, body: str) -> int:
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO tasks (body, enqueued_at) VALUES (?, ?)", (body, now_ts())
            )
        return cursor.lastrowid

    def lease_tasks(self, batch_size: int, lease_seconds: int, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """Lease up to batch_size visible tasks; they reappear if not acked before the lease ends."""
        now = now if now is not None else now_ts()
        with self.conn:
            rows = self.conn.execute("""
                SELECT id, body, attempts FROM tasks
                WHERE lease_until <= ?
                ORDER BY id
                LIMIT ?
            """, (now, int(batch_size))).fetchall()
            for row in rows:
                self.conn.execute(
                    "UPDATE tasks SET lease_until = ?, attempts = attempts + 1 WHERE id = ?",
                    (now + int(lease_seconds), row["id"]),
                )
        return [{"id": row["id"], "body": row["body"], "attempts": row["attempts"] + 1} for row in rows]

    def ack_task(self, task_id: int) -> bool:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cursor.rowcount > 0

    def count_tasks(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]

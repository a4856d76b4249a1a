#!/usr/bin/env python3
"""
Database models and operations for Feed Sync.

All SQLite access goes through ``DatabaseQueue``: callers submit a named
operation with keyword parameters and await its result, while a single worker
coroutine owns the connection and runs operations one at a time. The item
uniqueness constraint on ``(feed_id, external_id)`` is the deduplication
backstop for concurrent syncs.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any

from config import config, get_logger
from errors import StorageError, StorageErrorKind
from schemas import Feed, Item, InteractionState, InteractionField, ItemKind, SourceKind
from telemetry import trace_span

logger = get_logger("models")

SCHEMA_FILE_SIZE_LIMIT = 1024 * 1024

# Columns callers may set on insert; everything else is derived here
ITEM_FIELDS = ("title", "description", "link", "thumbnail_url", "author", "published_at")

# Queue lifecycle methods that must never run as operations
CONTROL_METHODS = {"start", "stop", "execute"}


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file.

    The schema only uses IF NOT EXISTS statements, so running it against an
    existing database is a no-op apart from column migrations.
    """
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None
        cursor.executescript(_read_schema_file())
        conn.commit()
        if feeds_table_exists:
            _run_migrations(conn)
            logger.debug("Database schema verified")
        else:
            logger.info("Database schema initialized successfully")
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Bring databases created by older releases up to the current schema."""
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA table_info(feeds)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'channel_id' not in columns:
            logger.info("Adding channel_id column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN channel_id TEXT")
            conn.commit()
    except Error as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    if file_size > SCHEMA_FILE_SIZE_LIMIT:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {SCHEMA_FILE_SIZE_LIMIT} bytes)")
    with open(schema_path, 'r') as f:
        return f.read()


def _now(now: Optional[int]) -> int:
    return int(time()) if now is None else int(now)


class DatabaseQueue:
    """A queue for database operations so only one coroutine touches the connection."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except Error as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StorageError(StorageErrorKind.UNAVAILABLE, f"Cannot open database: {e}", cause=e) from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Database worker started")

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

        # Wake any callers still waiting so they fail instead of hanging
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.debug("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _run_operation(self, operation_name: str, params: Dict[str, Any]) -> Dict[str, Any]:
        method = getattr(self, operation_name, None)
        if operation_name.startswith("_") or operation_name in CONTROL_METHODS or not callable(method):
            return {"error": StorageError(StorageErrorKind.UNAVAILABLE, f"Unknown operation: {operation_name}")}
        try:
            return {"result": method(**params)}
        except IntegrityError as e:
            self.conn.rollback()
            logger.debug(f"Constraint violation in {operation_name}: {e}")
            return {"error": StorageError(StorageErrorKind.CONFLICT, str(e), cause=e)}
        except Error as e:
            self.conn.rollback()
            logger.error(f"Database operation error in {operation_name}: {e}")
            return {"error": StorageError(StorageErrorKind.UNAVAILABLE, str(e), cause=e)}
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Database operation {operation_name} failed: {e}")
            return {"error": e}

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    self.results[operation_id] = self._run_operation(operation_name, params)
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
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation and return its result.

        Raises:
            StorageError: CONFLICT for constraint violations, UNAVAILABLE for
                other database failures or when the queue is not running.
        """
        if not self.running:
            raise StorageError(StorageErrorKind.UNAVAILABLE, "Database queue is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(StorageErrorKind.UNAVAILABLE, "Database queue stopped before completing operation")
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed Management Operations
    def register_feed(
        self,
        owner_id: str,
        url: str,
        source_kind: str,
        title: str = "",
        category: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Feed:
        """Register a feed for a user; a duplicate live (owner, url) raises CONFLICT."""
        kind = SourceKind(source_kind)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO feeds (owner_id, url, source_kind, title, category, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (owner_id, url, kind.value, title or "", category, _now(now)),
            )
            feed_id = cursor.lastrowid
            self.conn.commit()
        finally:
            cursor.close()
        logger.info(f"Registered {kind.value} feed {feed_id} for {owner_id}: {url}")
        return self.get_feed(feed_id)

    def get_feed(self, feed_id: int) -> Optional[Feed]:
        """Return a feed by id, including soft-deleted ones."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return Feed.from_row(row) if row else None
        finally:
            cursor.close()

    def list_feeds(self, owner_id: Optional[str] = None, include_deleted: bool = False) -> List[Feed]:
        clauses = []
        params: List[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT * FROM feeds {where} ORDER BY id", params)
            return [Feed.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def list_due_feeds(
        self,
        user_id: Optional[str],
        interval_minutes: int,
        now: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Feed]:
        """List live, active feeds never fetched or fetched before now - interval.

        Never-fetched feeds come first, then the stalest ones.
        """
        cutoff = _now(now) - int(interval_minutes) * 60
        query = """
            SELECT * FROM feeds
            WHERE deleted_at IS NULL
            AND is_active = 1
            AND (last_fetched_at IS NULL OR last_fetched_at < ?)
        """
        params: List[Any] = [cutoff]
        if user_id is not None:
            query += " AND owner_id = ?"
            params.append(user_id)
        query += " ORDER BY last_fetched_at IS NOT NULL, last_fetched_at ASC, id ASC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        cursor = self.conn.cursor()
        try:
            cursor.execute(query, params)
            return [Feed.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def touch_feed_fetch_timestamp(
        self,
        feed_id: int,
        success: bool,
        items_added: int = 0,
        now: Optional[int] = None,
    ) -> bool:
        """Stamp last_fetched_at; last_updated_at only moves when new items landed."""
        stamp = _now(now)
        cursor = self.conn.cursor()
        try:
            if success and items_added > 0:
                cursor.execute(
                    "UPDATE feeds SET last_fetched_at = ?, last_updated_at = ? WHERE id = ?",
                    (stamp, stamp, feed_id),
                )
            else:
                cursor.execute("UPDATE feeds SET last_fetched_at = ? WHERE id = ?", (stamp, feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def update_feed_metadata(
        self,
        feed_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        icon_url: Optional[str] = None,
    ) -> bool:
        """Overwrite stored feed metadata with the non-empty values given."""
        update_parts = []
        params: List[Any] = []
        for column, value in (("title", title), ("description", description), ("icon_url", icon_url)):
            if value:
                update_parts.append(f"{column} = ?")
                params.append(value)
        if not update_parts:
            return False
        params.append(feed_id)
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"UPDATE feeds SET {', '.join(update_parts)} WHERE id = ?", params)
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def set_feed_channel_id(self, feed_id: int, channel_id: str) -> bool:
        """Remember the channel id a YouTube page URL resolved to."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("UPDATE feeds SET channel_id = ? WHERE id = ?", (channel_id, feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def soft_delete_feed(self, feed_id: int, now: Optional[int] = None) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (_now(now), feed_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def set_feed_active(self, feed_id: int, active: bool) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("UPDATE feeds SET is_active = ? WHERE id = ?", (1 if active else 0, feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    # Item Management Operations
    def check_existing_external_ids(self, feed_id: int, external_ids: List[str]) -> Set[str]:
        """Check which external ids already exist for this feed."""
        if not external_ids:
            return set()
        placeholders = ','.join(['?' for _ in external_ids])
        query = f"SELECT external_id FROM items WHERE feed_id = ? AND external_id IN ({placeholders})"
        cursor = self.conn.cursor()
        try:
            cursor.execute(query, [feed_id] + list(external_ids))
            return {row[0] for row in cursor.fetchall()}
        finally:
            cursor.close()

    def upsert_item(
        self,
        feed_id: int,
        external_id: str,
        fields: Dict[str, Any],
        now: Optional[int] = None,
    ) -> bool:
        """Insert an item unless (feed_id, external_id) exists; return True if inserted.

        Existing items are never updated.
        """
        created_at = _now(now)
        values = [fields.get(name) for name in ITEM_FIELDS]
        if values[ITEM_FIELDS.index("published_at")] is None:
            values[ITEM_FIELDS.index("published_at")] = created_at
        for i, name in enumerate(ITEM_FIELDS):
            if name in ("title", "description", "link") and values[i] is None:
                values[i] = ""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"""
                INSERT OR IGNORE INTO items (feed_id, external_id, {', '.join(ITEM_FIELDS)}, created_at)
                VALUES (?, ?, {', '.join('?' for _ in ITEM_FIELDS)}, ?)
                """,
                [feed_id, external_id] + values + [created_at],
            )
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def get_item(self, item_id: int) -> Optional[Item]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM items WHERE id = ?", (item_id,))
            row = cursor.fetchone()
            return Item.from_row(row) if row else None
        finally:
            cursor.close()

    def item_exists(self, item_id: int) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT 1 FROM items WHERE id = ?", (item_id,))
            return cursor.fetchone() is not None
        finally:
            cursor.close()

    def list_items(self, feed_id: int, limit: int = 50) -> List[Item]:
        """Newest items for a feed."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT * FROM items WHERE feed_id = ? ORDER BY published_at DESC, id DESC LIMIT ?",
                (feed_id, limit),
            )
            return [Item.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def count_items(self, feed_id: Optional[int] = None) -> int:
        """Return number of item rows, optionally for one feed."""
        cursor = self.conn.cursor()
        try:
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM items")
            else:
                cursor.execute("SELECT COUNT(*) FROM items WHERE feed_id = ?", (feed_id,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    # Interaction Operations
    def upsert_interaction(
        self,
        user_id: str,
        item_id: int,
        item_kind: str,
        field: str,
        value: bool,
        now: Optional[int] = None,
    ) -> InteractionState:
        """Create the (user, item) row with other flags false, or update one flag in place."""
        column = InteractionField(field).value
        kind = ItemKind(item_kind).value
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"""
                INSERT INTO interactions (user_id, item_id, item_kind, {column}, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id, item_id)
                DO UPDATE SET {column} = excluded.{column}, updated_at = excluded.updated_at
                """,
                (user_id, item_id, kind, 1 if value else 0, _now(now)),
            )
            self.conn.commit()
        finally:
            cursor.close()
        return self.get_interaction(user_id, item_id)

    def get_interaction(self, user_id: str, item_id: int) -> Optional[InteractionState]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT * FROM interactions WHERE user_id = ? AND item_id = ?",
                (user_id, item_id),
            )
            row = cursor.fetchone()
            return InteractionState.from_row(row) if row else None
        finally:
            cursor.close()

    def count_interactions(self, user_id: Optional[str] = None) -> int:
        cursor = self.conn.cursor()
        try:
            if user_id is None:
                cursor.execute("SELECT COUNT(*) FROM interactions")
            else:
                cursor.execute("SELECT COUNT(*) FROM interactions WHERE user_id = ?", (user_id,))
            return int(cursor.fetchone()[0])
        finally:
            cursor.close()

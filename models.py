#!/usr/bin/env python3
"""
Typed records and the SQLite store for the changelog aggregator.

The store is driven by a single worker task that owns the sqlite3 connection;
callers submit named operations with ``await db.execute("op", **params)``. Rows
are mapped to the dataclasses below before they leave this module, and sqlite
failures surface as ``PersistenceError`` with a ``kind`` callers can act on.
"""

from dataclasses import dataclass, field, asdict
from os import path, access, R_OK
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any, Tuple

from config import config, get_logger
from errors import FeedError, PersistenceError, ValidationError
from telemetry import trace_span
from utils import utc_now_iso

logger = get_logger("models")

SCHEMA_FILE_SIZE_LIMIT = 1024 * 1024
SCOPE_POLICY_MESSAGE = "scope policy violation"


@dataclass(frozen=True)
class Scope:
    """Ownership context of a feed or item: one user's personal space or one group."""

    user_id: Optional[str] = None
    group_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.user_id) == bool(self.group_id):
            raise ValidationError(
                "Exactly one of user_id or group_id must be set",
                details={"user_id": self.user_id, "group_id": self.group_id},
            )

    @classmethod
    def personal(cls, user_id: str) -> "Scope":
        return cls(user_id=user_id)

    @classmethod
    def group(cls, group_id: str) -> "Scope":
        return cls(group_id=group_id)

    @property
    def is_group(self) -> bool:
        return bool(self.group_id)

    def __str__(self) -> str:
        return f"group:{self.group_id}" if self.is_group else f"user:{self.user_id}"


@dataclass
class RawItem:
    """One <item>/<entry> as found in the document, before normalization."""

    title: str
    link: str
    description: str
    content: str
    published: str
    guid: Optional[str] = None


@dataclass
class FeedSource:
    id: str
    url: str
    title: str
    integration_name: str
    integration_alias: Optional[str] = None
    description: Optional[str] = None
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    last_fetched: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def scope(self) -> Scope:
        return Scope(user_id=self.user_id, group_id=self.group_id)

    @property
    def display_name(self) -> str:
        return self.integration_alias or self.integration_name


@dataclass
class FeedItem:
    """A normalized feed entry. Immutable once stored."""

    id: str
    title: str
    link: str
    content: str
    content_snippet: str
    pub_date: str
    integration_name: str
    integration_alias: Optional[str] = None
    created_at: Optional[str] = None
    feed_id: Optional[str] = None
    user_id: Optional[str] = None
    group_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FetchResult:
    items: List[FeedItem] = field(default_factory=list)
    error: Optional[FeedError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class IngestResult:
    feed_id: str
    new_item_count: int = 0
    total_item_count: int = 0
    error: Optional[FeedError] = None
    feed_url: Optional[str] = None
    note: Optional[str] = None
    new_items: List[FeedItem] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "feed_url": self.feed_url,
            "success": self.succeeded,
            "new_items": self.new_item_count,
            "total_items": self.total_item_count,
            "note": self.note,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class BatchSummary:
    feeds_attempted: int = 0
    feeds_succeeded: int = 0
    total_new_items: int = 0
    per_feed_results: List[IngestResult] = field(default_factory=list)

    @property
    def feeds_failed(self) -> int:
        return self.feeds_attempted - self.feeds_succeeded

    @classmethod
    def from_results(cls, results: List[IngestResult]) -> "BatchSummary":
        """Reduce per-feed results; completion order does not matter."""
        succeeded = [r for r in results if r.succeeded]
        return cls(
            feeds_attempted=len(results),
            feeds_succeeded=len(succeeded),
            total_new_items=sum(r.new_item_count for r in succeeded),
            per_feed_results=list(results),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feeds_attempted": self.feeds_attempted,
            "feeds_succeeded": self.feeds_succeeded,
            "feeds_failed": self.feeds_failed,
            "total_new_items": self.total_new_items,
            "per_feed_results": [r.to_dict() for r in self.per_feed_results],
        }


FEED_COLUMNS = (
    "id", "url", "title", "description", "integration_name", "integration_alias",
    "user_id", "group_id", "last_fetched", "created_at", "updated_at",
)
ITEM_COLUMNS = (
    "id", "feed_id", "title", "link", "content", "content_snippet", "pub_date",
    "integration_name", "integration_alias", "created_at", "user_id", "group_id",
)


def _feed_from_row(row: Row) -> FeedSource:
    return FeedSource(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        integration_name=row["integration_name"],
        integration_alias=row["integration_alias"],
        description=row["description"],
        user_id=row["user_id"],
        group_id=row["group_id"],
        last_fetched=row["last_fetched"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _item_from_row(row: Row) -> FeedItem:
    return FeedItem(
        id=row["id"],
        title=row["title"],
        link=row["link"] or "",
        content=row["content"] or "",
        content_snippet=row["content_snippet"] or "",
        pub_date=row["pub_date"],
        integration_name=row["integration_name"],
        integration_alias=row["integration_alias"],
        created_at=row["created_at"],
        feed_id=row["feed_id"],
        user_id=row["user_id"],
        group_id=row["group_id"],
    )


def _item_params(item: FeedItem) -> Tuple:
    return tuple(getattr(item, column) for column in ITEM_COLUMNS)


def _to_persistence_error(operation_name: str, e: Exception) -> PersistenceError:
    """Classify a sqlite failure into a PersistenceError kind."""
    message = str(e)
    if isinstance(e, IntegrityError):
        if SCOPE_POLICY_MESSAGE in message:
            kind = PersistenceError.POLICY
        elif "UNIQUE" in message or "PRIMARY KEY" in message:
            kind = PersistenceError.CONFLICT
        elif "FOREIGN KEY" in message:
            kind = PersistenceError.NOT_FOUND
        else:
            kind = PersistenceError.STORAGE
    else:
        kind = PersistenceError.STORAGE
    return PersistenceError(
        f"{operation_name} failed: {message}",
        kind=kind,
        details={"operation": operation_name, "cause": e},
    )


def initialize_database(conn) -> None:
    """Initialize the database with the schema from schema.sql if it is new."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already has the feeds schema")
    finally:
        cursor.close()


def _read_schema_file() -> str:
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


class DatabaseQueue:
    """A queue for database operations so a single task owns the connection."""

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

        if self.db_path != ":memory:" and not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        try:
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            self.conn.close()
            self.conn = None
            raise PersistenceError(f"Could not initialize database {self.db_path}: {e}", details={"cause": e}) from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

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

        # Wake anyone still waiting so they do not hang on a dead worker
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations in submission order."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith("_") or not callable(method):
                        self.results[operation_id] = {
                            "error": PersistenceError(f"Unknown operation: {operation_name}")
                        }
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    if isinstance(e, IntegrityError):
                        logger.warning(f"Database constraint rejected {operation_name}: {e}")
                    elif not isinstance(e, FeedError):
                        logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
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
        """Run a named operation on the worker and return its result.

        Raises:
            PersistenceError: for any store failure, classified by kind.
            ValidationError: when an operation rejects its arguments.
        """
        if not self.running:
            raise PersistenceError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise PersistenceError(f"{operation_name} aborted: database worker stopped")
            if "error" in result:
                error = result["error"]
                if isinstance(error, FeedError):
                    raise error
                raise _to_persistence_error(operation_name, error) from error
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed operations

    def create_feed(
        self,
        url: str,
        integration_name: str,
        user_id: Optional[str] = None,
        group_id: Optional[str] = None,
        title: Optional[str] = None,
        integration_alias: Optional[str] = None,
        description: Optional[str] = None,
        last_fetched: Optional[str] = None,
    ) -> FeedSource:
        """Insert a feed and return it. Exactly one of user_id/group_id is required."""
        Scope(user_id=user_id, group_id=group_id)
        now = utc_now_iso()
        feed = FeedSource(
            id=str(uuid4()),
            url=url,
            title=title or integration_name,
            integration_name=integration_name,
            integration_alias=integration_alias,
            description=description,
            user_id=user_id,
            group_id=group_id,
            last_fetched=last_fetched,
            created_at=now,
            updated_at=now,
        )
        try:
            self.conn.execute(
                f"INSERT INTO feeds ({', '.join(FEED_COLUMNS)}) VALUES ({', '.join('?' for _ in FEED_COLUMNS)})",
                tuple(getattr(feed, column) for column in FEED_COLUMNS),
            )
            self.conn.commit()
        except Error:
            self.conn.rollback()
            raise
        return feed

    def get_feed(self, feed_id: str) -> Optional[FeedSource]:
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return _feed_from_row(row) if row else None

    def list_feeds(self, user_id: Optional[str] = None, group_id: Optional[str] = None) -> List[FeedSource]:
        """List feeds stalest first (never-fetched feeds lead).

        With neither argument every feed is returned; ``user_id`` selects the
        user's personal feeds and ``group_id`` a group's feeds.
        """
        query = "SELECT * FROM feeds"
        params: Tuple = ()
        if group_id:
            query += " WHERE group_id = ?"
            params = (group_id,)
        elif user_id:
            query += " WHERE user_id = ? AND group_id IS NULL"
            params = (user_id,)
        query += " ORDER BY last_fetched IS NOT NULL, last_fetched ASC, created_at ASC"
        return [_feed_from_row(row) for row in self.conn.execute(query, params).fetchall()]

    def update_feed_integration(
        self, feed_id: str, integration_name: str, integration_alias: Optional[str] = None
    ) -> FeedSource:
        """Rename a feed's integration; the title follows the integration name."""
        try:
            cursor = self.conn.execute(
                "UPDATE feeds SET integration_name = ?, integration_alias = ?, title = ?, updated_at = ? WHERE id = ?",
                (integration_name, integration_alias, integration_name, utc_now_iso(), feed_id),
            )
            self.conn.commit()
        except Error:
            self.conn.rollback()
            raise
        if cursor.rowcount == 0:
            raise PersistenceError(f"Feed {feed_id} not found", kind=PersistenceError.NOT_FOUND)
        return self.get_feed(feed_id)

    def delete_feed(self, feed_id: str) -> int:
        """Delete a feed and (by cascade) its items. Returns the number of items removed."""
        item_count = self.count_items(feed_id=feed_id)
        try:
            cursor = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            self.conn.commit()
        except Error:
            self.conn.rollback()
            raise
        if cursor.rowcount == 0:
            raise PersistenceError(f"Feed {feed_id} not found", kind=PersistenceError.NOT_FOUND)
        return item_count

    def update_last_fetched(self, feed_id: str, fetched_at: Optional[str] = None) -> str:
        fetched_at = fetched_at or utc_now_iso()
        try:
            cursor = self.conn.execute(
                "UPDATE feeds SET last_fetched = ? WHERE id = ?", (fetched_at, feed_id)
            )
            self.conn.commit()
        except Error:
            self.conn.rollback()
            raise
        if cursor.rowcount == 0:
            raise PersistenceError(f"Feed {feed_id} not found", kind=PersistenceError.NOT_FOUND)
        return fetched_at

    # Item operations

    def get_item_ids(self, feed_id: str) -> Set[str]:
        """Identifiers already stored for a feed, in one projection query."""
        return {row[0] for row in self.conn.execute("SELECT id FROM feed_items WHERE feed_id = ?", (feed_id,))}

    def insert_items_ignore_conflicts(self, items: List[FeedItem]) -> int:
        """Insert items in one transaction, skipping identifiers that already exist.

        Returns the number of rows actually written. A scope mismatch aborts the
        whole batch.
        """
        if not items:
            return 0
        before = self.conn.total_changes
        try:
            self.conn.executemany(
                f"INSERT OR IGNORE INTO feed_items ({', '.join(ITEM_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in ITEM_COLUMNS)})",
                [_item_params(item) for item in items],
            )
            self.conn.commit()
        except Error:
            self.conn.rollback()
            raise
        return self.conn.total_changes - before

    def count_items(
        self, feed_id: Optional[str] = None, user_id: Optional[str] = None, group_id: Optional[str] = None
    ) -> int:
        where, params = self._item_filter(feed_id, user_id, group_id)
        row = self.conn.execute(f"SELECT COUNT(*) FROM feed_items{where}", params).fetchone()
        return row[0] if row else 0

    def query_items(
        self,
        feed_id: Optional[str] = None,
        user_id: Optional[str] = None,
        group_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[FeedItem]:
        """Timeline query, newest first."""
        where, params = self._item_filter(feed_id, user_id, group_id)
        rows = self.conn.execute(
            f"SELECT * FROM feed_items{where} ORDER BY pub_date DESC, created_at DESC, id ASC LIMIT ? OFFSET ?",
            params + (max(int(limit), 0), max(int(offset), 0)),
        ).fetchall()
        return [_item_from_row(row) for row in rows]

    def integration_counts(self, user_id: Optional[str] = None, group_id: Optional[str] = None) -> Dict[str, int]:
        """Number of stored items per integration name within a scope."""
        where, params = self._item_filter(None, user_id, group_id)
        rows = self.conn.execute(
            f"SELECT integration_name, COUNT(*) AS total FROM feed_items{where} "
            "GROUP BY integration_name ORDER BY integration_name",
            params,
        ).fetchall()
        return {row["integration_name"]: row["total"] for row in rows}

    def list_items_for_migration(self) -> List[Tuple[str, str]]:
        """All (item id, feed id) pairs."""
        return [(row[0], row[1]) for row in self.conn.execute("SELECT id, feed_id FROM feed_items ORDER BY created_at")]

    def rename_item_id(self, old_id: str, new_id: str) -> bool:
        """Change an item's identifier. False when ``new_id`` is already taken."""
        if self.conn.execute("SELECT 1 FROM feed_items WHERE id = ?", (new_id,)).fetchone():
            return False
        try:
            cursor = self.conn.execute("UPDATE feed_items SET id = ? WHERE id = ?", (new_id, old_id))
            self.conn.commit()
        except Error:
            self.conn.rollback()
            raise
        if cursor.rowcount == 0:
            raise PersistenceError(f"Item {old_id} not found", kind=PersistenceError.NOT_FOUND)
        return True

    def _item_filter(
        self, feed_id: Optional[str], user_id: Optional[str], group_id: Optional[str]
    ) -> Tuple[str, Tuple]:
        clauses: List[str] = []
        params: List[Any] = []
        if feed_id:
            clauses.append("feed_id = ?")
            params.append(feed_id)
        if group_id:
            clauses.append("group_id = ?")
            params.append(group_id)
        elif user_id:
            clauses.append("user_id = ? AND group_id IS NULL")
            params.append(user_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, tuple(params)

"""Local persisted store for recipesync.

This module provides the reactive local store the sync engine consumes:
create, query, observe and batch-write rows by table. It is backed by a
single SQLite connection. All writes go through one re-entrant lock, so
there is exactly one serialized writer per process; each call is its own
transaction unless grouped with transaction().

Subscribers receive a ChangeEvent (table plus affected ids) after every
committed write and re-run their own queries.

All methods return plain dicts so callers stay independent of sqlite3.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Set,
    Union,
)

from .errors import PersistenceError

logger = logging.getLogger(__name__)

__all__ = ["ChangeEvent", "Database", "SCHEMA_VERSION"]

_SYNC_COLUMNS = """
    id TEXT PRIMARY KEY,
    sync_id TEXT NOT NULL,
    remote_id TEXT,
    user_id TEXT,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    last_sync TEXT,
    is_local INTEGER NOT NULL DEFAULT 1,
    is_deleted INTEGER NOT NULL DEFAULT 0
"""

# Each entry upgrades the schema by one version (PRAGMA user_version).
MIGRATIONS: List[str] = [
    # 1: syncable entities and per-user cursor
    f"""
    CREATE TABLE recipes (
        {_SYNC_COLUMNS},
        name TEXT NOT NULL DEFAULT '',
        description TEXT,
        instructions TEXT NOT NULL DEFAULT '',
        notes TEXT,
        nutrition TEXT,
        source TEXT,
        video_url TEXT,
        rating REAL,
        prep_time INTEGER,
        total_time INTEGER,
        servings INTEGER,
        is_approved INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE ingredients (
        {_SYNC_COLUMNS},
        recipe_id TEXT NOT NULL,
        amount REAL,
        unit TEXT,
        name TEXT NOT NULL DEFAULT '',
        type TEXT,
        original_str TEXT NOT NULL DEFAULT '',
        "order" INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX idx_ingredients_recipe ON ingredients (recipe_id);
    CREATE TABLE tags (
        {_SYNC_COLUMNS},
        name TEXT NOT NULL DEFAULT '',
        "order" INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE recipe_tags (
        {_SYNC_COLUMNS},
        recipe_id TEXT NOT NULL,
        tag_id TEXT NOT NULL
    );
    CREATE INDEX idx_recipe_tags_recipe ON recipe_tags (recipe_id);
    CREATE INDEX idx_recipe_tags_tag ON recipe_tags (tag_id);
    CREATE TABLE recipe_images (
        {_SYNC_COLUMNS},
        image_path TEXT,
        thumbnail_path TEXT,
        source_digest TEXT,
        needs_download INTEGER NOT NULL DEFAULT 0
    );
    CREATE UNIQUE INDEX idx_recipe_images_live
        ON recipe_images (sync_id) WHERE is_deleted = 0;
    CREATE TABLE user_data (
        id TEXT PRIMARY KEY,
        user TEXT NOT NULL UNIQUE,
        last_sync TEXT NOT NULL
    );
    """,
    # 2: parked conflicts with the remote version kept for inspection
    """
    CREATE TABLE sync_conflicts (
        id TEXT PRIMARY KEY,
        "table" TEXT NOT NULL,
        record_id TEXT NOT NULL,
        sync_id TEXT NOT NULL,
        user_id TEXT,
        reason TEXT NOT NULL,
        remote_payload TEXT,
        created_at TEXT NOT NULL,
        resolved_at TEXT,
        resolution TEXT
    );
    CREATE UNIQUE INDEX idx_sync_conflicts_open
        ON sync_conflicts ("table", record_id) WHERE resolved_at IS NULL;
    """,
    # 3: one live ingredient per recipe position; older duplicates become
    # pending tombstones first
    """
    UPDATE ingredients SET is_deleted = 1, sync_status = 'pending', is_local = 1
    WHERE is_deleted = 0 AND EXISTS (
        SELECT 1 FROM ingredients AS later
        WHERE later.is_deleted = 0
          AND later.recipe_id = ingredients.recipe_id
          AND later."order" = ingredients."order"
          AND later.sync_id > ingredients.sync_id
    );
    CREATE UNIQUE INDEX idx_ingredients_position
        ON ingredients (recipe_id, "order") WHERE is_deleted = 0;
    """,
    # 4: shopping list, notifications and per-user settings
    f"""
    CREATE TABLE shopping_items (
        {_SYNC_COLUMNS},
        amount REAL,
        unit TEXT,
        name TEXT NOT NULL DEFAULT '',
        type TEXT,
        "order" INTEGER NOT NULL DEFAULT 0,
        is_checked INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE notifications (
        {_SYNC_COLUMNS},
        content TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL DEFAULT 'info',
        link TEXT,
        is_read INTEGER NOT NULL DEFAULT 0,
        "order" INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE user_settings (
        {_SYNC_COLUMNS},
        language TEXT NOT NULL DEFAULT 'pl',
        auto_translate_recipes INTEGER NOT NULL DEFAULT 1,
        allow_friends_views_recipes INTEGER NOT NULL DEFAULT 1
    );
    """,
]

_RECIPE_TABLES = ("recipes", "ingredients", "tags", "recipe_tags", "recipe_images")
_ACCOUNT_TABLES = ("shopping_items", "notifications", "user_settings")
SYNC_TABLES = _RECIPE_TABLES + _ACCOUNT_TABLES

# Envelope indexes go into the migration that creates the table
for _migration, _tables in ((0, _RECIPE_TABLES), (3, _ACCOUNT_TABLES)):
    for _table in _tables:
        MIGRATIONS[_migration] += (
            f"\n    CREATE INDEX idx_{_table}_sync_id ON {_table} (sync_id);"
            f"\n    CREATE INDEX idx_{_table}_status ON {_table} (user_id, sync_status);"
        )

SCHEMA_VERSION = len(MIGRATIONS)


@dataclass(frozen=True)
class ChangeEvent:
    """Published after a committed write.

    Attributes:
        table: Table that changed
        ids: Ids of the affected rows
    """

    table: str
    ids: FrozenSet[str]


Subscriber = Callable[[ChangeEvent], None]


def _quote(identifier: str) -> str:
    return f'"{identifier}"'


class Database:
    """SQLite-backed local store with a serialized writer and change events."""

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Open (and migrate) the store.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for in-memory

        Raises:
            PersistenceError: If the database cannot be opened or migrated
        """
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._pending_events: Dict[str, Set[str]] = {}
        self._subscribers: Dict[int, tuple] = {}
        self._next_token = 0
        self._columns: Dict[str, List[str]] = {}

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._migrate()
        logger.info(f"Opened database at {self.db_path} (schema v{SCHEMA_VERSION})")

    def _migrate(self) -> None:
        with self._lock:
            try:
                current = self._conn.execute("PRAGMA user_version").fetchone()[0]
                for version in range(current, SCHEMA_VERSION):
                    logger.info(f"Migrating database to schema v{version + 1}")
                    self._conn.executescript(
                        "BEGIN;\n"
                        + MIGRATIONS[version]
                        + f"\nPRAGMA user_version = {version + 1};\nCOMMIT;"
                    )
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise PersistenceError(f"Database migration failed: {e}") from e

    @property
    def schema_version(self) -> int:
        with self._lock:
            return self._conn.execute("PRAGMA user_version").fetchone()[0]

    def columns(self, table: str) -> List[str]:
        """Get the column names of a table.

        Raises:
            PersistenceError: If the table does not exist
        """
        if table not in self._columns:
            with self._lock:
                rows = self._execute(f"PRAGMA table_info({_quote(table)})").fetchall()
            if not rows:
                raise PersistenceError(f"Unknown table: {table}")
            self._columns[table] = [row["name"] for row in rows]
        return self._columns[table]

    def _check_columns(self, table: str, names: Iterable[str]) -> None:
        known = set(self.columns(table))
        unknown = [n for n in names if n not in known]
        if unknown:
            raise PersistenceError(f"Unknown column(s) for {table}: {', '.join(unknown)}")

    # ========================================================================
    # Transactions
    # ========================================================================

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Group writes into one transaction on the serialized writer.

        Nested calls join the outermost transaction. Change events are
        published once the outermost transaction commits; nothing is
        published on rollback.

        Raises:
            PersistenceError: If the transaction cannot be opened or committed
        """
        events: Dict[str, Set[str]] = {}
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                try:
                    self._conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as e:
                    raise PersistenceError(f"Cannot open write transaction: {e}") from e
                self._pending_events = {}
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._pending_events = {}
                    try:
                        self._conn.execute("ROLLBACK")
                    except sqlite3.Error as e:
                        logger.error(f"Rollback failed: {e}")
                raise
            self._depth -= 1
            if outermost:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._pending_events = {}
                    self._conn.execute("ROLLBACK")
                    raise PersistenceError(f"Commit failed: {e}") from e
                events = self._pending_events
                self._pending_events = {}
        for table, ids in events.items():
            self._publish(ChangeEvent(table=table, ids=frozenset(ids)))

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise PersistenceError(f"{e} (while running: {sql.split()[0]} ...)") from e

    def _record_event(self, table: str, ids: Iterable[str]) -> None:
        self._pending_events.setdefault(table, set()).update(ids)

    # ========================================================================
    # Writes
    # ========================================================================

    def insert(self, table: str, row: Dict[str, Any]) -> None:
        """Insert a row. The row must contain an 'id'."""
        self._check_columns(table, row)
        names = list(row)
        sql = (
            f"INSERT INTO {_quote(table)} ({', '.join(_quote(n) for n in names)}) "
            f"VALUES ({', '.join('?' for _ in names)})"
        )
        with self.transaction():
            self._execute(sql, (row[n] for n in names))
            self._record_event(table, [row["id"]])

    def update(self, table: str, row_id: str, values: Dict[str, Any]) -> bool:
        """Update columns of a row by id.

        Returns:
            True if a row was updated
        """
        if not values:
            return False
        self._check_columns(table, values)
        assignments = ", ".join(f"{_quote(n)} = ?" for n in values)
        sql = f"UPDATE {_quote(table)} SET {assignments} WHERE id = ?"
        with self.transaction():
            cursor = self._execute(sql, [*values.values(), row_id])
            if cursor.rowcount:
                self._record_event(table, [row_id])
            return cursor.rowcount > 0

    def upsert(self, table: str, row: Dict[str, Any], key: str) -> None:
        """Insert a row, or update the existing row with the same unique key."""
        self._check_columns(table, row)
        names = list(row)
        updates = ", ".join(
            f"{_quote(n)} = excluded.{_quote(n)}" for n in names if n not in ("id", key)
        )
        sql = (
            f"INSERT INTO {_quote(table)} ({', '.join(_quote(n) for n in names)}) "
            f"VALUES ({', '.join('?' for _ in names)}) "
            f"ON CONFLICT({_quote(key)}) DO UPDATE SET {updates}"
        )
        with self.transaction():
            self._execute(sql, (row[n] for n in names))
            self._record_event(table, [row["id"]])

    def delete(self, table: str, row_ids: Iterable[str]) -> int:
        """Physically delete rows by id. Only compaction uses this.

        Returns:
            Number of rows deleted
        """
        ids = list(row_ids)
        if not ids:
            return 0
        sql = f"DELETE FROM {_quote(table)} WHERE id IN ({', '.join('?' for _ in ids)})"
        with self.transaction():
            cursor = self._execute(sql, ids)
            self._record_event(table, ids)
            return cursor.rowcount

    # ========================================================================
    # Reads
    # ========================================================================

    def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        """Get a row by id, or None."""
        rows = self.query(table, {"id": row_id})
        return rows[0] if rows else None

    def query(
        self,
        table: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Query rows by column equality.

        Args:
            table: Table name
            where: Column -> value; None matches NULL, a list/tuple/set matches any
            order_by: Column names; prefix with '-' for descending
            limit: Maximum number of rows

        Returns:
            List of row dicts
        """
        where = where or {}
        self._check_columns(table, where)
        clauses: List[str] = []
        params: List[Any] = []
        for name, value in where.items():
            if value is None:
                clauses.append(f"{_quote(name)} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    return []
                clauses.append(f"{_quote(name)} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            else:
                clauses.append(f"{_quote(name)} = ?")
                params.append(value)

        sql = f"SELECT * FROM {_quote(table)}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if order_by:
            self._check_columns(table, [c.lstrip("-") for c in order_by])
            sql += " ORDER BY " + ", ".join(
                f"{_quote(c[1:])} DESC" if c.startswith("-") else _quote(c) for c in order_by
            )
        if limit is not None:
            sql += f" LIMIT {int(limit)}"

        with self._lock:
            return [dict(row) for row in self._execute(sql, params).fetchall()]

    def count(self, table: str, where: Optional[Dict[str, Any]] = None) -> int:
        return len(self.query(table, where))

    # ========================================================================
    # Observation
    # ========================================================================

    def subscribe(
        self, callback: Subscriber, tables: Optional[Iterable[str]] = None
    ) -> Callable[[], None]:
        """Subscribe to change events.

        Args:
            callback: Called with a ChangeEvent after each committed write
            tables: Only deliver events for these tables (None for all)

        Returns:
            A function that cancels the subscription
        """
        table_filter = frozenset(tables) if tables is not None else None
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = (callback, table_filter)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def _publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for callback, table_filter in subscribers:
            if table_filter is not None and event.table not in table_filter:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Subscriber error for {event.table} change: {e}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
        logger.info(f"Closed database at {self.db_path}")

"""
Gatekeeper Database Manager
---------------------------
SQLite persistence layer for the relation store, with schema versioning.

Design:
- Schema version table for migrations
- Hard fail on downgrade (db.version > code.version)
- Auto-migrate forward (db.version < code.version)
- Explicit transaction boundaries
- One connection guarded by a re-entrant lock: a reader never observes
  the inside of another thread's transaction, and transactions never
  interleave

Usage:
    from infra.database import DatabaseManager

    db = DatabaseManager("gatekeeper.db")
    db.initialize()

    with db.transaction():
        db.execute("DELETE FROM relations WHERE source = ?", ("config",))
        db.execute("INSERT INTO relations ...", (...))

    rows = db.query("SELECT * FROM relations")
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, List, Optional, Sequence

from core.errors import StorageError
from infra.logging import get_logger

# Current schema version - increment on any schema change
SCHEMA_VERSION = 1

MEMORY_DB = ":memory:"


class DatabaseError(StorageError):
    """Database-specific errors."""
    pass


class SchemaMismatchError(DatabaseError):
    """Schema version mismatch (downgrade attempted)."""
    pass


class MigrationFailedError(DatabaseError):
    """Migration failed mid-way."""
    pass


class DatabaseManager:
    """
    SQLite database manager with schema versioning.

    Every statement runs under the manager's lock. Writes outside an
    explicit transaction are committed immediately.
    """

    def __init__(self, db_path: str = "gatekeeper.db"):
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._logger = get_logger("infra.database")
        self._initialized = False
        self._in_transaction = False

    @property
    def db_path(self) -> str:
        """Return the database file path."""
        return self._db_path

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """
        Initialize the database.

        - Creates database if not exists
        - Checks schema version
        - Runs migrations if needed (forward only)
        - Hard fails on downgrade
        """
        self._logger.info(f"Initializing database at {self._db_path}")

        if self._db_path != MEMORY_DB:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise DatabaseError(f"Cannot open database {self._db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row

        db_version = self._get_schema_version()

        if db_version is None:
            self._logger.info("Creating new database schema")
            self._create_schema()
            self._set_schema_version(SCHEMA_VERSION)
        elif db_version < SCHEMA_VERSION:
            self._logger.info(f"Migrating database from v{db_version} to v{SCHEMA_VERSION}")
            self._migrate(db_version, SCHEMA_VERSION)
        elif db_version > SCHEMA_VERSION:
            raise SchemaMismatchError(
                f"Database schema version ({db_version}) is newer than code version ({SCHEMA_VERSION}). "
                f"Downgrade is not supported. Please update the code or use a different database."
            )
        else:
            self._logger.debug(f"Database schema is up to date (v{db_version})")

        self._verify_integrity()

        self._initialized = True
        self._logger.info("Database initialized successfully")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                self._initialized = False

    def _get_schema_version(self) -> Optional[int]:
        """Get the current schema version from the database."""
        try:
            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY id DESC LIMIT 1"
            )
            row = cursor.fetchone()
            return row["version"] if row else None
        except sqlite3.OperationalError:
            # Table doesn't exist
            return None

    def _set_schema_version(self, version: int) -> None:
        """Set the schema version."""
        self._conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, datetime.now(timezone.utc).isoformat())
        )
        self._conn.commit()

    def _create_schema(self) -> None:
        """Create the initial database schema (v1)."""
        schema_sql = """
        -- Schema version tracking
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            version INTEGER NOT NULL,
            applied_at TEXT NOT NULL
        );

        -- Relation tuples: (subject) has (relation) over (object)
        CREATE TABLE IF NOT EXISTS relations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            subject_type TEXT NOT NULL,
            subject_id TEXT NOT NULL,
            relation TEXT NOT NULL,
            object_type TEXT NOT NULL,
            object_id TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'manual',
            created_at INTEGER NOT NULL
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_relations_tuple
            ON relations(subject_type, subject_id, relation, object_type, object_id);
        CREATE INDEX IF NOT EXISTS idx_relations_lookup
            ON relations(relation, object_type);
        CREATE INDEX IF NOT EXISTS idx_relations_source
            ON relations(source);
        """

        self._conn.executescript(schema_sql)
        self._conn.commit()

    def _migrate(self, from_version: int, to_version: int) -> None:
        """
        Run migrations from one version to another.

        Each migration is atomic. If any migration fails, the database is
        left at the last successful version.
        """
        migrations = {
            # 2: "ALTER TABLE relations ADD COLUMN expires_at INTEGER;"
        }

        for version in range(from_version + 1, to_version + 1):
            if version in migrations:
                self._logger.info(f"Applying migration to v{version}")
                try:
                    self._conn.executescript(migrations[version])
                    self._set_schema_version(version)
                except sqlite3.Error as e:
                    raise MigrationFailedError(
                        f"Migration to v{version} failed: {e}. "
                        f"Database is at v{version - 1}. Manual intervention required."
                    ) from e
            else:
                self._set_schema_version(version)

    def _verify_integrity(self) -> None:
        """Verify database integrity."""
        cursor = self._conn.execute("PRAGMA integrity_check")
        result = cursor.fetchone()[0]

        if result != "ok":
            raise DatabaseError(f"Database integrity check failed: {result}")

    def _require_connection(self) -> sqlite3.Connection:
        if not self._initialized or self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Context manager for explicit, serialized transactions.

        The lock is held for the whole block, so no other thread can read
        or write until the transaction commits or rolls back. Nested calls
        from the same thread join the outer transaction.

        Usage:
            with db.transaction():
                db.execute(...)
                db.execute(...)
        """
        with self._lock:
            conn = self._require_connection()

            if self._in_transaction:
                yield
                return

            self._in_transaction = True
            try:
                yield
                conn.commit()
            except BaseException as e:
                conn.rollback()
                self._logger.error(f"Transaction rolled back: {e}")
                raise
            finally:
                self._in_transaction = False

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """
        Run a write statement and return the number of changed rows.

        Commits immediately unless called inside transaction().
        """
        with self._lock:
            conn = self._require_connection()
            try:
                cursor = conn.execute(sql, params)
                if not self._in_transaction:
                    conn.commit()
                return cursor.rowcount
            except sqlite3.Error as e:
                if not self._in_transaction:
                    conn.rollback()
                raise DatabaseError(f"Write failed: {e}") from e

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        """Run a read statement and return all rows."""
        with self._lock:
            conn = self._require_connection()
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise DatabaseError(f"Read failed: {e}") from e

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        """Run a read statement and return the first row, if any."""
        with self._lock:
            conn = self._require_connection()
            try:
                return conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise DatabaseError(f"Read failed: {e}") from e

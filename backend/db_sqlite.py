"""
SQLite database connection utility.
Used for local development and tests, or as a fallback when Postgres is not available.
"""
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from config import SQLITE_PATH

logger = logging.getLogger("constellations")


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        title_key TEXT NOT NULL,
        type TEXT NOT NULL,
        external_ref TEXT NOT NULL DEFAULT '',
        description TEXT,
        year INTEGER,
        image_url TEXT,
        summary TEXT,
        meta TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (title_key, type, external_ref)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_nodes_external_ref ON nodes(external_ref);",
    """
    CREATE TABLE IF NOT EXISTS edges (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source_id INTEGER NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
        target_id INTEGER NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
        label TEXT,
        context_fingerprint TEXT NOT NULL DEFAULT '',
        context_ids TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (source_id, target_id, context_fingerprint)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_edges_source_context ON edges(source_id, context_fingerprint);",
    "CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_id);",
]


def adapt_query(query: str) -> str:
    """Adapt Postgres query syntax to SQLite."""
    return query.replace("NOW()", "CURRENT_TIMESTAMP").replace("%s", "?")


class _DictCursor:
    """Wraps a sqlite3 cursor so it speaks the same dialect as RealDictCursor."""

    def __init__(self, cur: sqlite3.Cursor):
        self._cur = cur

    def execute(self, query: str, params: Optional[tuple] = None) -> None:
        self._cur.execute(adapt_query(query), params or ())

    def fetchone(self) -> Optional[Dict[str, Any]]:
        row = self._cur.fetchone()
        return dict(row) if row is not None else None

    def fetchall(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._cur.fetchall()]

    @property
    def rowcount(self) -> int:
        return self._cur.rowcount


class SqliteDatabase:
    """Cache store database in a single SQLite file."""

    backend = "sqlite"

    def __init__(self, path: Optional[str] = None):
        self.path = path or SQLITE_PATH

    def get_db_connection(self) -> sqlite3.Connection:
        """Create a new database connection in autocommit mode (transactions are explicit)."""
        conn = sqlite3.connect(self.path, isolation_level=None, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[_DictCursor]:
        """
        Yield a cursor inside a write transaction.

        BEGIN IMMEDIATE takes the write lock up front, so concurrent writers
        are serialized instead of failing halfway through a batch.
        """
        conn = self.get_db_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield _DictCursor(conn.cursor())
            conn.execute("COMMIT")
        except Exception as e:
            logger.error(f"SQLite transaction failed: {e}")
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def execute_query(self, query: str, params: Optional[tuple] = None, fetch: bool = True):
        """Execute a single statement in its own transaction."""
        with self.transaction() as cur:
            cur.execute(query, params)
            return cur.fetchall() if fetch else None

    def ping(self) -> bool:
        rows = self.execute_query("SELECT 1 AS ok")
        return bool(rows) and rows[0]["ok"] == 1

    def init_schema(self) -> None:
        """Create the cache tables if they don't exist."""
        with self.transaction() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        logger.info(f"SQLite cache schema ready at {self.path}")

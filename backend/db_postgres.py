"""
Postgres database connection utility.
Backs the canonical node/edge cache store.
"""
import atexit
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from config import POSTGRES_CONNECTION_STRING

logger = logging.getLogger("constellations")

# ---------------------------------------------------------------------------
# Connection pool, shared across all threads / requests
# ---------------------------------------------------------------------------
_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()
_POOL_MIN = 1
_POOL_MAX = 20


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS nodes (
        id SERIAL PRIMARY KEY,
        title TEXT NOT NULL,
        title_key TEXT NOT NULL,
        type TEXT NOT NULL,
        external_ref TEXT NOT NULL DEFAULT '',
        description TEXT,
        year INTEGER,
        image_url TEXT,
        summary TEXT,
        meta TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (title_key, type, external_ref)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_nodes_external_ref ON nodes(external_ref);",
    """
    CREATE TABLE IF NOT EXISTS edges (
        id SERIAL PRIMARY KEY,
        source_id INTEGER NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
        target_id INTEGER NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
        label TEXT,
        context_fingerprint TEXT NOT NULL DEFAULT '',
        context_ids TEXT NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (source_id, target_id, context_fingerprint)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_edges_source_context ON edges(source_id, context_fingerprint);",
    "CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_id);",
]


def _get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Return the singleton connection pool, creating it lazily on first call."""
    global _pool
    if _pool is not None:
        return _pool
    with _pool_lock:
        if _pool is None:
            if not POSTGRES_CONNECTION_STRING:
                raise RuntimeError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not set")
            _pool = psycopg2.pool.ThreadedConnectionPool(
                _POOL_MIN,
                _POOL_MAX,
                POSTGRES_CONNECTION_STRING,
            )
            atexit.register(_pool.closeall)
            logger.info(f"[db_postgres] Connection pool created (min={_POOL_MIN}, max={_POOL_MAX})")
    return _pool


def get_db_connection():
    """
    Borrow a connection from the pool.

    Callers must hand it back with `return_db_connection`; prefer the
    `transaction` context manager, which does this automatically.
    """
    pool = _get_pool()
    try:
        return pool.getconn()
    except psycopg2.pool.PoolError as e:
        logger.error(f"[db_postgres] Pool exhausted: all {_POOL_MAX} connections in use: {e}")
        raise


def return_db_connection(conn, error: bool = False) -> None:
    """Return a borrowed connection to the pool."""
    _get_pool().putconn(conn, close=error)


class PostgresDatabase:
    """Cache store database backed by the shared psycopg2 pool."""

    backend = "postgres"

    @contextmanager
    def transaction(self) -> Iterator[RealDictCursor]:
        """
        Yield a dict cursor inside a single transaction.

        Commits when the block exits cleanly; rolls back and re-raises otherwise,
        so a batch of writes lands entirely or not at all.
        """
        conn = get_db_connection()
        error = False
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur
            conn.commit()
        except Exception as e:
            error = True
            logger.error(f"[db_postgres] Transaction failed: {e}")
            conn.rollback()
            raise
        finally:
            return_db_connection(conn, error=error)

    def execute_query(self, query: str, params: Optional[tuple] = None, fetch: bool = True):
        """Execute a single statement in its own transaction."""
        with self.transaction() as cur:
            cur.execute(query, params)
            return [dict(row) for row in cur.fetchall()] if fetch else None

    def ping(self) -> bool:
        rows = self.execute_query("SELECT 1 AS ok")
        return bool(rows) and rows[0]["ok"] == 1

    def init_schema(self) -> None:
        """Create the cache tables if they don't exist."""
        with self.transaction() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        logger.info("[db_postgres] Cache schema ready")

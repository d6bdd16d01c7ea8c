import json
import logging
import os
import threading
from datetime import datetime

import psycopg2
import psycopg2.extras
from psycopg2 import Error
from psycopg2.pool import ThreadedConnectionPool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

KV_TABLE = "kpi_kv"
BLOB_TABLE = "kpi_row_sets"

# Global connection pool
db_pool = None


def init_connection_pool():
    """Initialize the database connection pool."""
    global db_pool
    if db_pool is None:
        try:
            url = os.getenv("DATABASE_URL")
            if not url:
                logger.info("DATABASE_URL not set; persistence falls back to memory.")
                return None

            # Create a pool with min 1 and max 10 connections
            db_pool = ThreadedConnectionPool(1, 10, url)
            logger.info("Database connection pool created.")
        except Error as e:
            logger.error("Error creating connection pool: %s", e)
            db_pool = None
    return db_pool


def get_db_connection():
    """Get a connection from the pool.

    Returns None only when no database is configured. Pool and connect
    failures propagate as psycopg2 errors so callers can tell the two apart.
    """
    if db_pool is None:
        init_connection_pool()
    if db_pool is None:
        return None
    return db_pool.getconn()


def return_db_connection(connection):
    """Return a connection to the pool."""
    global db_pool
    if db_pool and connection:
        db_pool.putconn(connection)


def init_db(tables=(KV_TABLE, BLOB_TABLE)):
    """Create the key/value tables if they don't exist."""
    try:
        connection = get_db_connection()
    except Error as e:
        logger.error("Error getting connection from pool: %s", e)
        return False
    if not connection:
        logger.warning("No database connection; skipping table initialization.")
        return False
    try:
        cursor = connection.cursor()
        for table in tables:
            cursor.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    key VARCHAR(255) PRIMARY KEY,
                    value JSONB NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
        connection.commit()
        logger.info("Database initialized (%s).", ", ".join(tables))
        return True
    except Error as e:
        logger.error("Error initializing database: %s", e)
        connection.rollback()
        return False
    finally:
        return_db_connection(connection)


# ─────────────────────────────────────────────────────────────
# KEY / VALUE STORES
# ─────────────────────────────────────────────────────────────

class PostgresStore:
    """Last-write-wins JSON store backed by one table (key → JSONB)."""

    def __init__(self, table):
        self.table = table

    def _connect(self, action, key):
        try:
            connection = get_db_connection()
        except Error as e:
            logger.error("Database unreachable while %s %s/%s: %s", action, self.table, key, e)
            return None
        if connection is None:
            logger.warning("No database configured; %s %s/%s skipped", action, self.table, key)
        return connection

    def _execute(self, action, key, statements):
        """Run (sql, params) pairs in one transaction; affected rows, or None on failure."""
        connection = self._connect(action, key)
        if not connection:
            return None
        try:
            cursor = connection.cursor()
            affected = 0
            for sql, params in statements:
                cursor.execute(sql, params)
                affected += max(cursor.rowcount, 0)
            connection.commit()
            return affected
        except Error as e:
            logger.error("Error %s %s/%s: %s", action, self.table, key, e)
            connection.rollback()
            return None
        finally:
            return_db_connection(connection)

    def _upsert(self, key, value, stamp):
        return (
            f"""
            INSERT INTO {self.table} (key, value, updated_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
            """,
            (key, psycopg2.extras.Json(value), stamp),
        )

    def get(self, key):
        connection = self._connect("reading", key)
        if not connection:
            return None
        try:
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            cursor.execute(f"SELECT value FROM {self.table} WHERE key = %s", (key,))
            row = cursor.fetchone()
            return row["value"] if row else None
        except Error as e:
            logger.error("Error reading %s/%s: %s", self.table, key, e)
            return None
        finally:
            return_db_connection(connection)

    def set(self, key, value):
        return self._execute("writing", key, [self._upsert(key, value, datetime.now())]) is not None

    def set_many(self, items):
        """Upsert every key in one transaction; all or nothing."""
        stamp = datetime.now()
        statements = [self._upsert(k, v, stamp) for k, v in items.items()]
        return self._execute("writing", ", ".join(items), statements) is not None

    def clear(self, key):
        statement = (f"DELETE FROM {self.table} WHERE key = %s", (key,))
        return bool(self._execute("clearing", key, [statement]))


class MemoryStore:
    """In-process store with the same contract; values are JSON round-tripped."""

    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key, value):
        return self.set_many({key: value})

    def set_many(self, items):
        encoded = {k: json.dumps(v) for k, v in items.items()}
        with self._lock:
            self._data.update(encoded)
        return True

    def clear(self, key):
        with self._lock:
            return self._data.pop(key, None) is not None


_stores = None


def get_stores():
    """Return the (kv_store, blob_store) pair for this process."""
    global _stores
    if _stores is None:
        if init_connection_pool() and init_db():
            _stores = (PostgresStore(KV_TABLE), PostgresStore(BLOB_TABLE))
        else:
            _stores = (MemoryStore(), MemoryStore())
    return _stores


def reset_stores(stores=None):
    """Swap the process stores (tests inject MemoryStore pairs)."""
    global _stores
    _stores = stores

"""
Key-value store for watcher state using DuckDB.

Holds small JSON documents (the registered notification channels under
``social_bots``) in a single table. Each configuration profile gets its own
database file.
"""

import duckdb
import json
import os
import logging
import time
import random
from typing import Any, List
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class DatabaseLockError(Exception):
    """Raised when database is locked by another process"""
    pass


class KeyValueStore:
    """JSON values keyed by string, with retry on DuckDB lock conflicts"""

    def __init__(self, database_path: str):
        self.database_path = database_path

        # ensure database directory exists
        directory = os.path.dirname(database_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self.init_database()

        logger.info(f"Initialized KeyValueStore at {database_path}")

    def is_database_lock_error(self, error: Exception) -> bool:
        """Check if error is a DuckDB lock conflict"""
        error_str = str(error).lower()
        return (
            "could not set lock on file" in error_str or
            "conflicting lock is held" in error_str or
            "database is locked" in error_str or
            "io error" in error_str and "lock" in error_str
        )

    @contextmanager
    def get_connection_with_retry(self, max_retries: int = 8, base_delay: float = 1.0):
        """Context manager for database connections with retry on lock conflicts"""
        for attempt in range(max_retries):
            try:
                conn = duckdb.connect(self.database_path)
            except Exception as e:
                if self.is_database_lock_error(e) and attempt < max_retries - 1:
                    # exponential backoff with jitter
                    delay = base_delay * (2 ** attempt) * (1 + random.uniform(-0.1, 0.1))
                    logger.warning(f"Database locked, retrying in {delay:.1f}s (attempt {attempt + 1}/{max_retries})")
                    time.sleep(delay)
                    continue
                if self.is_database_lock_error(e):
                    raise DatabaseLockError(f"Database locked after {max_retries} attempts: {e}")
                raise
            try:
                yield conn
            finally:
                conn.close()
            return

    def init_database(self):
        """Create the key-value table if it does not exist"""
        with self.get_connection_with_retry() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key VARCHAR PRIMARY KEY,
                    value JSON,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

    def set(self, key: str, value: Any) -> None:
        """Store value (JSON-serializable) under key, replacing any previous value"""
        payload = json.dumps(value)
        with self.get_connection_with_retry() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO kv_store (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
            """, [key, payload])
        logger.debug(f"Stored key '{key}'")

    def get(self, key: str) -> Any:
        """Return the decoded value stored under key; KeyError if absent"""
        with self.get_connection_with_retry() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", [key]).fetchone()
        if row is None:
            raise KeyError(key)
        value = row[0]
        if isinstance(value, str):
            return json.loads(value)
        return value

    def delete(self, key: str) -> bool:
        """Remove key; returns False when it was not present"""
        with self.get_connection_with_retry() as conn:
            row = conn.execute("SELECT 1 FROM kv_store WHERE key = ?", [key]).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM kv_store WHERE key = ?", [key])
        return True

    def keys(self) -> List[str]:
        with self.get_connection_with_retry() as conn:
            rows = conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
        return [row[0] for row in rows]

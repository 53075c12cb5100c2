"""
Data Cache
Local SQLite key/value store backing the reconciled todo cache and
provisioned contract references
"""

import os
import json
import time
import sqlite3
from typing import Any, Dict, Optional
from loguru import logger


class DataCache:
    """
    SQLite JSON store

    Keys are namespaced strings ("todo:<network>:<owner>:<id>"), values
    are JSON documents. Pass ":memory:" for a throwaway store.
    """

    def __init__(self, db_path: str = "data/cache/todo_chain.db"):
        """
        Initialize Data Cache

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = db_path
        self.conn = None

        self._init_db()

        logger.info(f"Data Cache initialized: {db_path}")

    def _init_db(self):
        """Initialize SQLite database"""
        directory = os.path.dirname(self.db_path)
        if self.db_path != ":memory:" and directory:
            os.makedirs(directory, exist_ok=True)

        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        cursor = self.conn.cursor()
        # Key prefixes are matched with LIKE
        cursor.execute('PRAGMA case_sensitive_like = ON')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS cache (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        ''')

        self.conn.commit()

    def set(self, key: str, value: Any):
        """
        Set cache value

        Args:
            key: Cache key
            value: Value to cache (will be JSON serialized)
        """
        value_json = json.dumps(value)

        cursor = self.conn.cursor()
        cursor.execute(
            'INSERT INTO cache (key, value, timestamp) VALUES (?, ?, ?) '
            'ON CONFLICT(key) DO UPDATE SET value = excluded.value, timestamp = excluded.timestamp',
            (key, value_json, time.time())
        )
        self.conn.commit()

        logger.debug(f"Cache set: {key}")

    def get(self, key: str) -> Optional[Any]:
        cursor = self.conn.cursor()
        cursor.execute('SELECT value FROM cache WHERE key = ?', (key,))

        row = cursor.fetchone()
        if not row:
            return None

        return json.loads(row[0])

    def scan(self, prefix: str) -> Dict[str, Any]:
        """
        All entries whose key starts with prefix, in insertion order

        Args:
            prefix: Key prefix

        Returns:
            Dict of key -> value
        """
        escaped = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')

        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT key, value FROM cache WHERE key LIKE ? ESCAPE '\\' ORDER BY rowid",
            (escaped + '%',)
        )

        return {key: json.loads(value) for key, value in cursor.fetchall()}

    def delete(self, key: str):
        cursor = self.conn.cursor()
        cursor.execute('DELETE FROM cache WHERE key = ?', (key,))
        self.conn.commit()

    def clear_prefix(self, prefix: str) -> int:
        """Delete every entry under prefix, returns count"""
        keys = list(self.scan(prefix))
        cursor = self.conn.cursor()
        cursor.executemany('DELETE FROM cache WHERE key = ?', [(k,) for k in keys])
        self.conn.commit()

        if keys:
            logger.info(f"Cleared {len(keys)} cache entries under {prefix}")
        return len(keys)

    def get_stats(self) -> dict:
        cursor = self.conn.cursor()
        cursor.execute('SELECT COUNT(*) FROM cache')
        total = cursor.fetchone()[0]

        cursor.execute('SELECT page_count * page_size FROM pragma_page_count(), pragma_page_size()')
        size_bytes = cursor.fetchone()[0]

        return {
            'total_entries': total,
            'size_bytes': size_bytes,
            'size_kb': size_bytes / 1024
        }

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def __del__(self):
        """Cleanup on deletion"""
        self.close()

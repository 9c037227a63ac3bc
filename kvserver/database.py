"""Database schema and connection management for SQLite."""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"


class Database:
    """
    One SQLite connection shared by the KV buckets and the message stream.

    The transport server runs on a single event loop, so a single connection
    serializes every statement; ":memory:" gives a throwaway database for
    tests and ephemeral servers.
    """

    def __init__(self, path: str = MEMORY_DATABASE):
        self.path = path

        if path != MEMORY_DATABASE:
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._closed = False

        self.init_schema()

    def init_schema(self) -> None:
        """
        Create tables if they don't exist.
        """
        with self.transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS kv_log (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    bucket TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value BLOB,
                    is_tombstone INTEGER NOT NULL DEFAULT 0,
                    write_timestamp INTEGER NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS stream_messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject TEXT NOT NULL,
                    data BLOB NOT NULL,
                    published_at INTEGER NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS consumer_acks (
                    durable_name TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    PRIMARY KEY(durable_name, seq)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_kv_log_bucket_key ON kv_log(bucket, key, seq)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_stream_subject ON stream_messages(subject, seq)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_consumer_acks_subject ON consumer_acks(subject, seq)
            """)

        logger.debug(f"Database schema initialized at {self.path}")

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """
        Context manager for one transaction.

        Commits on success and rolls back if the block raises.
        """
        cursor = self._conn.cursor()
        try:
            yield cursor
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        finally:
            cursor.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._conn.close()
        logger.debug(f"Database closed at {self.path}")

"""
KV bucket implementations.

SqliteKVStore keeps an append-only log per bucket in the transport server's
database; MemoryKVStore keeps the same semantics in a dict for tests and
single-process setups.
"""

import logging
import sqlite3
import time
from typing import Callable, Dict, List, Optional

from common.constants import DEFAULT_KV_HISTORY_PER_KEY
from common.exceptions import KVStoreError
from common.types import KVEntry, KVStore
from kvserver.database import Database

logger = logging.getLogger(__name__)


def current_time_ms() -> int:
    return int(time.time() * 1000)


class SqliteKVStore(KVStore):
    """
    Log-backed bucket stored in the kv_log table.

    Every put or delete appends a row; get returns the newest row for the key.
    Only the newest `history` rows per key are kept.
    """

    def __init__(
        self,
        database: Database,
        bucket: str,
        history: int = DEFAULT_KV_HISTORY_PER_KEY,
        time_source: Callable[[], int] = current_time_ms
    ):
        """
        Initialize the bucket.

        Args:
            database: Shared transport database
            bucket: Bucket name
            history: Rows kept per key (at least 1)
            time_source: Returns the current time in milliseconds
        """
        self.database = database
        self.bucket = bucket
        self.history = max(1, history)
        self.time_source = time_source

    async def put(self, key: str, value: bytes) -> None:
        self._append(key, value, False)

    async def delete(self, key: str) -> None:
        self._append(key, None, True)

    async def get(self, key: str) -> Optional[KVEntry]:
        try:
            with self.database.transaction() as cursor:
                cursor.execute(
                    """
                    SELECT value, is_tombstone, write_timestamp FROM kv_log
                    WHERE bucket = ? AND key = ?
                    ORDER BY seq DESC LIMIT 1
                    """,
                    (self.bucket, key)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise KVStoreError(f"Failed to read {self.bucket}/{key}: {e}") from e

        if row is None:
            return None

        return KVEntry(
            value=bytes(row["value"]) if row["value"] is not None else None,
            is_tombstone=bool(row["is_tombstone"]),
            write_timestamp=row["write_timestamp"]
        )

    async def keys(self) -> List[str]:
        try:
            with self.database.transaction() as cursor:
                cursor.execute(
                    "SELECT DISTINCT key FROM kv_log WHERE bucket = ? ORDER BY key",
                    (self.bucket,)
                )
                return [row["key"] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise KVStoreError(f"Failed to list keys of {self.bucket}: {e}") from e

    def _append(self, key: str, value: Optional[bytes], is_tombstone: bool) -> None:
        try:
            with self.database.transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO kv_log (bucket, key, value, is_tombstone, write_timestamp)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (self.bucket, key, value, 1 if is_tombstone else 0, self.time_source())
                )
                cursor.execute(
                    """
                    DELETE FROM kv_log
                    WHERE bucket = ? AND key = ? AND seq NOT IN (
                        SELECT seq FROM kv_log WHERE bucket = ? AND key = ?
                        ORDER BY seq DESC LIMIT ?
                    )
                    """,
                    (self.bucket, key, self.bucket, key, self.history)
                )
        except sqlite3.Error as e:
            raise KVStoreError(f"Failed to write {self.bucket}/{key}: {e}") from e

        logger.debug(
            f"{'Tombstoned' if is_tombstone else 'Stored'} {self.bucket}/{key}"
        )


class MemoryKVStore(KVStore):
    """
    In-memory bucket with the same tombstone semantics as SqliteKVStore.

    Structure:
        _entries[key] = KVEntry (latest write only)
    """

    def __init__(self, bucket: str, time_source: Callable[[], int] = current_time_ms):
        self.bucket = bucket
        self.time_source = time_source
        self._entries: Dict[str, KVEntry] = {}

    async def put(self, key: str, value: bytes) -> None:
        self._entries[key] = KVEntry(value=value, is_tombstone=False, write_timestamp=self.time_source())

    async def delete(self, key: str) -> None:
        self._entries[key] = KVEntry(value=None, is_tombstone=True, write_timestamp=self.time_source())

    async def get(self, key: str) -> Optional[KVEntry]:
        return self._entries.get(key)

    async def keys(self) -> List[str]:
        return sorted(self._entries)

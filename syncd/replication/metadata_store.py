"""
Per-bucket, per-key record of the last accepted Version at this site.

The store is in-memory only. After a restart it is empty, so the next
operation observed for a key is accepted as the new incumbent until the store
is repopulated by further traffic or a reconciliation pass.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple

from syncd.replication.lww import Version


class VersionMetadataStore:
    """
    In-memory mapping (bucket, key) -> Version.

    Structure:
        _data[bucket][key] = Version

    Also owns the per-key lock table that makes read-decide-write sequences
    atomic for a key across the local write path, the replication consumer
    and reconciliation.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Version]] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    def get(self, bucket: str, key: str) -> Optional[Version]:
        """
        Get the accepted version for a key.

        Args:
            bucket: Bucket name
            key: Key within the bucket

        Returns:
            Version if one was recorded, None otherwise
        """
        versions = self._data.get(bucket)
        if versions is None:
            return None
        return versions.get(key)

    def set(self, bucket: str, key: str, version: Version) -> None:
        """
        Record the accepted version for a key, replacing any previous one.

        Args:
            bucket: Bucket name
            key: Key within the bucket
            version: Winning version
        """
        self._data.setdefault(bucket, {})[key] = version

    def all(self, bucket: str) -> Dict[str, Version]:
        """
        Get a copy of every recorded version in a bucket.

        Args:
            bucket: Bucket name

        Returns:
            Dict of key -> Version (a copy; safe to mutate)
        """
        return dict(self._data.get(bucket, {}))

    def __len__(self) -> int:
        return sum(len(versions) for versions in self._data.values())

    @asynccontextmanager
    async def key_lock(self, bucket: str, key: str) -> AsyncIterator[None]:
        """
        Hold the critical section for a key.

        Locks are created on demand and dropped once no task holds or waits
        on them, so the table only contains keys with in-flight work.

        Args:
            bucket: Bucket name
            key: Key within the bucket
        """
        lock_key = (bucket, key)
        lock = self._locks.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[lock_key] = lock
        self._lock_users[lock_key] = self._lock_users.get(lock_key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._lock_users[lock_key] -= 1
            if self._lock_users[lock_key] == 0:
                del self._lock_users[lock_key]
                del self._locks[lock_key]

    def active_locks(self) -> int:
        """Number of keys that currently have a holder or waiter."""
        return len(self._locks)

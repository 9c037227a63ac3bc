"""Shared contracts for the KV store and the replication channel."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class KVEntry:
    """
    Latest entry stored for a key.

    A tombstone has no value; its write_timestamp records when the delete happened.
    """
    value: Optional[bytes]
    is_tombstone: bool
    write_timestamp: int


class KVStore(ABC):
    """
    Log-backed key-value bucket.

    Deletes write a tombstone instead of removing the key, so keys() keeps
    reporting deleted keys and get() keeps returning their last write.
    """

    bucket: str

    @abstractmethod
    async def put(self, key: str, value: bytes) -> None:
        """Write a value for the key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[KVEntry]:
        """Return the latest entry for the key, or None if it was never written."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Write a tombstone for the key."""

    @abstractmethod
    async def keys(self) -> List[str]:
        """Return every key ever written, tombstoned ones included."""

    async def close(self) -> None:
        """Release resources held by the store."""


class Delivery(ABC):
    """A message received from a subscription."""

    data: bytes

    @abstractmethod
    async def ack(self) -> None:
        """Acknowledge the message; it will not be delivered again."""

    @abstractmethod
    async def reject(self) -> None:
        """Terminate the message; it will not be delivered again and was not processed."""


class Subscription(ABC):
    """Async iterator of deliveries for one subject."""

    def __aiter__(self):
        return self

    async def __anext__(self) -> Delivery:
        delivery = await self.next_delivery()
        if delivery is None:
            raise StopAsyncIteration
        return delivery

    @abstractmethod
    async def next_delivery(self) -> Optional[Delivery]:
        """Wait for the next delivery; None once the subscription is closed."""

    @abstractmethod
    async def close(self) -> None:
        """Stop receiving deliveries."""


class ReplicationChannel(ABC):
    """
    Publish/subscribe transport for replicated operations.

    A subscription with a durable_name is acknowledged and at-least-once;
    without one it is fire-and-forget and ack/reject are no-ops.
    """

    @abstractmethod
    async def publish(self, subject: str, data: bytes) -> None:
        """Publish a payload on the subject."""

    @abstractmethod
    async def subscribe(self, subject: str, durable_name: Optional[str] = None) -> Subscription:
        """Open a subscription on the subject."""

    async def close(self) -> None:
        """Close the channel and release its connection."""

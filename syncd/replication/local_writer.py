"""
Local write gateway.

The only sanctioned entry point for local mutations: each put or delete is
turned into an Operation, applied to the local KV store, recorded in the
version metadata store and published on the replication channel, in that order.
"""

import logging

from common.exceptions import TransportError
from common.types import KVStore, ReplicationChannel
from syncd.replication.clock import LogicalClock
from syncd.replication.lww import Operation, OperationKind, version_from_operation
from syncd.replication.metadata_store import VersionMetadataStore

logger = logging.getLogger(__name__)


class LocalWriteGateway:
    """
    Converts local puts and deletes into replicated operations.

    Every call emits exactly one operation. A failed KV write raises and
    publishes nothing; a failed publish is logged and the write stands,
    to be carried to peers by the next reconciliation pass.
    """

    def __init__(
        self,
        kv: KVStore,
        channel: ReplicationChannel,
        metadata_store: VersionMetadataStore,
        clock: LogicalClock,
        bucket: str,
        node_id: str,
        subject: str
    ):
        """
        Initialize the gateway.

        Args:
            kv: Local KV store for the bucket
            channel: Replication channel operations are published on
            metadata_store: Shared version metadata store
            clock: Site logical clock
            bucket: Bucket name written into every operation
            node_id: This site's node identifier
            subject: Replication subject
        """
        self.kv = kv
        self.channel = channel
        self.metadata_store = metadata_store
        self.clock = clock
        self.bucket = bucket
        self.node_id = node_id
        self.subject = subject

    async def put(self, key: str, value: str) -> Operation:
        """
        Write a value locally and replicate it.

        Args:
            key: Key to write
            value: String value

        Returns:
            The emitted Operation

        Raises:
            Exception: Whatever the KV store raised; nothing is published in that case
        """
        return await self._write(OperationKind.PUT, key, value)

    async def delete(self, key: str) -> Operation:
        """
        Tombstone a key locally and replicate the delete.

        Args:
            key: Key to delete

        Returns:
            The emitted Operation
        """
        return await self._write(OperationKind.DELETE, key, None)

    async def _write(self, kind: OperationKind, key: str, value) -> Operation:
        async with self.metadata_store.key_lock(self.bucket, key):
            operation = Operation(
                kind=kind,
                bucket=self.bucket,
                key=key,
                value=value,
                timestamp=self.clock.tick(),
                origin_node=self.node_id
            )

            if kind is OperationKind.PUT:
                await self.kv.put(key, value.encode('utf-8'))
            else:
                await self.kv.delete(key)

            self.metadata_store.set(self.bucket, key, version_from_operation(operation))

        await self._publish(operation)
        return operation

    async def _publish(self, operation: Operation) -> None:
        try:
            await self.channel.publish(self.subject, operation.to_json())
        except TransportError as e:
            logger.warning(
                f"Local {operation.kind.value.upper()} applied but not published, "
                f"left for reconciliation [key={operation.key}, ts={operation.timestamp}]: {e}"
            )
            return

        logger.info(
            f"Local {operation.kind.value.upper()} applied and published "
            f"[key={operation.key}, ts={operation.timestamp}, subject={self.subject}]"
        )

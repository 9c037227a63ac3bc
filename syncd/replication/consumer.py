"""
Replication consumer.

Receives operations from the replication channel and applies the ones that
win under LWW to the local KV store. Per message:

    Received -> Decoded -> Filtered -> Resolved -> Applied | Skipped
             -> Acknowledged | Rejected

A malformed payload is rejected and never retried. An unexpected failure while
applying leaves the message unacknowledged so the transport redelivers it.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from common.exceptions import OperationDecodeError, TransportError
from common.types import Delivery, KVStore, ReplicationChannel, Subscription
from syncd.replication.clock import LogicalClock
from syncd.replication.lww import Operation, version_from_operation, wins
from syncd.replication.metadata_store import VersionMetadataStore

logger = logging.getLogger(__name__)

RESUBSCRIBE_DELAY_SECONDS = 2.0


class MessageOutcome(str, Enum):
    """Terminal state of one received message."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FILTERED = "filtered"
    REJECTED = "rejected"


class ReplicationConsumer:
    """
    Applies remote operations using LWW rules.

    Runs one background task that processes deliveries one at a time to
    completion; the per-key lock keeps each apply atomic with respect to
    local writes and reconciliation running on the same event loop.
    """

    def __init__(
        self,
        kv: KVStore,
        channel: ReplicationChannel,
        metadata_store: VersionMetadataStore,
        clock: LogicalClock,
        bucket: str,
        node_id: str,
        subject: str,
        durable_name: Optional[str] = None,
        resubscribe_delay: float = RESUBSCRIBE_DELAY_SECONDS
    ):
        """
        Initialize the consumer.

        Args:
            kv: Local KV store for the bucket
            channel: Replication channel to subscribe on
            metadata_store: Shared version metadata store
            clock: Site logical clock
            bucket: Bucket this site replicates; other buckets are ignored
            node_id: This site's node identifier; its own operations are ignored
            subject: Replication subject
            durable_name: Durable consumer name, or None for fire-and-forget delivery
            resubscribe_delay: Seconds to wait before resubscribing after a transport failure
        """
        self.kv = kv
        self.channel = channel
        self.metadata_store = metadata_store
        self.clock = clock
        self.bucket = bucket
        self.node_id = node_id
        self.subject = subject
        self.durable_name = durable_name
        self.resubscribe_delay = resubscribe_delay

        self.subscription: Optional[Subscription] = None
        self.task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        """Start the consumer background task."""
        if self.running:
            logger.warning("Replication consumer already running")
            return

        self.running = True
        self.task = asyncio.create_task(self._consume_loop())
        mode = f"durable={self.durable_name}" if self.durable_name else "fire-and-forget"
        logger.info(
            f"Replication consumer started [subject={self.subject}, bucket={self.bucket}, "
            f"node_id={self.node_id}, {mode}]"
        )

    async def stop(self):
        """
        Stop the consumer.

        Closing the subscription ends the iteration after the message in
        flight, so no apply is left half done.
        """
        if not self.running:
            return

        self.running = False

        if self.subscription:
            await self.subscription.close()

        if self.task:
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        logger.info("Replication consumer stopped")

    async def _consume_loop(self):
        """
        Main consumer loop.

        Resubscribes after transport failures; the site keeps accepting
        local writes in the meantime.
        """
        while self.running:
            try:
                self.subscription = await self.channel.subscribe(self.subject, self.durable_name)
                if not self.running:
                    await self.subscription.close()
                    break
                async for delivery in self.subscription:
                    try:
                        await self.handle_delivery(delivery)
                    except Exception as e:
                        logger.error(
                            f"Failed to apply replicated message, left unacknowledged for redelivery: {e}",
                            exc_info=True
                        )
                    if not self.running:
                        break
            except TransportError as e:
                logger.error(f"Replication subscription failed on {self.subject}: {e}")
            except Exception as e:
                logger.error(f"Error in replication consumer loop: {e}", exc_info=True)

            if self.running:
                await asyncio.sleep(self.resubscribe_delay)

    async def handle_delivery(self, delivery: Delivery) -> MessageOutcome:
        """
        Decode, process and acknowledge one delivery.

        Args:
            delivery: Message received from the subscription

        Returns:
            Terminal outcome of the message

        Raises:
            Exception: If applying fails; the message is not acknowledged
        """
        try:
            operation = Operation.from_json(delivery.data)
        except OperationDecodeError as e:
            logger.error(f"Rejected malformed replication payload ({len(delivery.data)} bytes): {e}")
            await delivery.reject()
            return MessageOutcome.REJECTED

        outcome = await self.process(operation)
        try:
            await delivery.ack()
        except TransportError as e:
            logger.warning(
                f"Processed replicated {operation.kind.value.upper()} but acknowledgement failed "
                f"[key={operation.key}, origin={operation.origin_node}, ts={operation.timestamp}]; "
                f"it may be redelivered: {e}"
            )
        return outcome

    async def process(self, operation: Operation) -> MessageOutcome:
        """
        Filter, resolve and conditionally apply a decoded operation.

        Args:
            operation: Remote operation

        Returns:
            APPLIED, SKIPPED or FILTERED
        """
        if operation.origin_node == self.node_id:
            logger.debug(f"Ignoring own operation echo [key={operation.key}, ts={operation.timestamp}]")
            return MessageOutcome.FILTERED

        if operation.bucket != self.bucket:
            logger.debug(
                f"Ignoring operation for bucket {operation.bucket} [key={operation.key}]"
            )
            return MessageOutcome.FILTERED

        async with self.metadata_store.key_lock(self.bucket, operation.key):
            self.clock.observe(operation.timestamp)

            candidate = version_from_operation(operation)
            incumbent = self.metadata_store.get(self.bucket, operation.key)

            if not wins(candidate, incumbent):
                logger.debug(
                    f"Skipped remote {operation.kind.value.upper()} {operation.key} from "
                    f"{operation.origin_node}: local version newer "
                    f"(remote ts={candidate.timestamp}, local ts={incumbent.timestamp})"
                )
                return MessageOutcome.SKIPPED

            if operation.is_delete:
                await self.kv.delete(operation.key)
            else:
                await self.kv.put(operation.key, operation.value.encode('utf-8'))

            self.metadata_store.set(self.bucket, operation.key, candidate)

        logger.info(
            f"Applied remote {operation.kind.value.upper()} [key={operation.key}, "
            f"origin={operation.origin_node}, ts={operation.timestamp}]"
        )
        return MessageOutcome.APPLIED

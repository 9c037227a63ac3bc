"""
Site wiring.

A SyncNode owns the shared clock and metadata store of one site and the
components built on them: the local write gateway, the replication consumer
and, when a peer is configured, the reconciliation engine and its timer.
"""

import logging
from typing import Dict, Optional

from common.exceptions import KeyNotFoundError, ReconciliationDisabledError
from common.types import KVEntry, KVStore, ReplicationChannel
from kvserver.client import RemoteChannel, RemoteKVStore, TransportClient
from syncd.config import SyncConfig
from syncd.replication.clock import LogicalClock
from syncd.replication.consumer import ReplicationConsumer
from syncd.replication.local_writer import LocalWriteGateway
from syncd.replication.lww import Version
from syncd.replication.metadata_store import VersionMetadataStore
from syncd.replication.reconciliation import (
    PeriodicReconciler,
    ReconciliationEngine,
    ReconciliationReport,
)

logger = logging.getLogger(__name__)


class SyncNode:
    """
    One site of the replicated namespace.

    Transport handles are created once and reused for the life of the node;
    stop() closes them.
    """

    def __init__(
        self,
        config: SyncConfig,
        local_kv: KVStore,
        channel: ReplicationChannel,
        peer_kv: Optional[KVStore] = None,
        clock: Optional[LogicalClock] = None,
        metadata_store: Optional[VersionMetadataStore] = None,
        local_client: Optional[TransportClient] = None
    ):
        """
        Initialize the node.

        Args:
            config: Site configuration
            local_kv: Local KV store for the configured bucket
            channel: Replication channel
            peer_kv: Peer site's KV store; None disables reconciliation
            clock: Logical clock (a fresh one by default)
            metadata_store: Version metadata store (a fresh one by default)
            local_client: Transport client used for health checks, if any
        """
        self.config = config
        self.local_kv = local_kv
        self.channel = channel
        self.peer_kv = peer_kv
        self.local_client = local_client

        self.clock = clock or LogicalClock()
        self.metadata_store = metadata_store or VersionMetadataStore()

        self.gateway = LocalWriteGateway(
            kv=local_kv,
            channel=channel,
            metadata_store=self.metadata_store,
            clock=self.clock,
            bucket=config.bucket_name,
            node_id=config.local_node_id,
            subject=config.replication_channel_name
        )

        self.consumer = ReplicationConsumer(
            kv=local_kv,
            channel=channel,
            metadata_store=self.metadata_store,
            clock=self.clock,
            bucket=config.bucket_name,
            node_id=config.local_node_id,
            subject=config.replication_channel_name,
            durable_name=config.durable_name
        )

        self.reconciliation: Optional[ReconciliationEngine] = None
        self.periodic_reconciler: Optional[PeriodicReconciler] = None

        if peer_kv is not None:
            self.reconciliation = ReconciliationEngine(
                local_kv=local_kv,
                peer_kv=peer_kv,
                metadata_store=self.metadata_store,
                clock=self.clock,
                bucket=config.bucket_name,
                node_id=config.local_node_id
            )
            if config.reconciliation_interval_ms > 0:
                self.periodic_reconciler = PeriodicReconciler(
                    self.reconciliation, config.reconciliation_interval_ms
                )

        self.running = False

    @classmethod
    def connect(cls, config: SyncConfig) -> 'SyncNode':
        """
        Build a node whose KV stores and channel live on transport servers.

        Channels are opened lazily on first use.

        Args:
            config: Validated site configuration

        Returns:
            SyncNode ready to start
        """
        local_client = TransportClient(config.local_transport_address)
        local_kv = RemoteKVStore(local_client, config.bucket_name)
        channel = RemoteChannel(local_client)

        peer_kv = None
        if config.peer_transport_address:
            peer_kv = RemoteKVStore(TransportClient(config.peer_transport_address), config.bucket_name)

        return cls(config, local_kv, channel, peer_kv=peer_kv, local_client=local_client)

    @property
    def reconciliation_enabled(self) -> bool:
        return self.reconciliation is not None

    async def start(self):
        """Start the replication consumer and, if configured, periodic reconciliation."""
        if self.running:
            return

        logger.info(
            f"Starting site {self.config.local_node_id} [bucket={self.config.bucket_name}, "
            f"transport={self.config.local_transport_address}, "
            f"peer={self.config.peer_transport_address or 'none'}]"
        )

        if self.local_client is not None and not await self.local_client.ping():
            logger.warning(
                f"Transport at {self.config.local_transport_address} is not reachable yet; "
                f"local writes will fail until it is"
            )

        self.running = True
        await self.consumer.start()

        if self.periodic_reconciler is not None:
            await self.periodic_reconciler.start()
        elif self.reconciliation is None:
            logger.info("No peer configured, reconciliation disabled")
        else:
            logger.info("Periodic reconciliation disabled (interval is 0)")

    async def stop(self):
        """
        Stop background work and close transport handles.

        The consumer finishes the message in flight before its subscription closes.
        """
        if not self.running:
            return

        self.running = False
        logger.info(f"Stopping site {self.config.local_node_id}")

        if self.periodic_reconciler is not None:
            await self.periodic_reconciler.stop()

        await self.consumer.stop()

        await self.channel.close()
        await self.local_kv.close()
        if self.peer_kv is not None:
            await self.peer_kv.close()

        logger.info(f"Site {self.config.local_node_id} stopped")

    async def reconcile_now(self) -> ReconciliationReport:
        """
        Run one reconciliation cycle immediately.

        Raises:
            ReconciliationDisabledError: If no peer is configured
        """
        if self.reconciliation is None:
            raise ReconciliationDisabledError("No peer transport configured for reconciliation")
        return await self.reconciliation.run_cycle()

    async def get_entry(self, key: str) -> KVEntry:
        """
        Read the local entry for a key.

        Raises:
            KeyNotFoundError: If the key was never written
        """
        entry = await self.local_kv.get(key)
        if entry is None:
            raise KeyNotFoundError(f"Key not found: {key}")
        return entry

    async def list_entries(self) -> Dict[str, KVEntry]:
        entries: Dict[str, KVEntry] = {}
        for key in await self.local_kv.keys():
            entry = await self.local_kv.get(key)
            if entry is not None:
                entries[key] = entry
        return entries

    def versions(self) -> Dict[str, Version]:
        return self.metadata_store.all(self.config.bucket_name)

    def version(self, key: str) -> Version:
        """
        Raises:
            KeyNotFoundError: If no version is recorded for the key
        """
        version = self.metadata_store.get(self.config.bucket_name, key)
        if version is None:
            raise KeyNotFoundError(f"No version recorded for key: {key}")
        return version

    def status(self) -> Dict:
        return {
            "node_id": self.config.local_node_id,
            "bucket": self.config.bucket_name,
            "clock": self.clock.now(),
            "tracked_keys": len(self.metadata_store.all(self.config.bucket_name)),
            "reconciliation_enabled": self.reconciliation_enabled,
        }

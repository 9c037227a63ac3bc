"""
Anti-entropy reconciliation with one peer site.

Runs on a fixed interval, independent of the replication channel, to repair
divergence left by missed messages, transport outages or sites that joined
after history was produced.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from common.constants import RECONCILE_LOCAL_SUFFIX, RECONCILE_PEER_SUFFIX
from common.types import KVEntry, KVStore
from syncd.replication.clock import LogicalClock
from syncd.replication.lww import Version, wins
from syncd.replication.metadata_store import VersionMetadataStore

logger = logging.getLogger(__name__)


class KeyOutcome(str, Enum):
    """What reconciling a single key did."""
    ABSENT = "absent"
    COPIED_TO_LOCAL = "copied_to_local"
    COPIED_TO_PEER = "copied_to_peer"
    RESOLVED = "resolved"
    CONVERGED = "converged"


@dataclass
class ReconciliationReport:
    """Summary of one reconciliation cycle."""
    keys_examined: int = 0
    copied_to_local: int = 0
    copied_to_peer: int = 0
    resolved: int = 0
    converged: int = 0
    failed_keys: List[str] = field(default_factory=list)

    def record(self, outcome: KeyOutcome) -> None:
        if outcome is KeyOutcome.COPIED_TO_LOCAL:
            self.copied_to_local += 1
        elif outcome is KeyOutcome.COPIED_TO_PEER:
            self.copied_to_peer += 1
        elif outcome is KeyOutcome.RESOLVED:
            self.resolved += 1
        elif outcome is KeyOutcome.CONVERGED:
            self.converged += 1

    def to_dict(self) -> Dict:
        return {
            "keys_examined": self.keys_examined,
            "copied_to_local": self.copied_to_local,
            "copied_to_peer": self.copied_to_peer,
            "resolved": self.resolved,
            "converged": self.converged,
            "failed_keys": list(self.failed_keys),
        }


@dataclass(frozen=True)
class SiteEntry:
    """A stored KV entry together with the version synthesized for it."""
    entry: KVEntry
    version: Version

    def same_content(self, other: 'SiteEntry') -> bool:
        return (
            self.entry.is_tombstone == other.entry.is_tombstone
            and self.entry.value == other.entry.value
        )


class ReconciliationEngine:
    """
    Full state diff between the local and the peer KV store.

    Versions are synthesized from each entry's stored write timestamp and
    tagged with site-scoped origins (<node>-local, <node>-peer) that never
    collide with live node identifiers. The transport handles are injected
    once and reused by every cycle.
    """

    def __init__(
        self,
        local_kv: KVStore,
        peer_kv: KVStore,
        metadata_store: VersionMetadataStore,
        clock: LogicalClock,
        bucket: str,
        node_id: str
    ):
        """
        Initialize the engine.

        Args:
            local_kv: This site's KV store
            peer_kv: The peer site's KV store
            metadata_store: Shared version metadata store
            clock: Site logical clock
            bucket: Bucket being reconciled
            node_id: This site's node identifier, used to build synthetic origins
        """
        self.local_kv = local_kv
        self.peer_kv = peer_kv
        self.metadata_store = metadata_store
        self.clock = clock
        self.bucket = bucket
        self.local_origin = f"{node_id}{RECONCILE_LOCAL_SUFFIX}"
        self.peer_origin = f"{node_id}{RECONCILE_PEER_SUFFIX}"

    async def run_cycle(self) -> ReconciliationReport:
        """
        Execute one reconciliation cycle.

        Each key is processed independently; a failing key is recorded in the
        report and the cycle continues. Failing to enumerate keys aborts the
        cycle and raises.

        Returns:
            ReconciliationReport for the cycle
        """
        logger.info(f"Running reconciliation cycle [bucket={self.bucket}]")

        local_keys = await self.local_kv.keys()
        peer_keys = await self.peer_kv.keys()
        all_keys = sorted(set(local_keys) | set(peer_keys))

        report = ReconciliationReport(keys_examined=len(all_keys))

        for key in all_keys:
            try:
                outcome = await self.reconcile_key(key)
                report.record(outcome)
            except Exception as e:
                logger.warning(f"Failed to reconcile key {key}, continuing cycle: {e}")
                report.failed_keys.append(key)

        logger.info(
            f"Reconciliation cycle completed [keys={report.keys_examined}, "
            f"to_local={report.copied_to_local}, to_peer={report.copied_to_peer}, "
            f"resolved={report.resolved}, converged={report.converged}, "
            f"failed={len(report.failed_keys)}]"
        )
        return report

    async def reconcile_key(self, key: str) -> KeyOutcome:
        """
        Converge one key on both sides to the LWW winner.

        Args:
            key: Key to reconcile

        Returns:
            KeyOutcome describing what was written
        """
        async with self.metadata_store.key_lock(self.bucket, key):
            local_entry, peer_entry = await asyncio.gather(
                self.local_kv.get(key),
                self.peer_kv.get(key)
            )

            local = self._synthesize(local_entry, self.local_origin)
            peer = self._synthesize(peer_entry, self.peer_origin)

            if local is None and peer is None:
                return KeyOutcome.ABSENT

            if peer is None:
                await self._write(self.peer_kv, key, local)
                logger.debug(f"Reconcile {key}: copied local entry to peer")
                return KeyOutcome.COPIED_TO_PEER

            if local is None:
                await self._write(self.local_kv, key, peer)
                self._record(key, peer, local_written=True)
                logger.debug(f"Reconcile {key}: copied peer entry to local")
                return KeyOutcome.COPIED_TO_LOCAL

            winner = peer if wins(peer.version, local.version) else local

            if local.same_content(peer):
                self._record(key, winner, local_written=False)
                return KeyOutcome.CONVERGED

            if winner is peer:
                await self._write(self.local_kv, key, winner)
                self._record(key, winner, local_written=True)
            else:
                await self._write(self.peer_kv, key, winner)

            logger.debug(
                f"Reconcile {key}: {'peer' if winner is peer else 'local'} won "
                f"(local ts={local.version.timestamp}, peer ts={peer.version.timestamp})"
            )
            return KeyOutcome.RESOLVED

    def _synthesize(self, entry: Optional[KVEntry], origin: str) -> Optional[SiteEntry]:
        """
        Build the version for a stored entry.

        Entries that are neither a value nor a tombstone count as absent.
        """
        if entry is None:
            return None
        if not entry.is_tombstone and entry.value is None:
            return None

        self.clock.observe(entry.write_timestamp)
        version = Version(
            timestamp=entry.write_timestamp,
            origin_node=origin,
            is_tombstone=entry.is_tombstone
        )
        return SiteEntry(entry=entry, version=version)

    async def _write(self, kv: KVStore, key: str, source: SiteEntry) -> None:
        if source.entry.is_tombstone:
            await kv.delete(key)
        else:
            await kv.put(key, source.entry.value)

    def _record(self, key: str, winner: SiteEntry, local_written: bool) -> None:
        """
        Repopulate the metadata store from a reconciled winner.

        Only done when the local entry changed or nothing is known for the
        key, and only if the winner beats the incumbent.
        """
        incumbent = self.metadata_store.get(self.bucket, key)
        if not local_written and incumbent is not None:
            return
        if wins(winner.version, incumbent):
            self.metadata_store.set(self.bucket, key, winner.version)


class PeriodicReconciler:
    """
    Runs reconciliation cycles on a fixed interval until stopped.

    Each cycle is independent: a failed cycle is logged and the next one runs
    on schedule, with no backoff.
    """

    def __init__(self, engine: ReconciliationEngine, interval_ms: int):
        """
        Initialize the periodic reconciler.

        Args:
            engine: ReconciliationEngine to drive
            interval_ms: Milliseconds between cycles
        """
        self.engine = engine
        self.interval_ms = interval_ms
        self.task: Optional[asyncio.Task] = None
        self.running = False
        self.cycles_completed = 0
        self.cycles_failed = 0
        self._stop_event = asyncio.Event()

    async def start(self):
        """Start the reconciliation background task."""
        if self.running:
            logger.warning("Periodic reconciliation already running")
            return

        self.running = True
        self._stop_event.clear()
        self.task = asyncio.create_task(self._reconcile_loop())
        logger.info(f"Periodic reconciliation started [interval={self.interval_ms}ms]")

    async def stop(self):
        """
        Stop the reconciliation background task.

        Waits for a cycle in progress to run to completion; no new cycle starts
        after this is called.
        """
        if not self.running:
            return

        self.running = False
        self._stop_event.set()

        if self.task:
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        logger.info("Periodic reconciliation stopped")

    async def _reconcile_loop(self):
        """
        Main reconciliation loop.

        Waits one interval, runs a cycle, repeats.
        """
        while self.running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_ms / 1000)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.engine.run_cycle()
                self.cycles_completed += 1
            except Exception as e:
                self.cycles_failed += 1
                logger.error(f"Error during reconciliation cycle: {e}", exc_info=True)

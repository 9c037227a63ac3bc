"""
End-to-end convergence tests.

Two or three SyncNodes share one in-process broker, the way sites share a
transport cluster, and exchange operations through their replication
consumers.
"""

import asyncio

import pytest

from kvserver.broker import Broker
from kvserver.kv_store import MemoryKVStore
from kvserver.local_channel import LocalChannel
from syncd.config import SyncConfig
from syncd.node import SyncNode
from syncd.replication.clock import LogicalClock
from syncd.replication.lww import Operation, OperationKind

BUCKET = "config"
SUBJECT = "rep.kv.ops"


async def wait_until(predicate, timeout=2.0):
    """Poll an async predicate until it is true or the timeout expires."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def make_node(broker, node_id, clock_start=1000, durable=False, peer_kv=None, kv=None):
    config = SyncConfig(
        bucket_name=BUCKET,
        local_node_id=node_id,
        replication_channel_name=SUBJECT,
        use_durable_channel=durable,
        reconciliation_interval_ms=0,
    )
    return SyncNode(
        config,
        local_kv=kv or MemoryKVStore(BUCKET),
        channel=LocalChannel(broker),
        peer_kv=peer_kv,
        clock=LogicalClock(clock_start),
    )


async def value_of(node, key):
    entry = await node.local_kv.get(key)
    if entry is None or entry.is_tombstone:
        return None
    return entry.value


async def started(*nodes):
    for node in nodes:
        await node.start()
    await wait_until(lambda: _all_subscribed(nodes))


async def _all_subscribed(nodes):
    return all(node.consumer.subscription is not None for node in nodes)


class TestStreamingConvergence:
    """Sites converge through the replication channel alone."""

    @pytest.mark.asyncio
    async def test_write_reaches_other_site(self, broker):
        site_a = make_node(broker, "site-a")
        site_b = make_node(broker, "site-b")
        await started(site_a, site_b)

        try:
            await site_a.gateway.put("app.mode", "blue")

            async def replicated():
                return await value_of(site_b, "app.mode") == b"blue"

            await wait_until(replicated)
            assert site_b.version("app.mode").origin_node == "site-a"
        finally:
            await site_a.stop()
            await site_b.stop()

    @pytest.mark.asyncio
    async def test_concurrent_writes_converge_to_lww_winner(self, broker):
        # equal clocks make both writes carry the same timestamp
        site_a = make_node(broker, "site-a", clock_start=5000)
        site_b = make_node(broker, "site-b", clock_start=5000)
        await started(site_a, site_b)

        try:
            op_a, op_b = await asyncio.gather(
                site_a.gateway.put("k", "from-a"),
                site_b.gateway.put("k", "from-b"),
            )
            assert op_a.timestamp == op_b.timestamp

            async def converged():
                return (
                    await value_of(site_a, "k") == b"from-b"
                    and await value_of(site_b, "k") == b"from-b"
                )

            await wait_until(converged)
            assert site_a.version("k") == site_b.version("k")
        finally:
            await site_a.stop()
            await site_b.stop()

    @pytest.mark.asyncio
    async def test_delete_replicates_as_tombstone(self, broker):
        site_a = make_node(broker, "site-a")
        site_b = make_node(broker, "site-b")
        await started(site_a, site_b)

        try:
            await site_a.gateway.put("k", "v")
            await site_a.gateway.delete("k")

            async def deleted():
                entry = await site_b.local_kv.get("k")
                return entry is not None and entry.is_tombstone

            await wait_until(deleted)
        finally:
            await site_a.stop()
            await site_b.stop()

    @pytest.mark.asyncio
    async def test_delivery_order_and_duplicates_do_not_matter(self, broker):
        """Replaying the same operations in any order leaves every site equal."""
        operations = [
            Operation(OperationKind.PUT, BUCKET, "k", 10, "site-x", value="first"),
            Operation(OperationKind.DELETE, BUCKET, "k", 30, "site-y"),
            Operation(OperationKind.PUT, BUCKET, "k", 20, "site-z", value="second"),
        ]
        orders = [operations, list(reversed(operations)), operations + operations]

        states = []
        for order in orders:
            node = make_node(broker, "site-a")
            for operation in order:
                await node.consumer.process(operation)
            states.append((await node.local_kv.get("k")).is_tombstone)
            states.append(node.version("k"))

        assert states[0::2] == [True, True, True]
        assert len(set(states[1::2])) == 1


class TestDurableCatchUp:
    """A durable site catches up on operations published while it was down."""

    @pytest.mark.asyncio
    async def test_late_joiner_receives_history(self, database):
        broker = Broker(database, ack_wait=0.2)
        site_a = make_node(broker, "site-a", durable=True)
        await started(site_a)

        try:
            await site_a.gateway.put("k1", "v1")
            await site_a.gateway.put("k2", "v2")

            site_b = make_node(broker, "site-b", durable=True)
            await started(site_b)

            async def caught_up():
                return (
                    await value_of(site_b, "k1") == b"v1"
                    and await value_of(site_b, "k2") == b"v2"
                )

            await wait_until(caught_up)
            await site_b.stop()
        finally:
            await site_a.stop()
            broker.close()


class TestReconciliationBackstop:
    """Reconciliation repairs what streaming missed."""

    @pytest.mark.asyncio
    async def test_unpublished_write_reaches_peer_on_reconcile(self, broker):
        kv_a = MemoryKVStore(BUCKET)
        kv_b = MemoryKVStore(BUCKET)
        site_a = make_node(broker, "site-a", kv=kv_a, peer_kv=kv_b)

        # written straight to the bucket, never published
        await kv_a.put("orphan", b"value")

        report = await site_a.reconcile_now()

        assert report.copied_to_peer == 1
        assert (await kv_b.get("orphan")).value == b"value"

"""Tests for the replication consumer."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from common.exceptions import KVStoreError, TransportError
from kvserver.local_channel import LocalChannel
from syncd.replication.consumer import MessageOutcome, ReplicationConsumer
from syncd.replication.lww import Operation, OperationKind, Version
from syncd.replication.metadata_store import VersionMetadataStore

BUCKET = "config"
SUBJECT = "rep.kv.ops"


def remote_put(key, value, ts, node="site-b", bucket=BUCKET):
    return Operation(OperationKind.PUT, bucket, key, ts, node, value=value)


def remote_delete(key, ts, node="site-b"):
    return Operation(OperationKind.DELETE, BUCKET, key, ts, node)


async def wait_until(predicate, timeout=2.0):
    """Poll predicate until it is true or the timeout expires."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def consumer(local_kv, metadata_store, clock):
    return ReplicationConsumer(
        kv=local_kv,
        channel=AsyncMock(),
        metadata_store=metadata_store,
        clock=clock,
        bucket=BUCKET,
        node_id="site-a",
        subject=SUBJECT
    )


class TestProcess:
    """Filter, resolve and apply decoded operations."""

    @pytest.mark.asyncio
    async def test_applies_unknown_key(self, consumer, local_kv, metadata_store, clock):
        outcome = await consumer.process(remote_put("k", "v", 500))

        assert outcome is MessageOutcome.APPLIED
        assert (await local_kv.get("k")).value == b"v"
        assert metadata_store.get(BUCKET, "k") == Version(500, "site-b")
        assert clock.now() == 501

    @pytest.mark.asyncio
    async def test_ignores_own_echo(self, consumer, local_kv, metadata_store, clock):
        outcome = await consumer.process(remote_put("k", "v", 500, node="site-a"))

        assert outcome is MessageOutcome.FILTERED
        assert await local_kv.get("k") is None
        assert metadata_store.get(BUCKET, "k") is None
        assert clock.now() == 100

    @pytest.mark.asyncio
    async def test_ignores_other_bucket(self, consumer, local_kv):
        outcome = await consumer.process(remote_put("k", "v", 500, bucket="other"))

        assert outcome is MessageOutcome.FILTERED
        assert await local_kv.get("k") is None

    @pytest.mark.asyncio
    async def test_skips_older_operation(self, consumer, local_kv, metadata_store, clock):
        await local_kv.put("k", b"local")
        metadata_store.set(BUCKET, "k", Version(900, "site-a"))

        outcome = await consumer.process(remote_put("k", "remote", 500))

        assert outcome is MessageOutcome.SKIPPED
        assert (await local_kv.get("k")).value == b"local"
        assert metadata_store.get(BUCKET, "k") == Version(900, "site-a")
        # the clock still observes skipped operations
        assert clock.now() == 501

    @pytest.mark.asyncio
    async def test_tie_won_by_greater_node(self, consumer, local_kv, metadata_store):
        metadata_store.set(BUCKET, "k", Version(500, "site-a"))

        outcome = await consumer.process(remote_put("k", "from-b", 500, node="site-b"))

        assert outcome is MessageOutcome.APPLIED
        assert (await local_kv.get("k")).value == b"from-b"

    @pytest.mark.asyncio
    async def test_tie_lost_by_smaller_node(self, consumer, local_kv, metadata_store):
        metadata_store.set(BUCKET, "k", Version(500, "site-c"))

        outcome = await consumer.process(remote_put("k", "from-b", 500, node="site-b"))

        assert outcome is MessageOutcome.SKIPPED
        assert await local_kv.get("k") is None

    @pytest.mark.asyncio
    async def test_applies_delete_as_tombstone(self, consumer, local_kv, metadata_store):
        await consumer.process(remote_put("k", "v", 500))
        outcome = await consumer.process(remote_delete("k", 600))

        assert outcome is MessageOutcome.APPLIED
        assert (await local_kv.get("k")).is_tombstone
        assert metadata_store.get(BUCKET, "k") == Version(600, "site-b", is_tombstone=True)

    @pytest.mark.asyncio
    async def test_duplicate_is_skipped(self, consumer):
        operation = remote_put("k", "v", 500)

        assert await consumer.process(operation) is MessageOutcome.APPLIED
        assert await consumer.process(operation) is MessageOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_order_independent(self, local_kv, peer_kv, clock):
        operations = [remote_put("k", "old", 500), remote_put("k", "new", 700, node="site-c")]

        first = ReplicationConsumer(local_kv, AsyncMock(), VersionMetadataStore(), clock, BUCKET, "site-a", SUBJECT)
        second = ReplicationConsumer(peer_kv, AsyncMock(), VersionMetadataStore(), clock, BUCKET, "site-a", SUBJECT)

        for operation in operations:
            await first.process(operation)
        for operation in reversed(operations):
            await second.process(operation)

        assert (await local_kv.get("k")).value == (await peer_kv.get("k")).value == b"new"


class TestHandleDelivery:
    """Acknowledgement behavior per message."""

    @pytest.mark.asyncio
    async def test_acks_applied_message(self, consumer, make_delivery):
        delivery = make_delivery(remote_put("k", "v", 500).to_json())

        outcome = await consumer.handle_delivery(delivery)

        assert outcome is MessageOutcome.APPLIED
        assert delivery.acked
        assert not delivery.rejected

    @pytest.mark.asyncio
    async def test_acks_skipped_and_filtered_messages(self, consumer, metadata_store, make_delivery):
        metadata_store.set(BUCKET, "k", Version(900, "site-a"))
        skipped = make_delivery(remote_put("k", "v", 500).to_json())
        filtered = make_delivery(remote_put("k", "v", 500, node="site-a").to_json())

        assert await consumer.handle_delivery(skipped) is MessageOutcome.SKIPPED
        assert await consumer.handle_delivery(filtered) is MessageOutcome.FILTERED
        assert skipped.acked and filtered.acked

    @pytest.mark.asyncio
    async def test_rejects_malformed_payload(self, consumer, local_kv, make_delivery):
        delivery = make_delivery(b'{"op": "put", "key": "k"}')

        outcome = await consumer.handle_delivery(delivery)

        assert outcome is MessageOutcome.REJECTED
        assert delivery.rejected
        assert not delivery.acked
        assert await local_kv.keys() == []

    @pytest.mark.asyncio
    async def test_rejects_unencodable_value(self, consumer, local_kv, clock, make_delivery):
        delivery = make_delivery(
            b'{"op": "put", "bucket": "config", "key": "k", "value": "\\ud800", "ts": 500, "nodeId": "site-b"}'
        )
        before = clock.now()

        outcome = await consumer.handle_delivery(delivery)

        assert outcome is MessageOutcome.REJECTED
        assert delivery.rejected
        assert not delivery.acked
        assert clock.now() == before
        assert await local_kv.keys() == []

    @pytest.mark.asyncio
    async def test_ack_failure_is_not_an_apply_failure(self, consumer, local_kv, make_delivery, caplog):
        delivery = make_delivery(remote_put("k", "v", 500).to_json())
        delivery.ack = AsyncMock(side_effect=TransportError("server gone"))

        with caplog.at_level("WARNING", logger="syncd.replication.consumer"):
            outcome = await consumer.handle_delivery(delivery)

        assert outcome is MessageOutcome.APPLIED
        assert (await local_kv.get("k")).value == b"v"
        assert "acknowledgement failed" in caplog.text
        assert "Failed to apply" not in caplog.text

    @pytest.mark.asyncio
    async def test_apply_failure_leaves_message_unacked(self, consumer, local_kv, metadata_store, make_delivery):
        local_kv.put = AsyncMock(side_effect=KVStoreError("bucket unavailable"))
        delivery = make_delivery(remote_put("k", "v", 500).to_json())

        with pytest.raises(KVStoreError):
            await consumer.handle_delivery(delivery)

        assert not delivery.acked
        assert not delivery.rejected
        assert metadata_store.get(BUCKET, "k") is None


class TestConsumerLoop:
    """Run the consumer against an in-process broker."""

    @pytest.mark.asyncio
    async def test_applies_published_operations(self, broker, local_kv, metadata_store, clock):
        channel = LocalChannel(broker)
        consumer = ReplicationConsumer(local_kv, channel, metadata_store, clock, BUCKET, "site-a", SUBJECT)

        await consumer.start()
        await wait_until(lambda: consumer.subscription is not None)

        await channel.publish(SUBJECT, remote_put("k", "v", 500).to_json())
        await wait_until(lambda: metadata_store.get(BUCKET, "k") is not None)

        await consumer.stop()

        assert (await local_kv.get("k")).value == b"v"
        assert not consumer.running

    @pytest.mark.asyncio
    async def test_malformed_message_does_not_stop_loop(self, broker, local_kv, metadata_store, clock):
        channel = LocalChannel(broker)
        consumer = ReplicationConsumer(local_kv, channel, metadata_store, clock, BUCKET, "site-a", SUBJECT)

        await consumer.start()
        await wait_until(lambda: consumer.subscription is not None)

        await channel.publish(SUBJECT, b"garbage")
        await channel.publish(SUBJECT, remote_put("k", "v", 500).to_json())
        await wait_until(lambda: metadata_store.get(BUCKET, "k") is not None)

        await consumer.stop()

    @pytest.mark.asyncio
    async def test_durable_redelivers_after_apply_failure(self, broker, local_kv, metadata_store, clock):
        channel = LocalChannel(broker)
        consumer = ReplicationConsumer(
            local_kv, channel, metadata_store, clock, BUCKET, "site-a", SUBJECT,
            durable_name="rep-kv-site-a"
        )

        real_put = local_kv.put
        calls = []

        async def flaky_put(key, value):
            calls.append(key)
            if len(calls) == 1:
                raise KVStoreError("transient")
            await real_put(key, value)

        local_kv.put = flaky_put

        await channel.publish(SUBJECT, remote_put("k", "v", 500).to_json())
        await consumer.start()

        await wait_until(lambda: metadata_store.get(BUCKET, "k") is not None)
        await consumer.stop()

        assert calls == ["k", "k"]
        assert (await local_kv.get("k")).value == b"v"

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, broker, local_kv, metadata_store, clock):
        consumer = ReplicationConsumer(
            local_kv, LocalChannel(broker), metadata_store, clock, BUCKET, "site-a", SUBJECT
        )

        await consumer.start()
        task = consumer.task
        await consumer.start()

        assert consumer.task is task
        await consumer.stop()
        assert task.done()

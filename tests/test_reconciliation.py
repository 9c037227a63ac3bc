"""Tests for anti-entropy reconciliation."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from common.exceptions import KVStoreError
from syncd.replication.lww import Version
from syncd.replication.reconciliation import (
    KeyOutcome,
    PeriodicReconciler,
    ReconciliationEngine,
    ReconciliationReport,
)

BUCKET = "config"


@pytest.fixture
def engine(local_kv, peer_kv, metadata_store, clock):
    return ReconciliationEngine(
        local_kv=local_kv,
        peer_kv=peer_kv,
        metadata_store=metadata_store,
        clock=clock,
        bucket=BUCKET,
        node_id="site-a"
    )


async def snapshot(kv):
    """Map each key to its value, or None for tombstones."""
    state = {}
    for key in await kv.keys():
        entry = await kv.get(key)
        state[key] = None if entry.is_tombstone else entry.value
    return state


class TestReconciliationCycle:
    """Full cycles over two in-memory buckets."""

    @pytest.mark.asyncio
    async def test_converges_both_sides(self, engine, local_kv, peer_kv):
        await local_kv.put("k1", b"x")
        await peer_kv.put("k1", b"y")
        await peer_kv.put("k2", b"z")

        report = await engine.run_cycle()

        assert await snapshot(local_kv) == {"k1": b"y", "k2": b"z"}
        assert await snapshot(peer_kv) == {"k1": b"y", "k2": b"z"}
        assert report.keys_examined == 2
        assert report.resolved == 1
        assert report.copied_to_local == 1
        assert report.failed_keys == []

    @pytest.mark.asyncio
    async def test_second_cycle_finds_nothing_to_do(self, engine, local_kv, peer_kv):
        await local_kv.put("k1", b"x")
        await peer_kv.put("k2", b"z")

        await engine.run_cycle()
        report = await engine.run_cycle()

        assert report.converged == 2
        assert report.copied_to_local == report.copied_to_peer == report.resolved == 0

    @pytest.mark.asyncio
    async def test_copies_local_only_key_to_peer(self, engine, local_kv, peer_kv, metadata_store):
        await local_kv.put("k", b"v")

        outcome = await engine.reconcile_key("k")

        assert outcome is KeyOutcome.COPIED_TO_PEER
        assert (await peer_kv.get("k")).value == b"v"
        assert metadata_store.get(BUCKET, "k") is None

    @pytest.mark.asyncio
    async def test_copies_peer_only_key_to_local_and_records_version(
        self, engine, local_kv, peer_kv, metadata_store
    ):
        await peer_kv.put("k", b"v")
        written_at = (await peer_kv.get("k")).write_timestamp

        outcome = await engine.reconcile_key("k")

        assert outcome is KeyOutcome.COPIED_TO_LOCAL
        assert (await local_kv.get("k")).value == b"v"
        assert metadata_store.get(BUCKET, "k") == Version(written_at, "site-a-peer")

    @pytest.mark.asyncio
    async def test_local_newer_overwrites_peer(self, engine, local_kv, peer_kv):
        await peer_kv.put("k", b"old")
        await local_kv.put("k", b"new")

        outcome = await engine.reconcile_key("k")

        assert outcome is KeyOutcome.RESOLVED
        assert (await peer_kv.get("k")).value == b"new"
        assert (await local_kv.get("k")).value == b"new"

    @pytest.mark.asyncio
    async def test_absent_on_both_sides(self, engine):
        assert await engine.reconcile_key("ghost") is KeyOutcome.ABSENT

    @pytest.mark.asyncio
    async def test_same_content_is_not_rewritten(self, engine, local_kv, peer_kv):
        await local_kv.put("k", b"same")
        await peer_kv.put("k", b"same")
        local_before = await local_kv.get("k")
        peer_before = await peer_kv.get("k")

        outcome = await engine.reconcile_key("k")

        assert outcome is KeyOutcome.CONVERGED
        assert await local_kv.get("k") == local_before
        assert await peer_kv.get("k") == peer_before

    @pytest.mark.asyncio
    async def test_clock_observes_stored_timestamps(self, engine, local_kv, peer_kv, clock):
        await local_kv.put("k", b"x")
        await peer_kv.put("k", b"y")
        newest = (await peer_kv.get("k")).write_timestamp

        await engine.reconcile_key("k")

        assert clock.now() > newest


class TestTombstones:
    """Deletes take part in reconciliation like any other write."""

    @pytest.mark.asyncio
    async def test_newer_peer_delete_wins(self, engine, local_kv, peer_kv):
        await local_kv.put("k", b"v")
        await peer_kv.delete("k")

        await engine.run_cycle()

        assert (await local_kv.get("k")).is_tombstone
        assert (await peer_kv.get("k")).is_tombstone

    @pytest.mark.asyncio
    async def test_newer_local_delete_wins(self, engine, local_kv, peer_kv):
        await peer_kv.put("k", b"v")
        await local_kv.delete("k")

        await engine.run_cycle()

        assert (await local_kv.get("k")).is_tombstone
        assert (await peer_kv.get("k")).is_tombstone

    @pytest.mark.asyncio
    async def test_tombstone_copied_to_missing_side(self, engine, local_kv, peer_kv):
        await peer_kv.delete("k")

        outcome = await engine.reconcile_key("k")

        assert outcome is KeyOutcome.COPIED_TO_LOCAL
        assert (await local_kv.get("k")).is_tombstone

    @pytest.mark.asyncio
    async def test_newer_put_revives_deleted_key(self, engine, local_kv, peer_kv):
        await local_kv.delete("k")
        await peer_kv.put("k", b"back")

        await engine.run_cycle()

        assert (await local_kv.get("k")).value == b"back"


class TestMetadataRecording:
    """Reconciled winners repopulate the metadata store without regressing it."""

    @pytest.mark.asyncio
    async def test_newer_incumbent_is_kept(self, engine, local_kv, peer_kv, metadata_store):
        incumbent = Version(10 ** 9, "site-z")
        metadata_store.set(BUCKET, "k", incumbent)
        await local_kv.put("k", b"x")
        await peer_kv.put("k", b"y")

        await engine.reconcile_key("k")

        assert (await local_kv.get("k")).value == b"y"
        assert metadata_store.get(BUCKET, "k") == incumbent

    @pytest.mark.asyncio
    async def test_converged_key_fills_empty_metadata(self, engine, local_kv, peer_kv, metadata_store):
        await local_kv.put("k", b"same")
        await peer_kv.put("k", b"same")

        await engine.reconcile_key("k")

        assert metadata_store.get(BUCKET, "k") is not None

    @pytest.mark.asyncio
    async def test_converged_key_keeps_existing_metadata(self, engine, local_kv, peer_kv, metadata_store):
        incumbent = Version(1, "site-b")
        metadata_store.set(BUCKET, "k", incumbent)
        await local_kv.put("k", b"same")
        await peer_kv.put("k", b"same")

        await engine.reconcile_key("k")

        assert metadata_store.get(BUCKET, "k") == incumbent

    @pytest.mark.asyncio
    async def test_reconcile_releases_key_lock(self, engine, local_kv, metadata_store):
        await local_kv.put("k", b"v")

        await engine.reconcile_key("k")

        assert metadata_store.active_locks() == 0


class TestFailureIsolation:
    """A failing key does not abort the cycle."""

    @pytest.mark.asyncio
    async def test_failing_key_is_reported_and_others_continue(self, engine, local_kv, peer_kv):
        await local_kv.put("bad", b"1")
        await local_kv.put("good", b"2")

        real_put = peer_kv.put

        async def put(key, value):
            if key == "bad":
                raise KVStoreError("peer refused write")
            await real_put(key, value)

        peer_kv.put = put

        report = await engine.run_cycle()

        assert report.failed_keys == ["bad"]
        assert report.copied_to_peer == 1
        assert (await peer_kv.get("good")).value == b"2"
        assert await peer_kv.get("bad") is None

    @pytest.mark.asyncio
    async def test_key_listing_failure_raises(self, engine, peer_kv):
        peer_kv.keys = AsyncMock(side_effect=KVStoreError("peer unreachable"))

        with pytest.raises(KVStoreError):
            await engine.run_cycle()


class TestReconciliationReport:
    """Report counters."""

    def test_record_and_to_dict(self):
        report = ReconciliationReport(keys_examined=4)
        report.record(KeyOutcome.COPIED_TO_LOCAL)
        report.record(KeyOutcome.COPIED_TO_PEER)
        report.record(KeyOutcome.RESOLVED)
        report.record(KeyOutcome.ABSENT)
        report.failed_keys.append("x")

        assert report.to_dict() == {
            "keys_examined": 4,
            "copied_to_local": 1,
            "copied_to_peer": 1,
            "resolved": 1,
            "converged": 0,
            "failed_keys": ["x"],
        }


class TestPeriodicReconciler:
    """Timer-driven cycles."""

    @pytest.mark.asyncio
    async def test_runs_cycles_until_stopped(self):
        engine = MagicMock()
        engine.run_cycle = AsyncMock(return_value=ReconciliationReport())
        reconciler = PeriodicReconciler(engine, interval_ms=10)

        await reconciler.start()
        await asyncio.sleep(0.1)
        await reconciler.stop()

        assert reconciler.cycles_completed >= 2
        assert not reconciler.running
        assert reconciler.task.done()

        calls = engine.run_cycle.await_count
        await asyncio.sleep(0.05)
        assert engine.run_cycle.await_count == calls

    @pytest.mark.asyncio
    async def test_failed_cycle_does_not_stop_timer(self):
        attempts = []

        async def run_cycle():
            attempts.append(1)
            if len(attempts) == 1:
                raise KVStoreError("peer down")
            return ReconciliationReport()

        engine = MagicMock()
        engine.run_cycle = run_cycle
        reconciler = PeriodicReconciler(engine, interval_ms=10)

        await reconciler.start()
        await asyncio.sleep(0.1)
        await reconciler.stop()

        assert reconciler.cycles_failed == 1
        assert reconciler.cycles_completed >= 1
        assert reconciler.cycles_completed == len(attempts) - 1

    @pytest.mark.asyncio
    async def test_stop_before_first_interval_runs_nothing(self):
        engine = MagicMock()
        engine.run_cycle = AsyncMock()
        reconciler = PeriodicReconciler(engine, interval_ms=60_000)

        await reconciler.start()
        await reconciler.stop()

        engine.run_cycle.assert_not_awaited()

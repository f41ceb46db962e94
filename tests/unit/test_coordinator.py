"""
tests/unit/test_coordinator.py - startup, cycle lifecycle, catch-up mode and manual backfill.
"""

import asyncio
from decimal import Decimal

import pytest

from feyscan.gateway import RPCError
from feyscan.models import Deployment, ScanCheckpoint

from fakes import addr, build_coordinator as build, tx_hash


@pytest.fixture
def coordinator(cfg, cheap_rpc, storage, chain):
    return build(cfg, cheap_rpc, storage)


class TestStart:
    """Where scanning resumes after a (re)start."""

    @pytest.mark.asyncio
    async def test_fresh_start_backfills(self, coordinator, storage):
        await coordinator.start()
        assert coordinator.checkpoint.last_scanned_block == 9_500
        assert coordinator.catch_up is True
        assert storage.load_checkpoint().last_scanned_block == 9_500

    @pytest.mark.asyncio
    async def test_resume_near_head(self, coordinator, storage):
        storage.save_checkpoint(ScanCheckpoint(last_scanned_block=9_990, catch_up_mode_active=False))
        await coordinator.start()
        assert coordinator.checkpoint.last_scanned_block == 9_990
        assert coordinator.catch_up is False

    @pytest.mark.asyncio
    async def test_large_lag_forces_catch_up(self, coordinator, storage):
        storage.save_checkpoint(ScanCheckpoint(last_scanned_block=5_000, catch_up_mode_active=False))
        await coordinator.start()
        assert coordinator.catch_up is True

    @pytest.mark.asyncio
    async def test_config_disables_catch_up(self, make_cfg, cheap_rpc, storage, chain):
        coordinator = build(make_cfg(catch_up_mode=False), cheap_rpc, storage)
        storage.save_checkpoint(ScanCheckpoint(last_scanned_block=9_990, catch_up_mode_active=True))
        await coordinator.start()
        assert coordinator.catch_up is False

    @pytest.mark.asyncio
    async def test_waits_for_node(self, coordinator, cheap_rpc):
        cheap_rpc.script("eth_blockNumber", RPCError("connection refused"), RPCError("connection refused"))
        await coordinator.start()
        assert coordinator.started
        assert cheap_rpc.count("eth_blockNumber") == 3


class TestCycle:
    """A full discovery and enrichment pass."""

    @pytest.mark.asyncio
    async def test_cycle_ingests_and_checkpoints(self, coordinator, chain, storage):
        launch = chain.add_launch(1, block=9_990, name="FRESH")
        report = await coordinator.run_cycle()

        assert report.new_deployments == 1
        assert report.scanned_through == 10_000
        assert report.refreshed == 1
        assert storage.load_checkpoint().last_scanned_block == 10_000
        stored = storage.get_deployment(launch["tx"])
        assert stored.token_name == "FRESH"
        assert stored.last_holder_check_at is not None

    @pytest.mark.asyncio
    async def test_second_cycle_finds_nothing_new(self, coordinator, chain, storage):
        chain.add_launch(1, block=9_990)
        await coordinator.run_cycle()
        report = await coordinator.run_cycle()
        assert report.new_deployments == 0
        assert storage.count_deployments() == 1

    @pytest.mark.asyncio
    async def test_catch_up_disables_after_quiet_cycles(self, coordinator, storage):
        await coordinator.run_cycle()
        assert coordinator.catch_up is True
        await coordinator.run_cycle()
        assert coordinator.catch_up is False
        assert storage.load_checkpoint().catch_up_mode_active is False

    @pytest.mark.asyncio
    async def test_old_quiet_token_pruned(self, coordinator, chain, storage):
        dep = Deployment(
            tx_hash=tx_hash(0x99),
            deployer_address=addr(0x99),
            block_number=1_000,
            created_at=chain.now - 7200,
            token_address=addr(0xA099),
            holder_count=1,
            volume_by_window={"24h": Decimal(5)},
        )
        storage.upsert_deployment(dep)
        await coordinator.run_cycle()
        assert storage.get_deployment(dep.tx_hash).is_pruned is True
        assert coordinator.stats["pruned"] == 1

    @pytest.mark.asyncio
    async def test_dev_checks(self, make_cfg, cheap_rpc, storage, chain):
        coordinator = build(make_cfg(dev_sell_check_every=1, dev_transfer_check_every=1), cheap_rpc, storage)
        launch = chain.add_launch(1, block=9_990, buyers=1)
        await coordinator.run_cycle()

        stored = storage.get_deployment(launch["tx"])
        assert stored.dev_sold is True
        assert stored.dev_sold_amount == Decimal(1)
        assert stored.dev_transfer_stats.transfer_count == 2
        assert stored.last_transfer_check_at is not None


class TestDeferredLaunches:
    """A launch that fails to load keeps the checkpoint below its block until it is stored."""

    @pytest.mark.asyncio
    async def test_created_token_retried_next_cycle(self, coordinator, chain, cheap_rpc, storage):
        launch = chain.add_launch(1, block=9_990)
        cheap_rpc.script("eth_getTransactionByHash", RPCError("node hiccup"))

        report = await coordinator.run_cycle()
        assert report.new_deployments == 0
        assert storage.get_deployment(launch["tx"]) is None
        assert storage.load_checkpoint().last_scanned_block == 9_989
        assert coordinator.stats["deferred_launches"] == 1

        report = await coordinator.run_cycle()
        assert report.new_deployments == 1
        assert storage.get_deployment(launch["tx"]) is not None
        assert storage.load_checkpoint().last_scanned_block == 10_000

    @pytest.mark.asyncio
    async def test_candidate_retried_next_cycle(self, coordinator, chain, cheap_rpc, storage):
        launch = chain.add_launch(2, block=9_990, emit_created=False)
        cheap_rpc.script("eth_getTransactionReceipt", RPCError("node hiccup"))

        await coordinator.run_cycle()
        assert storage.get_deployment(launch["tx"]) is None
        assert storage.load_checkpoint().last_scanned_block == 9_989

        await coordinator.run_cycle()
        assert storage.get_deployment(launch["tx"]) is not None
        assert storage.load_checkpoint().last_scanned_block == 10_000

    @pytest.mark.asyncio
    async def test_missing_receipt_deferred(self, coordinator, chain, storage):
        launch = chain.add_launch(3, block=9_995)
        receipt = chain.receipts.pop(launch["tx"])

        await coordinator.run_cycle()
        assert storage.load_checkpoint().last_scanned_block == 9_994

        chain.receipts[launch["tx"]] = receipt
        await coordinator.run_cycle()
        assert storage.get_deployment(launch["tx"]) is not None

    @pytest.mark.asyncio
    async def test_backfill_reports_deferred(self, coordinator, chain, cheap_rpc):
        await coordinator.start()
        chain.add_launch(4, block=5_000)
        cheap_rpc.script("eth_getTransactionByHash", RPCError("node hiccup"))

        result = await coordinator.backfill(4_990, 5_010)

        assert result["created"] == 0
        assert result["deferred"] == 1


class TestRefreshToken:
    """Per-token deadline."""

    @pytest.mark.asyncio
    async def test_timeout_leaves_metrics_unchanged(self, make_cfg, cheap_rpc, storage, chain):
        coordinator = build(make_cfg(token_refresh_timeout_sec=0.05), cheap_rpc, storage)
        dep = Deployment(
            tx_hash=tx_hash(1),
            deployer_address=addr(1),
            block_number=9_990,
            created_at=chain.now - 20,
            token_address=addr(0xA001),
            holder_count=4,
        )
        storage.upsert_deployment(dep)

        async def slow(*args, **kwargs):
            await asyncio.sleep(10)

        coordinator.aggregator.refresh = slow
        assert await coordinator.refresh_token(dep, 10_000, True, True) is False

        stored = storage.get_deployment(dep.tx_hash)
        assert stored.holder_count == 4
        assert stored.last_holder_check_at is None
        assert coordinator.stats["refresh_timeouts"] == 1


class TestDeadline:
    """The cycle deadline turns a stuck or failing cycle into a logged skip."""

    @pytest.mark.asyncio
    async def test_cycle_timeout(self, make_cfg, cheap_rpc, storage, chain):
        coordinator = build(make_cfg(cycle_timeout_sec=0.05), cheap_rpc, storage)
        await coordinator.start()

        async def stuck(from_block, to_block):
            await asyncio.sleep(10)

        coordinator.scanner.scan = stuck
        assert await coordinator.run_cycle_with_deadline() is None
        assert coordinator.stats["cycle_timeouts"] == 1
        assert storage.load_checkpoint().last_scanned_block == 9_500

    @pytest.mark.asyncio
    async def test_cycle_error(self, coordinator):
        await coordinator.start()

        async def broken(from_block, to_block):
            raise RuntimeError("boom")

        coordinator.scanner.scan = broken
        assert await coordinator.run_cycle_with_deadline() is None
        assert coordinator.stats["cycle_errors"] == 1

    @pytest.mark.asyncio
    async def test_run_forever_stops(self, coordinator):
        task = asyncio.create_task(coordinator.run_forever())
        for _ in range(200):
            if coordinator.stats["cycles"] >= 1:
                break
            await asyncio.sleep(0.01)
        coordinator.stop()
        await asyncio.wait_for(task, timeout=5)
        assert coordinator.stats["cycles"] >= 1


class TestBackfill:
    @pytest.mark.asyncio
    async def test_backfill_leaves_checkpoint(self, coordinator, chain, storage):
        await coordinator.start()
        launch = chain.add_launch(2, block=5_000)

        result = await coordinator.backfill(4_990, 5_010)

        assert result["created"] == 1
        assert storage.has_deployment(tx_hash=launch["tx"])
        assert storage.load_checkpoint().last_scanned_block == 9_500
        assert coordinator.checkpoint.last_scanned_block == 9_500

    @pytest.mark.asyncio
    async def test_health(self, coordinator):
        await coordinator.start()
        health = coordinator.health()
        assert health["currentBlock"] == 10_000
        assert health["checkpoint"]["lastScannedBlock"] == 9_500
        assert health["catchUpMode"] is True
        assert "rateLimit" in health

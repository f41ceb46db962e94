"""
tests/unit/test_scanner.py - factory log scanning and candidate checks.
"""

import pytest

from feyscan.chain import FACTORY_ADDR, WETH_ADDR
from feyscan.gateway import GatewayError, RPCError, TransientError
from feyscan.models import Deployment
from feyscan.scanner import EventScanner, ScanResult, created_token_from_log, looks_like_deployment

from fakes import addr, logs_handler, make_log, tx_hash


@pytest.fixture
def scanner(gateway, storage, cfg):
    return EventScanner(gateway, storage, cfg)


class TestPlanSegments:
    """Recent window first, bounded backlog behind it."""

    def test_short_range_has_no_backlog(self, scanner):
        assert scanner.plan_segments(9_950, 10_000) == ((9_950, 10_000), None)

    def test_backlog_bounded_by_scan_range(self, scanner):
        recent, backlog = scanner.plan_segments(5_000, 10_000)
        assert recent == (9_901, 10_000)
        assert backlog == (5_000, 6_999)

    def test_backlog_ends_before_recent(self, scanner):
        recent, backlog = scanner.plan_segments(9_800, 10_000)
        assert recent == (9_901, 10_000)
        assert backlog == (9_800, 9_900)


class TestScan:
    """Discovery over a fake ledger."""

    @pytest.mark.asyncio
    async def test_finds_created_token(self, scanner, chain):
        launch = chain.add_launch(1, block=9_950)
        result = await scanner.scan(9_901, 10_000)

        assert len(result.created_tokens) == 1
        created = result.created_tokens[0]
        assert created.tx_hash == launch["tx"]
        assert created.token_address == launch["token"]
        assert created.msg_sender == launch["deployer"]
        assert result.candidates == []
        assert result.scanned_through == 10_000
        assert result.reached_head

    @pytest.mark.asyncio
    async def test_unrecognized_factory_tx_becomes_candidate(self, scanner, chain):
        launch = chain.add_launch(2, block=9_960, emit_created=False)
        result = await scanner.scan(9_901, 10_000)

        assert result.created_tokens == []
        assert [c.tx_hash for c in result.candidates] == [launch["tx"]]

    @pytest.mark.asyncio
    async def test_known_deployments_skipped(self, scanner, chain, storage):
        launch = chain.add_launch(3, block=9_970)
        storage.upsert_deployment(
            Deployment(
                tx_hash=launch["tx"],
                deployer_address=launch["deployer"],
                block_number=9_970,
                created_at=chain.timestamp(9_970),
                token_address=launch["token"],
            )
        )
        result = await scanner.scan(9_901, 10_000)
        assert result.created_tokens == []

    @pytest.mark.asyncio
    async def test_recent_segment_scanned_first(self, scanner, chain, cheap_rpc):
        chain.add_launch(4, block=9_000)
        chain.add_launch(5, block=9_990)
        result = await scanner.scan(8_901, 10_000)

        assert cheap_rpc.log_ranges()[0] == (9_901, 9_910)
        assert [c.block_number for c in result.created_tokens] == [9_990, 9_000]
        assert result.scanned_through == 10_000

    @pytest.mark.asyncio
    async def test_checkpoint_stops_at_backlog_end(self, scanner, chain):
        result = await scanner.scan(5_000, 10_000)
        assert result.scanned_through == 6_999
        assert not result.reached_head

    @pytest.mark.asyncio
    async def test_failed_chunk_limits_progress(self, scanner, chain, cheap_rpc):
        chain.add_launch(6, block=9_905)
        chain.add_launch(7, block=9_950)
        base = logs_handler(chain.logs)

        def flaky(params):
            if int(params[0]["fromBlock"], 16) == 9_931:
                raise TransientError("connection reset")
            return base(params)

        cheap_rpc.on("eth_getLogs", flaky)
        result = await scanner.scan(9_901, 10_000)

        assert result.failed_segments == 1
        assert result.scanned_through == 9_930
        assert [c.block_number for c in result.created_tokens] == [9_905]


class TestDeferred:
    """Launches that could not be loaded hold back the safe checkpoint."""

    @pytest.mark.asyncio
    async def test_candidate_fetch_failure_deferred(self, scanner, chain, cheap_rpc):
        chain.add_launch(11, block=9_960, emit_created=False)
        cheap_rpc.script("eth_getTransactionReceipt", RPCError("node hiccup"))

        result = await scanner.scan(9_901, 10_000)

        assert result.candidates == []
        assert result.deferred_blocks == [9_960]
        assert result.scanned_through == 10_000
        assert result.safe_through == 9_959
        assert not result.reached_head

    def test_safe_through_takes_lowest_deferred(self):
        result = ScanResult(from_block=100, to_block=200, scanned_through=180)
        assert result.safe_through == 180
        result.defer(150)
        result.defer(120)
        assert result.safe_through == 119
        result.defer(190)
        assert result.safe_through == 119


class TestCandidates:
    """A factory call only counts when it succeeded and produced a new contract's logs."""

    @pytest.mark.asyncio
    async def test_gateway_errors_propagate(self, scanner, chain, cheap_rpc):
        launch = chain.add_launch(12, block=9_950, emit_created=False)
        cheap_rpc.script("eth_getTransactionByHash", RPCError("node hiccup"))
        with pytest.raises(GatewayError):
            await scanner.check_candidate(launch["tx"])

    @pytest.mark.asyncio
    async def test_wrong_target_rejected(self, scanner, chain):
        launch = chain.add_launch(8, block=9_950, emit_created=False)
        chain.txs[launch["tx"]]["to"] = addr(0x1234)
        assert await scanner.check_candidate(launch["tx"]) is None

    @pytest.mark.asyncio
    async def test_reverted_rejected(self, scanner, chain):
        launch = chain.add_launch(9, block=9_950, emit_created=False)
        chain.receipts[launch["tx"]]["status"] = "0x0"
        assert await scanner.check_candidate(launch["tx"]) is None

    @pytest.mark.asyncio
    async def test_empty_input_rejected(self, scanner, chain):
        launch = chain.add_launch(10, block=9_950, emit_created=False)
        chain.txs[launch["tx"]]["input"] = "0x"
        assert await scanner.check_candidate(launch["tx"]) is None

    def test_only_factory_and_known_logs(self):
        receipt = {
            "logs": [
                make_log(FACTORY_ADDR, ["0x" + "11" * 32], tx_hash(1), 1),
                make_log(WETH_ADDR, ["0x" + "22" * 32], tx_hash(1), 1, 1),
            ]
        }
        assert not looks_like_deployment(receipt, FACTORY_ADDR)

    def test_contract_address_without_logs(self):
        assert looks_like_deployment({"logs": [], "contractAddress": addr(5)}, FACTORY_ADDR)
        assert not looks_like_deployment({"logs": []}, FACTORY_ADDR)


class TestCreatedTokenLog:
    def test_ignores_other_events(self):
        log = make_log(FACTORY_ADDR, ["0x" + "11" * 32, "0x" + "00" * 32, "0x" + "00" * 32], tx_hash(1), 5)
        assert created_token_from_log(log) is None

"""
tests/unit/test_models.py - deployment record and bounded histories.
"""

from decimal import Decimal

import pytest

from feyscan.models import (
    HOLDER_HISTORY_CAP,
    Deployment,
    DevTransferStats,
    HolderSnapshot,
    RingBuffer,
    VolumeSnapshot,
    volume_history,
)

from fakes import addr, tx_hash


def make_dep(**kwargs) -> Deployment:
    base = dict(
        tx_hash=tx_hash(1),
        deployer_address=addr(2),
        block_number=100,
        created_at=1_700_000_000,
    )
    base.update(kwargs)
    return Deployment(**base)


class TestRingBuffer:
    """Bounded history keeps the newest entries."""

    def test_drops_oldest(self):
        buf = RingBuffer(3, [1, 2, 3])
        buf.append(4)
        assert buf.to_list() == [2, 3, 4]
        assert len(buf) == 3

    def test_last_and_previous(self):
        buf = RingBuffer(5)
        assert buf.last() is None
        buf.append("a")
        assert buf.previous() is None
        buf.append("b")
        assert buf.last() == "b"
        assert buf.previous() == "a"

    def test_zero_capacity_rejected(self):
        with pytest.raises(ValueError):
            RingBuffer(0)

    def test_holder_history_cap(self):
        dep = make_dep()
        for i in range(HOLDER_HISTORY_CAP + 5):
            dep.holder_history.append(HolderSnapshot(count=i, observed_at=i))
        assert len(dep.holder_history) == HOLDER_HISTORY_CAP
        assert dep.holder_history.last().count == HOLDER_HISTORY_CAP + 4

    def test_volume_history_cap(self):
        hist = volume_history()
        for i in range(40):
            hist.append(VolumeSnapshot(volume=Decimal(i), observed_at=i))
        assert len(hist) == 30


class TestDeployment:
    """Derived values on the deployment record."""

    def test_token_address_set_once(self):
        dep = make_dep()
        dep.resolve_token_address(addr(0xA).upper().replace("0X", "0x"))
        assert dep.token_address == addr(0xA)
        dep.resolve_token_address(addr(0xA))
        with pytest.raises(ValueError):
            dep.resolve_token_address(addr(0xB))

    def test_growth(self):
        dep = make_dep()
        assert dep.last_growth() is None
        dep.holder_history.append(HolderSnapshot(10, 1))
        dep.holder_history.append(HolderSnapshot(15, 2))
        assert dep.last_growth() == (5, 50.0)
        assert dep.has_activity()

    def test_growth_from_zero(self):
        dep = make_dep()
        dep.holder_history.append(HolderSnapshot(0, 1))
        dep.holder_history.append(HolderSnapshot(3, 2))
        assert dep.last_growth() == (3, 0.0)

    def test_no_activity_without_two_snapshots(self):
        dep = make_dep(market_cap=Decimal(50000))
        dep.holder_history.append(HolderSnapshot(3, 1))
        assert not dep.has_activity()

    def test_display_name(self):
        assert make_dep(token_name="FEYDOG").display_name() == "FEYDOG"
        dep = make_dep(token_address=addr(0xABCD))
        assert dep.display_name() == f"{addr(0xABCD)[:6]}...{addr(0xABCD)[-4:]}"
        assert make_dep().display_name() == tx_hash(1)[:10]

    def test_to_dict_keys(self):
        dep = make_dep(initial_buy_amount=Decimal("0.5"))
        dep.dev_transfer_stats = DevTransferStats(2, Decimal(3), Decimal(1))
        out = dep.to_dict()
        assert out["txHash"] == tx_hash(1)
        assert out["devBuyAmount"] == 0.5
        assert out["devBuyAmountFormatted"] == "0.500000 ETH"
        assert out["devTransfers"]["netTransfer"] == -2.0
        assert out["volume24h"] == 0.0
        assert out["holderCountHistory"] == []

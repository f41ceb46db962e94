from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Deque, Dict, Iterable, Iterator, List, Optional, Tuple

from .chain import decimal_to_str, normalize_address

HOLDER_HISTORY_CAP = 10
VOLUME_HISTORY_CAP = 30

VOLUME_WINDOWS: Dict[str, int] = {
    "1h": 3600,
    "6h": 21600,
    "24h": 86400,
    "7d": 604800,
}


def empty_volume() -> Dict[str, Decimal]:
    return {name: Decimal(0) for name in VOLUME_WINDOWS}


@dataclass(frozen=True)
class HolderSnapshot:
    count: int
    observed_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "timestamp": self.observed_at}


@dataclass(frozen=True)
class VolumeSnapshot:
    volume: Decimal
    observed_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {"volume": float(self.volume), "timestamp": self.observed_at}


class RingBuffer:
    """Append-only history with a fixed capacity; the oldest entry is dropped past the cap."""

    def __init__(self, capacity: int, items: Iterable[Any] = ()):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self._items: Deque[Any] = deque(items, maxlen=capacity)

    def append(self, item: Any) -> None:
        self._items.append(item)

    def last(self) -> Optional[Any]:
        return self._items[-1] if self._items else None

    def previous(self) -> Optional[Any]:
        return self._items[-2] if len(self._items) >= 2 else None

    def copy(self) -> "RingBuffer":
        return RingBuffer(self.capacity, self._items)

    def to_list(self) -> List[Any]:
        return list(self._items)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RingBuffer):
            return NotImplemented
        return self.capacity == other.capacity and list(self._items) == list(other._items)

    def __repr__(self) -> str:
        return f"RingBuffer(capacity={self.capacity}, items={list(self._items)!r})"


def holder_history(items: Iterable[HolderSnapshot] = ()) -> RingBuffer:
    return RingBuffer(HOLDER_HISTORY_CAP, items)


def volume_history(items: Iterable[VolumeSnapshot] = ()) -> RingBuffer:
    return RingBuffer(VOLUME_HISTORY_CAP, items)


@dataclass
class DevTransferStats:
    transfer_count: int = 0
    transferred_out: Decimal = Decimal(0)
    transferred_in: Decimal = Decimal(0)

    @property
    def net_transfer(self) -> Decimal:
        return self.transferred_in - self.transferred_out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transferCount": self.transfer_count,
            "transferredOut": float(self.transferred_out),
            "transferredIn": float(self.transferred_in),
            "netTransfer": float(self.net_transfer),
        }


@dataclass
class Deployment:
    tx_hash: str
    deployer_address: str
    block_number: int
    created_at: int
    token_address: Optional[str] = None
    token_name: str = "Unknown"
    initial_buy_amount: Decimal = Decimal(0)
    ens_name: Optional[str] = None
    holder_count: int = 0
    holder_history: RingBuffer = field(default_factory=holder_history)
    last_holder_check_at: Optional[int] = None
    volume_by_window: Dict[str, Decimal] = field(default_factory=empty_volume)
    volume_history: RingBuffer = field(default_factory=volume_history)
    market_cap: Decimal = Decimal(0)
    dev_sold: bool = False
    dev_sold_amount: Decimal = Decimal(0)
    dev_transfer_stats: DevTransferStats = field(default_factory=DevTransferStats)
    last_transfer_check_at: Optional[int] = None
    is_pruned: bool = False
    links: Dict[str, Optional[str]] = field(default_factory=dict)
    farcaster_data: Optional[Dict[str, Any]] = None

    def resolve_token_address(self, addr: str) -> None:
        addr = normalize_address(addr)
        if self.token_address is not None and self.token_address != addr:
            raise ValueError(
                f"token address of {self.tx_hash} is already {self.token_address}"
            )
        self.token_address = addr

    @property
    def volume_24h(self) -> Decimal:
        return self.volume_by_window.get("24h", Decimal(0))

    def age(self, now: int) -> int:
        return max(0, now - self.created_at)

    def has_enrichment_data(self) -> bool:
        return self.last_holder_check_at is not None

    def last_check_at(self) -> Optional[int]:
        if self.last_holder_check_at is not None:
            return self.last_holder_check_at
        last = self.holder_history.last()
        return last.observed_at if last else None

    def last_growth(self) -> Optional[Tuple[int, float]]:
        recent = self.holder_history.last()
        previous = self.holder_history.previous()
        if recent is None or previous is None:
            return None
        growth = recent.count - previous.count
        pct = (growth / previous.count) * 100 if previous.count > 0 else 0.0
        return growth, pct

    def has_activity(self) -> bool:
        growth = self.last_growth()
        if growth is None:
            return False
        return growth[0] > 0 or self.volume_24h > 0 or self.market_cap > 0

    def display_name(self) -> str:
        if self.token_name and self.token_name != "Unknown":
            return self.token_name
        if self.token_address:
            return f"{self.token_address[:6]}...{self.token_address[-4:]}"
        return self.tx_hash[:10]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "tokenAddress": self.token_address,
            "tokenName": self.token_name,
            "blockNumber": self.block_number,
            "timestamp": self.created_at,
            "from": self.deployer_address,
            "ensName": self.ens_name,
            "devBuyAmount": float(self.initial_buy_amount),
            "devBuyAmountFormatted": f"{decimal_to_str(self.initial_buy_amount, 6)} ETH",
            "devSold": self.dev_sold,
            "devSoldAmount": float(self.dev_sold_amount),
            "devTransfers": self.dev_transfer_stats.to_dict(),
            "lastTransferCheck": self.last_transfer_check_at,
            "holderCount": self.holder_count,
            "holderCountHistory": [x.to_dict() for x in self.holder_history],
            "lastHolderCheck": self.last_holder_check_at,
            "volume1h": float(self.volume_by_window.get("1h", 0)),
            "volume6h": float(self.volume_by_window.get("6h", 0)),
            "volume24h": float(self.volume_by_window.get("24h", 0)),
            "volume7d": float(self.volume_by_window.get("7d", 0)),
            "volumeHistory": [x.to_dict() for x in self.volume_history],
            "marketCap": float(self.market_cap),
            "isPruned": self.is_pruned,
            "links": dict(self.links),
            "farcasterData": self.farcaster_data,
        }


@dataclass
class ScanCheckpoint:
    last_scanned_block: Optional[int] = None
    catch_up_mode_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastScannedBlock": self.last_scanned_block,
            "catchUpModeActive": self.catch_up_mode_active,
        }

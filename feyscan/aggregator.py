import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .chain import (
    DECIMALS_SELECTOR,
    DEX_ROUTERS,
    ETH_DECIMALS,
    TRANSFER_TOPIC0,
    WETH_ADDR,
    ZERO_ADDRESS,
    parse_hex_int,
    raw_to_decimal,
    topic_address,
    transfer_participants,
    wei_to_eth,
)
from .config import AppConfig
from .extractor import fetch_token_name
from .gateway import AccessGateway, GatewayError
from .logging_utils import get_logger
from .lookups import Lookups
from .models import (
    VOLUME_WINDOWS,
    DevTransferStats,
    Deployment,
    HolderSnapshot,
    VolumeSnapshot,
)

logger = get_logger(__name__)

# a fetch spanning more cheap-tier chunks than this goes to the expensive tier first
CHEAP_CHUNKS_PER_FETCH = 10
HOLDER_SNAPSHOT_MIN_GAP_SEC = 300
DEV_CHECK_BLOCKS = 100


@dataclass
class RefreshResult:
    checked_at: int
    holder_count: Optional[int] = None
    volume_by_window: Dict[str, Decimal] = field(default_factory=dict)
    market_cap: Optional[Decimal] = None
    token_name: Optional[str] = None
    farcaster_data: Optional[Dict[str, Any]] = None

    @property
    def empty(self) -> bool:
        return (
            self.holder_count is None
            and not self.volume_by_window
            and self.market_cap is None
            and self.token_name is None
            and self.farcaster_data is None
        )


class MetricsAggregator:
    def __init__(
        self,
        gateway: AccessGateway,
        cfg: AppConfig,
        lookups: Optional[Lookups] = None,
    ):
        self.gateway = gateway
        self.cfg = cfg
        self.lookups = lookups
        self._decimals: Dict[str, int] = {}

    def blocks_for(self, seconds: int) -> int:
        return max(1, int(seconds / self.cfg.block_time_sec))

    def _prefer_cheap(self, from_block: int, to_block: int) -> bool:
        return to_block - from_block + 1 <= self.cfg.cheap_max_block_range * CHEAP_CHUNKS_PER_FETCH

    async def _transfer_logs(
        self, token: str, from_block: int, to_block: int, topics: Optional[List[Any]] = None
    ) -> List[Dict[str, Any]]:
        if to_block < from_block:
            return []
        return await self.gateway.fetch_logs(
            from_block,
            to_block,
            address=token,
            topics=topics or [TRANSFER_TOPIC0],
            prefer_cheap_tier=self._prefer_cheap(from_block, to_block),
        )

    async def probe_recent_activity(self, dep: Deployment, current_block: int) -> int:
        if not dep.token_address:
            return 0
        from_block = max(current_block - self.cfg.probe_window_blocks, dep.block_number)
        try:
            logs = await self._transfer_logs(dep.token_address, from_block, current_block)
        except GatewayError as e:
            logger.debug("probe failed", extra={"context": {"token": dep.token_address, "error": str(e)}})
            return 0
        return len(logs)

    async def count_holders(self, dep: Deployment, current_block: int) -> int:
        """Unique non-zero transfer participants in the scan window, never below the stored count."""
        from_block = max(dep.block_number, current_block - self.cfg.holder_scan_max_blocks)
        logs = await self._transfer_logs(dep.token_address, from_block, current_block)
        holders = set()
        for log in logs:
            parties = transfer_participants(log)
            if parties is None:
                continue
            for addr in parties:
                if addr != ZERO_ADDRESS:
                    holders.add(addr)
        return max(dep.holder_count, len(holders))

    async def compute_volume(self, dep: Deployment, current_block: int, now: int) -> Dict[str, Decimal]:
        if self.gateway.has_expensive_tier:
            try:
                traced = await asyncio.wait_for(
                    self._trace_volume(dep, current_block, now),
                    timeout=self.cfg.volume_trace_timeout_sec,
                )
            except asyncio.TimeoutError:
                logger.warning("volume trace timed out", extra={"context": {"token": dep.token_address}})
                traced = None
            except GatewayError as e:
                logger.warning(
                    "volume trace failed",
                    extra={"context": {"token": dep.token_address, "error": str(e)}},
                )
                traced = None
            if traced and any(v > 0 for v in traced.values()):
                return traced
        return await self._estimate_volume(dep, current_block)

    async def _trace_volume(
        self, dep: Deployment, current_block: int, now: int
    ) -> Optional[Dict[str, Decimal]]:
        token = dep.token_address
        from_block = max(dep.block_number, current_block - self.blocks_for(VOLUME_WINDOWS["24h"]))
        logs = await self._transfer_logs(token, from_block, current_block)

        tx_blocks: Dict[str, int] = {}
        for log in logs:
            tx_hash = str(log.get("transactionHash") or "").lower()
            if tx_hash and tx_hash not in tx_blocks:
                tx_blocks[tx_hash] = parse_hex_int(log.get("blockNumber"))
        recent = list(tx_blocks)[-self.cfg.volume_trace_tx_limit:]

        totals = {name: Decimal(0) for name in VOLUME_WINDOWS}
        found = False
        block_times: Dict[int, int] = {}
        for tx_hash in recent:
            try:
                tx = await self.gateway.fetch_transaction(tx_hash)
                if not tx or str(tx.get("to") or "").lower() not in DEX_ROUTERS:
                    continue
                traces = await self.gateway.trace_transaction(tx_hash)
                value = Decimal(0)
                for trace in traces:
                    action = trace.get("action") or {}
                    target = str(action.get("to") or "").lower()
                    if target in (token, WETH_ADDR):
                        value += wei_to_eth(action.get("value"))
                if value <= 0:
                    continue
                block_number = tx_blocks[tx_hash]
                if block_number not in block_times:
                    block = await self.gateway.fetch_block(block_number)
                    block_times[block_number] = parse_hex_int((block or {}).get("timestamp")) or now
            except GatewayError as e:
                logger.debug("trace skipped", extra={"context": {"tx": tx_hash, "error": str(e)}})
                continue
            age = now - block_times[block_number]
            for name, seconds in VOLUME_WINDOWS.items():
                if age <= seconds:
                    totals[name] += value
            found = True
        return totals if found else None

    async def _estimate_volume(self, dep: Deployment, current_block: int) -> Dict[str, Decimal]:
        """Transfer-count estimate. Windows are fetched as increments; a failed window leaves it and wider ones unset."""
        token = dep.token_address
        starts = {
            name: max(dep.block_number, current_block - self.blocks_for(VOLUME_WINDOWS[name]))
            for name in ("1h", "6h", "24h")
        }
        segments = [
            ("1h", starts["1h"], current_block),
            ("6h", starts["6h"], starts["1h"] - 1),
            ("24h", starts["24h"], starts["6h"] - 1),
        ]
        out: Dict[str, Decimal] = {}
        count = 0
        for name, start, end in segments:
            try:
                logs = await asyncio.wait_for(
                    self._transfer_logs(token, start, end),
                    timeout=self.cfg.volume_window_timeout_sec,
                )
            except (asyncio.TimeoutError, GatewayError) as e:
                logger.warning(
                    "volume window skipped",
                    extra={"context": {"token": token, "window": name, "error": repr(e)}},
                )
                break
            count += len(logs)
            out[name] = count * self.cfg.estimate_eth_per_transfer
        if "24h" in out:
            out["7d"] = out["24h"] * 7
        return out

    async def refresh(
        self,
        dep: Deployment,
        current_block: int,
        now: Optional[int] = None,
        include_holders: bool = True,
        include_volume: bool = False,
    ) -> RefreshResult:
        now = int(time.time()) if now is None else now
        result = RefreshResult(checked_at=now)
        if not dep.token_address:
            return result

        if include_holders:
            try:
                result.holder_count = await asyncio.wait_for(
                    self.count_holders(dep, current_block),
                    timeout=self.cfg.holder_timeout_sec,
                )
            except asyncio.TimeoutError:
                logger.warning("holder count timed out", extra={"context": {"token": dep.token_address}})
            except GatewayError as e:
                logger.warning(
                    "holder count failed",
                    extra={"context": {"token": dep.token_address, "error": str(e)}},
                )

        if include_volume:
            result.volume_by_window = await self.compute_volume(dep, current_block, now)

        if dep.token_name == "Unknown":
            name = await self._token_name(dep.token_address)
            if name:
                result.token_name = name

        if self.lookups is not None:
            count_changed = result.holder_count is not None and result.holder_count != dep.holder_count
            if include_holders and (dep.market_cap <= 0 or count_changed):
                mcap = await self.lookups.fetch_market_cap(dep.token_address)
                if mcap > 0:
                    result.market_cap = mcap
            volume_24h = result.volume_by_window.get("24h", dep.volume_24h)
            if dep.farcaster_data is None and volume_24h >= self.cfg.min_volume_threshold:
                result.farcaster_data = await self.lookups.fetch_farcaster_user(dep.deployer_address)
        return result

    async def _token_name(self, token: str) -> Optional[str]:
        name = await fetch_token_name(self.gateway, token)
        return None if name == "Unknown" else name

    def apply(self, dep: Deployment, result: RefreshResult) -> Dict[str, Any]:
        """Merge a refresh into the record and return the fields to persist."""
        fields: Dict[str, Any] = {}
        now = result.checked_at
        if result.holder_count is not None:
            count = max(dep.holder_count, result.holder_count)
            last = dep.holder_history.last()
            if last is None or last.count != count or now - last.observed_at > HOLDER_SNAPSHOT_MIN_GAP_SEC:
                dep.holder_history.append(HolderSnapshot(count=count, observed_at=now))
                fields["holder_history"] = dep.holder_history
            dep.holder_count = count
            dep.last_holder_check_at = now
            fields["holder_count"] = count
            fields["last_holder_check_at"] = now

        if result.volume_by_window:
            dep.volume_by_window.update(result.volume_by_window)
            fields["volume_by_window"] = dict(result.volume_by_window)
            if "24h" in result.volume_by_window:
                dep.volume_history.append(
                    VolumeSnapshot(volume=result.volume_by_window["24h"], observed_at=now)
                )
                fields["volume_history"] = dep.volume_history

        if result.market_cap is not None:
            dep.market_cap = result.market_cap
            fields["market_cap"] = result.market_cap
        if result.token_name:
            dep.token_name = result.token_name
            fields["token_name"] = result.token_name
        if result.farcaster_data is not None:
            dep.farcaster_data = result.farcaster_data
            fields["farcaster_data"] = result.farcaster_data
        return fields

    async def token_decimals(self, token: str) -> int:
        if token in self._decimals:
            return self._decimals[token]
        try:
            raw = await self.gateway.eth_call(token, DECIMALS_SELECTOR)
            decimals = parse_hex_int(raw) if raw else ETH_DECIMALS
        except GatewayError:
            return ETH_DECIMALS
        self._decimals[token] = decimals
        return decimals

    async def check_dev_sell(self, dep: Deployment, current_block: int) -> Optional[Decimal]:
        """Largest amount the deployer sent elsewhere in the recent window, or None."""
        deployer = dep.deployer_address
        from_block = max(current_block - DEV_CHECK_BLOCKS, dep.block_number)
        logs = await self._transfer_logs(
            dep.token_address,
            from_block,
            current_block,
            topics=[TRANSFER_TOPIC0, topic_address(deployer)],
        )
        decimals = None
        largest = Decimal(0)
        for log in logs:
            parties = transfer_participants(log)
            if parties is None or parties[1] == deployer:
                continue
            if decimals is None:
                decimals = await self.token_decimals(dep.token_address)
            amount = raw_to_decimal(parse_hex_int(log.get("data")), decimals)
            if amount > largest:
                largest = amount
        return largest if largest > 0 else None

    async def check_dev_transfers(self, dep: Deployment, current_block: int) -> DevTransferStats:
        deployer = dep.deployer_address
        from_block = max(current_block - DEV_CHECK_BLOCKS, dep.block_number)
        logs = await self._transfer_logs(dep.token_address, from_block, current_block)
        stats = DevTransferStats()
        decimals = None
        for log in logs:
            parties = transfer_participants(log)
            if parties is None:
                continue
            sender, receiver = parties
            if sender == receiver or deployer not in (sender, receiver):
                continue
            if decimals is None:
                decimals = await self.token_decimals(dep.token_address)
            amount = raw_to_decimal(parse_hex_int(log.get("data")), decimals)
            stats.transfer_count += 1
            if sender == deployer:
                stats.transferred_out += amount
            else:
                stats.transferred_in += amount
        return stats

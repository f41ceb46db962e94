import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .aggregator import MetricsAggregator
from .chain import BLOCKS_PER_DAY, parse_hex_int
from .config import AppConfig
from .extractor import DeploymentExtractor
from .gateway import AccessGateway, GatewayError
from .logging_utils import get_logger
from .models import Deployment, ScanCheckpoint
from .scanner import EventScanner, ScanResult
from .scheduler import EnrichmentScheduler, RefreshPlan
from .storage import Storage

logger = get_logger(__name__)

DEV_SELL_BATCH = 10
DEV_TRANSFER_BATCH = 20

_SKIPPABLE = (GatewayError, KeyError, ValueError, TypeError)


@dataclass
class CycleReport:
    cycle: int
    from_block: int
    to_block: int
    scanned_through: int
    new_deployments: int
    refreshed: int
    scheduled: int
    catch_up: bool


class CycleCoordinator:
    def __init__(
        self,
        cfg: AppConfig,
        gateway: AccessGateway,
        storage: Storage,
        scanner: EventScanner,
        extractor: DeploymentExtractor,
        scheduler: EnrichmentScheduler,
        aggregator: MetricsAggregator,
    ):
        self.cfg = cfg
        self.gateway = gateway
        self.storage = storage
        self.scanner = scanner
        self.extractor = extractor
        self.scheduler = scheduler
        self.aggregator = aggregator
        self.checkpoint = ScanCheckpoint(catch_up_mode_active=cfg.catch_up_mode)
        self.stop_event = asyncio.Event()
        self.scan_lock = asyncio.Lock()
        self.started = False
        self.cycle_count = 0
        self.low_work_cycles = 0
        self.current_block = 0
        self.stats: Dict[str, Any] = {
            "cycles": 0,
            "cycle_timeouts": 0,
            "cycle_errors": 0,
            "new_deployments": 0,
            "tokens_refreshed": 0,
            "refresh_timeouts": 0,
            "deferred_launches": 0,
            "pruned": 0,
            "last_cycle_at": 0,
            "last_cycle_sec": 0.0,
            "started_at": int(time.time()),
        }

    @property
    def catch_up(self) -> bool:
        return self.checkpoint.catch_up_mode_active

    def poll_interval(self) -> float:
        return self.cfg.poll_interval_sec_catch_up if self.catch_up else self.cfg.poll_interval_sec

    def _apply_mode(self) -> None:
        delay_ms = self.cfg.chunk_delay_ms_catch_up if self.catch_up else self.cfg.chunk_delay_ms
        self.gateway.chunk_delay_sec = delay_ms / 1000

    async def _wait_for_head(self) -> int:
        while True:
            try:
                return await self.gateway.get_block_number()
            except GatewayError as e:
                logger.warning(
                    "ledger node unreachable, retrying",
                    extra={"context": {"retry_in_sec": self.cfg.startup_retry_sec, "error": str(e)}},
                )
                await asyncio.sleep(self.cfg.startup_retry_sec)

    async def start(self) -> None:
        head = await self._wait_for_head()
        self.current_block = head
        saved = self.storage.load_checkpoint()
        if saved.last_scanned_block is None:
            last = max(0, head - self.cfg.initial_backfill_blocks)
            catch_up = self.cfg.catch_up_mode
        else:
            last = saved.last_scanned_block
            catch_up = self.cfg.catch_up_mode and saved.catch_up_mode_active
        if head - last > self.cfg.catch_up_lag_blocks:
            catch_up = True
        self.checkpoint = ScanCheckpoint(last_scanned_block=last, catch_up_mode_active=catch_up)
        self._apply_mode()
        self.storage.save_checkpoint(self.checkpoint)
        self.started = True
        logger.info(
            "coordinator started",
            extra={"context": {"head": head, "last_scanned_block": last, "catch_up": catch_up}},
        )

    async def ingest(self, scan: ScanResult) -> List[Deployment]:
        """Extract every discovered launch. Failures are deferred on the scan so the checkpoint stays below them."""
        found: List[Deployment] = []
        for token in scan.created_tokens:
            if self.storage.has_deployment(token.tx_hash, token.token_address):
                continue
            try:
                tx = await self.gateway.fetch_transaction(token.tx_hash)
                receipt = await self.gateway.fetch_receipt(token.tx_hash)
                if not tx or not receipt:
                    raise ValueError("transaction or receipt not available yet")
                dep = await self.extractor.extract(
                    tx, receipt, known_token_address=token.token_address, raise_errors=True
                )
            except _SKIPPABLE as e:
                self._defer(scan, token.tx_hash, token.block_number, e)
                continue
            if dep is not None:
                found.append(dep)
        for candidate in scan.candidates:
            block_number = parse_hex_int(
                candidate.receipt.get("blockNumber") or candidate.tx.get("blockNumber")
            )
            try:
                dep = await self.extractor.extract(candidate.tx, candidate.receipt, raise_errors=True)
            except _SKIPPABLE as e:
                self._defer(scan, candidate.tx_hash, block_number, e)
                continue
            if dep is not None:
                found.append(dep)
        self.stats["new_deployments"] += len(found)
        return found

    def _defer(self, scan: ScanResult, tx_hash: str, block_number: int, error: Exception) -> None:
        scan.defer(block_number)
        self.stats["deferred_launches"] += 1
        logger.warning(
            "launch deferred",
            extra={"context": {"tx": tx_hash, "block": block_number, "error": repr(error)}},
        )

    async def probe(self, deployments: List[Deployment], head: int) -> Dict[str, int]:
        delay_ms = self.cfg.probe_delay_ms_catch_up if self.catch_up else self.cfg.probe_delay_ms
        counts: Dict[str, int] = {}
        for i, dep in enumerate(deployments):
            if i > 0 and delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
            counts[dep.tx_hash] = await self.aggregator.probe_recent_activity(dep, head)
        return counts

    async def refresh_token(
        self, dep: Deployment, head: int, include_holders: bool, include_volume: bool
    ) -> bool:
        try:
            result = await asyncio.wait_for(
                self.aggregator.refresh(
                    dep,
                    head,
                    now=int(time.time()),
                    include_holders=include_holders,
                    include_volume=include_volume,
                ),
                timeout=self.cfg.token_refresh_timeout_sec,
            )
        except asyncio.TimeoutError:
            self.stats["refresh_timeouts"] += 1
            logger.warning(
                "token refresh timed out",
                extra={"context": {"token": dep.display_name(), "tx": dep.tx_hash}},
            )
            return False
        except _SKIPPABLE as e:
            logger.warning(
                "token refresh failed",
                extra={"context": {"token": dep.display_name(), "error": repr(e)}},
            )
            return False
        fields = self.aggregator.apply(dep, result)
        if fields:
            self.storage.update_deployment_fields(dep.tx_hash, fields)
        self.stats["tokens_refreshed"] += 1
        logger.debug(
            "token refreshed",
            extra={"context": {"token": dep.display_name(), "fields": sorted(fields)}},
        )
        return True

    async def enrich(self, plan: RefreshPlan, head: int) -> int:
        volume_set = {d.tx_hash for d in plan.volumes}
        holder_set = {d.tx_hash for d in plan.holders}
        work = [(d, True, d.tx_hash in volume_set) for d in plan.holders]
        work += [(d, False, True) for d in plan.volumes if d.tx_hash not in holder_set]

        delay_ms = (
            self.cfg.inter_token_delay_ms_catch_up if self.catch_up else self.cfg.inter_token_delay_ms
        )
        refreshed = 0
        for i, (dep, holders, volume) in enumerate(work):
            if i > 0 and delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
            if await self.refresh_token(dep, head, holders, volume):
                refreshed += 1
        return refreshed

    async def check_dev_sells(self, deployments: List[Deployment], head: int) -> None:
        batch = [d for d in deployments if d.token_address and not d.dev_sold][:DEV_SELL_BATCH]
        for dep in batch:
            try:
                amount = await self.aggregator.check_dev_sell(dep, head)
            except _SKIPPABLE as e:
                logger.debug("dev sell check skipped", extra={"context": {"tx": dep.tx_hash, "error": repr(e)}})
                continue
            if amount is None:
                continue
            dep.dev_sold = True
            dep.dev_sold_amount = amount
            self.storage.update_deployment_fields(
                dep.tx_hash, {"dev_sold": True, "dev_sold_amount": amount}
            )
            logger.warning(
                "dev sold",
                extra={"context": {"token": dep.display_name(), "amount": str(amount)}},
            )

    async def check_dev_transfers(self, deployments: List[Deployment], head: int) -> None:
        batch = [
            d for d in deployments if d.token_address and head - d.block_number < BLOCKS_PER_DAY
        ][:DEV_TRANSFER_BATCH]
        for dep in batch:
            try:
                stats = await self.aggregator.check_dev_transfers(dep, head)
            except _SKIPPABLE as e:
                logger.debug(
                    "dev transfer check skipped",
                    extra={"context": {"tx": dep.tx_hash, "error": repr(e)}},
                )
                continue
            now = int(time.time())
            fields: Dict[str, Any] = {"last_transfer_check_at": now}
            dep.last_transfer_check_at = now
            if stats.transfer_count > 0:
                dep.dev_transfer_stats = stats
                fields["dev_transfer_stats"] = stats
            self.storage.update_deployment_fields(dep.tx_hash, fields)

    def _update_catch_up(self, reached_head: bool, scheduled: int) -> None:
        if not self.catch_up:
            return
        if reached_head and scheduled <= self.cfg.catch_up_low_work_tokens:
            self.low_work_cycles += 1
        else:
            self.low_work_cycles = 0
            return
        if self.low_work_cycles >= self.cfg.catch_up_low_work_cycles:
            self.checkpoint.catch_up_mode_active = False
            self.low_work_cycles = 0
            self._apply_mode()
            logger.info(
                "catch-up mode disabled",
                extra={"context": {"poll_interval_sec": self.cfg.poll_interval_sec}},
            )

    async def run_cycle(self) -> CycleReport:
        if not self.started:
            await self.start()
        self.cycle_count += 1
        started = time.monotonic()
        head = await self.gateway.get_block_number()
        self.current_block = head
        from_block = (self.checkpoint.last_scanned_block or 0) + 1
        logger.info(
            "cycle start",
            extra={"context": {"cycle": self.cycle_count, "from": from_block, "head": head, "catch_up": self.catch_up}},
        )

        async with self.scan_lock:
            scan = await self.scanner.scan(from_block, head)
            new = await self.ingest(scan)
        if scan.safe_through > (self.checkpoint.last_scanned_block or 0):
            self.checkpoint.last_scanned_block = scan.safe_through
        self.storage.save_checkpoint(self.checkpoint)

        deployments = self.storage.get_all_deployments()
        now = int(time.time())
        eligible, _ = self.scheduler.partition(deployments, now)
        probe_set = eligible[: self.scheduler.probe_limit(self.catch_up)]
        recent_volume = await self.probe(probe_set, head)
        ctx = self.scheduler.context(int(time.time()), self.catch_up, recent_volume)
        plan = self.scheduler.plan(deployments, ctx, self.gateway.rate_state)

        for dep in plan.newly_pruned:
            dep.is_pruned = True
            self.storage.update_deployment_fields(dep.tx_hash, {"is_pruned": True})
            logger.info("token pruned", extra={"context": {"token": dep.display_name(), "holders": dep.holder_count}})
        self.stats["pruned"] += len(plan.newly_pruned)

        refreshed = await self.enrich(plan, head)

        if self.cycle_count % self.cfg.dev_sell_check_every == 0:
            await self.check_dev_sells(deployments, head)
        if self.cycle_count % self.cfg.dev_transfer_check_every == 0:
            await self.check_dev_transfers(deployments, head)

        self._update_catch_up(scan.reached_head, plan.total_work)
        self.storage.save_checkpoint(self.checkpoint)

        elapsed = time.monotonic() - started
        self.stats["cycles"] += 1
        self.stats["last_cycle_at"] = int(time.time())
        self.stats["last_cycle_sec"] = round(elapsed, 3)
        report = CycleReport(
            cycle=self.cycle_count,
            from_block=from_block,
            to_block=head,
            scanned_through=self.checkpoint.last_scanned_block or 0,
            new_deployments=len(new),
            refreshed=refreshed,
            scheduled=plan.total_work,
            catch_up=self.catch_up,
        )
        logger.info(
            "cycle finished",
            extra={
                "context": {
                    "cycle": report.cycle,
                    "scanned_through": report.scanned_through,
                    "new": report.new_deployments,
                    "refreshed": report.refreshed,
                    "sec": self.stats["last_cycle_sec"],
                }
            },
        )
        return report

    async def run_cycle_with_deadline(self) -> Optional[CycleReport]:
        try:
            return await asyncio.wait_for(self.run_cycle(), timeout=self.cfg.cycle_timeout_sec)
        except asyncio.TimeoutError:
            self.stats["cycle_timeouts"] += 1
            logger.warning(
                "cycle deadline exceeded",
                extra={"context": {"cycle": self.cycle_count, "timeout_sec": self.cfg.cycle_timeout_sec}},
            )
        except Exception:
            self.stats["cycle_errors"] += 1
            logger.exception("cycle failed")
        return None

    async def run_forever(self) -> None:
        if not self.started:
            await self.start()
        while not self.stop_event.is_set():
            await self.run_cycle_with_deadline()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.poll_interval())

    async def backfill(self, from_block: int, to_block: int) -> Dict[str, Any]:
        """Scan and extract an explicit range. The checkpoint is left alone."""
        created = 0
        failed_segments = 0
        deferred = 0
        cursor = from_block
        async with self.scan_lock:
            while cursor <= to_block:
                end = min(to_block, cursor + self.cfg.scan_max_block_range - 1)
                scan = await self.scanner.scan(cursor, end)
                failed_segments += scan.failed_segments
                created += len(await self.ingest(scan))
                deferred += len(scan.deferred_blocks)
                cursor = end + 1
        logger.info(
            "manual backfill finished",
            extra={"context": {"from": from_block, "to": to_block, "created": created}},
        )
        return {
            "fromBlock": from_block,
            "toBlock": to_block,
            "created": created,
            "failedSegments": failed_segments,
            "deferred": deferred,
        }

    def health(self) -> Dict[str, Any]:
        return {
            "currentBlock": self.current_block,
            "checkpoint": self.checkpoint.to_dict(),
            "catchUpMode": self.catch_up,
            "rateLimit": self.gateway.rate_state.to_dict(),
            "gateway": dict(self.gateway.stats),
            "stats": dict(self.stats),
            "uptimeSec": int(time.time()) - int(self.stats["started_at"]),
        }

    def stop(self) -> None:
        self.stop_event.set()

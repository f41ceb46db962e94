from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .chain import (
    KNOWN_TOKENS,
    TOKEN_CREATED_TOPIC0,
    decode_topic_address,
    normalize_address,
    parse_hex_int,
)
from .config import AppConfig
from .gateway import AccessGateway, GatewayError, LogRangeError
from .logging_utils import get_logger
from .storage import Storage

logger = get_logger(__name__)


@dataclass
class CreatedToken:
    tx_hash: str
    token_address: str
    msg_sender: str
    token_admin: Optional[str]
    block_number: int


@dataclass
class Candidate:
    tx: Dict[str, Any]
    receipt: Dict[str, Any]

    @property
    def tx_hash(self) -> str:
        return str(self.tx.get("hash") or "").lower()


@dataclass
class ScanResult:
    from_block: int
    to_block: int
    scanned_through: int
    created_tokens: List[CreatedToken] = field(default_factory=list)
    candidates: List[Candidate] = field(default_factory=list)
    failed_segments: int = 0
    deferred_blocks: List[int] = field(default_factory=list)

    def defer(self, block_number: int) -> None:
        """Mark a block holding a launch that could not be loaded this time."""
        self.deferred_blocks.append(block_number)

    @property
    def safe_through(self) -> int:
        """Highest block with every launch at or below it fully handled."""
        if not self.deferred_blocks:
            return self.scanned_through
        return min(self.scanned_through, min(self.deferred_blocks) - 1)

    @property
    def reached_head(self) -> bool:
        return self.safe_through >= self.to_block


def looks_like_deployment(receipt: Dict[str, Any], factory_addr: str) -> bool:
    logs = receipt.get("logs") or []
    if logs:
        for log in logs:
            addr = str(log.get("address") or "").lower()
            if addr and addr != factory_addr and addr not in KNOWN_TOKENS:
                return True
        return False
    return bool(receipt.get("contractAddress"))


def created_token_from_log(log: Dict[str, Any]) -> Optional[CreatedToken]:
    topics = log.get("topics") or []
    if len(topics) < 3 or str(topics[0]).lower() != TOKEN_CREATED_TOPIC0:
        return None
    tx_hash = str(log.get("transactionHash") or "").lower()
    if not tx_hash:
        return None
    return CreatedToken(
        tx_hash=tx_hash,
        msg_sender=decode_topic_address(topics[1]),
        token_address=normalize_address(decode_topic_address(topics[2])),
        token_admin=decode_topic_address(topics[3]) if len(topics) > 3 else None,
        block_number=parse_hex_int(log.get("blockNumber")),
    )


class EventScanner:
    def __init__(self, gateway: AccessGateway, storage: Storage, cfg: AppConfig):
        self.gateway = gateway
        self.storage = storage
        self.cfg = cfg
        self.factory_addr = cfg.factory_addr.lower()

    def plan_segments(
        self, from_block: int, to_block: int
    ) -> Tuple[Tuple[int, int], Optional[Tuple[int, int]]]:
        recent_from = max(from_block, to_block - self.cfg.recent_block_window + 1)
        backlog: Optional[Tuple[int, int]] = None
        if from_block < recent_from:
            backlog_to = min(recent_from - 1, from_block + self.cfg.scan_max_block_range - 1)
            backlog = (from_block, backlog_to)
        return (recent_from, to_block), backlog

    async def scan(self, from_block: int, to_block: int) -> ScanResult:
        result = ScanResult(from_block=from_block, to_block=to_block, scanned_through=from_block - 1)
        if to_block < from_block:
            return result

        (recent_from, recent_to), backlog = self.plan_segments(from_block, to_block)
        seen_txs: Set[str] = set()

        # newest blocks first so fresh launches surface even with a backlog
        recent_done = await self._scan_segment(recent_from, recent_to, result, seen_txs)
        backlog_done = None
        if backlog is not None:
            backlog_done = await self._scan_segment(backlog[0], backlog[1], result, seen_txs)

        if backlog_done is None:
            result.scanned_through = recent_done
        elif backlog_done >= recent_from - 1:
            result.scanned_through = recent_done
        else:
            result.scanned_through = backlog_done

        logger.info(
            "scan finished",
            extra={
                "context": {
                    "from": from_block,
                    "to": to_block,
                    "scanned_through": result.scanned_through,
                    "created": len(result.created_tokens),
                    "candidates": len(result.candidates),
                    "deferred": len(result.deferred_blocks),
                }
            },
        )
        return result

    async def _scan_segment(
        self, start: int, end: int, result: ScanResult, seen_txs: Set[str]
    ) -> int:
        completed = end
        try:
            logs = await self.gateway.fetch_logs(start, end, address=self.factory_addr)
        except LogRangeError as e:
            logs = e.logs
            completed = e.completed_through
            result.failed_segments += 1
            logger.warning(
                "factory log fetch incomplete",
                extra={"context": {"from": start, "to": end, "completed_through": completed, "error": str(e)}},
            )

        other_txs: Dict[str, int] = {}
        for log in logs:
            try:
                created = created_token_from_log(log)
            except ValueError as e:
                logger.warning("malformed factory log", extra={"context": {"error": str(e)}})
                continue
            if created is not None:
                if created.tx_hash in seen_txs:
                    continue
                seen_txs.add(created.tx_hash)
                if self.storage.has_deployment(created.tx_hash, created.token_address):
                    continue
                result.created_tokens.append(created)
                continue
            tx_hash = str(log.get("transactionHash") or "").lower()
            if tx_hash and tx_hash not in other_txs:
                other_txs[tx_hash] = parse_hex_int(log.get("blockNumber"))

        for tx_hash, block_number in other_txs.items():
            if tx_hash in seen_txs:
                continue
            seen_txs.add(tx_hash)
            if self.storage.has_deployment(tx_hash=tx_hash):
                continue
            try:
                candidate = await self.check_candidate(tx_hash)
            except GatewayError as e:
                result.defer(block_number)
                logger.warning(
                    "candidate deferred",
                    extra={"context": {"tx": tx_hash, "block": block_number, "error": str(e)}},
                )
                continue
            if candidate is not None:
                result.candidates.append(candidate)
        return completed

    async def check_candidate(self, tx_hash: str) -> Optional[Candidate]:
        """Fetch and vet a factory transaction. Gateway errors propagate to the caller."""
        tx = await self.gateway.fetch_transaction(tx_hash)
        if not tx or str(tx.get("to") or "").lower() != self.factory_addr:
            return None
        if not tx.get("input") or tx.get("input") == "0x":
            return None
        receipt = await self.gateway.fetch_receipt(tx_hash)
        if not receipt or parse_hex_int(receipt.get("status")) != 1:
            return None
        if not looks_like_deployment(receipt, self.factory_addr):
            return None
        return Candidate(tx=tx, receipt=receipt)

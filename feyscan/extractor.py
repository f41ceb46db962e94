import time
from typing import Any, Dict, Optional

from .chain import (
    KNOWN_TOKENS,
    NAME_SELECTOR,
    SYMBOL_SELECTOR,
    TRANSFER_TOPIC0,
    ZERO_ADDRESS,
    decode_abi_string,
    explorer_links,
    is_address,
    normalize_address,
    parse_hex_int,
    transfer_participants,
    wei_to_eth,
)
from .config import AppConfig
from .gateway import AccessGateway, GatewayError
from .logging_utils import get_logger
from .lookups import Lookups
from .models import Deployment, HolderSnapshot
from .storage import Storage

logger = get_logger(__name__)


def resolve_token_address(
    receipt: Dict[str, Any], factory_addr: str, known_token_address: Optional[str] = None
) -> Optional[str]:
    if known_token_address:
        return normalize_address(known_token_address)
    for log in receipt.get("logs") or []:
        addr = str(log.get("address") or "").lower()
        if not addr or addr == factory_addr or addr in KNOWN_TOKENS:
            continue
        topics = log.get("topics") or []
        if len(topics) >= 3 and str(topics[0]).lower() == TRANSFER_TOPIC0:
            return normalize_address(addr)
    contract = receipt.get("contractAddress")
    if contract and is_address(contract):
        return normalize_address(contract)
    return None


async def fetch_token_name(gateway: AccessGateway, token_address: str) -> str:
    for selector in (NAME_SELECTOR, SYMBOL_SELECTOR):
        try:
            raw = await gateway.eth_call(token_address, selector)
        except GatewayError:
            continue
        name = decode_abi_string(raw)
        if name:
            return name
    return "Unknown"


def initial_holders(receipt: Dict[str, Any], token_address: Optional[str]) -> int:
    if not token_address:
        return 0
    holders = set()
    for log in receipt.get("logs") or []:
        if str(log.get("address") or "").lower() != token_address:
            continue
        parties = transfer_participants(log)
        if parties is None:
            continue
        for addr in parties:
            if addr != ZERO_ADDRESS:
                holders.add(addr)
    return len(holders)


class DeploymentExtractor:
    def __init__(
        self,
        gateway: AccessGateway,
        storage: Storage,
        cfg: AppConfig,
        lookups: Optional[Lookups] = None,
    ):
        self.gateway = gateway
        self.storage = storage
        self.cfg = cfg
        self.lookups = lookups
        self.factory_addr = cfg.factory_addr.lower()

    async def extract(
        self,
        tx: Dict[str, Any],
        receipt: Dict[str, Any],
        known_token_address: Optional[str] = None,
        raise_errors: bool = False,
    ) -> Optional[Deployment]:
        """Build and store a deployment. None means a duplicate, or a skipped error unless raise_errors."""
        try:
            return await self._extract(tx, receipt, known_token_address)
        except (GatewayError, KeyError, ValueError, TypeError) as e:
            if raise_errors:
                raise
            logger.warning(
                "deployment skipped",
                extra={"context": {"tx": str(tx.get("hash")), "error": repr(e)}},
            )
            return None

    async def _extract(
        self,
        tx: Dict[str, Any],
        receipt: Dict[str, Any],
        known_token_address: Optional[str],
    ) -> Optional[Deployment]:
        tx_hash = str(tx["hash"]).lower()
        if str(receipt.get("transactionHash") or tx_hash).lower() != tx_hash:
            raise ValueError(f"receipt does not belong to {tx_hash}")
        if self.storage.has_deployment(tx_hash=tx_hash):
            return None

        token_address = resolve_token_address(receipt, self.factory_addr, known_token_address)
        if token_address and self.storage.has_deployment(token_address=token_address):
            logger.debug(
                "token already tracked",
                extra={"context": {"tx": tx_hash, "token": token_address}},
            )
            return None

        block_number = parse_hex_int(receipt.get("blockNumber") or tx.get("blockNumber"))
        created_at = await self._block_timestamp(block_number)
        deployer = normalize_address(tx["from"])

        dep = Deployment(
            tx_hash=tx_hash,
            deployer_address=deployer,
            block_number=block_number,
            created_at=created_at,
            initial_buy_amount=wei_to_eth(tx.get("value")),
        )
        if token_address:
            dep.resolve_token_address(token_address)
            dep.token_name = await fetch_token_name(self.gateway, token_address)

        holders = initial_holders(receipt, token_address)
        dep.holder_count = holders
        dep.holder_history.append(HolderSnapshot(count=holders, observed_at=created_at))
        dep.links = explorer_links(token_address, tx_hash)

        if self.lookups is not None:
            dep.ens_name = await self.lookups.resolve_ens(deployer)
            if token_address:
                dep.market_cap = await self.lookups.fetch_market_cap(token_address)

        if not self.storage.upsert_deployment(dep):
            return None
        logger.info(
            "new deployment",
            extra={
                "context": {
                    "token": dep.display_name(),
                    "address": token_address,
                    "tx": tx_hash,
                    "block": block_number,
                }
            },
        )
        return dep

    async def _block_timestamp(self, block_number: int) -> int:
        try:
            block = await self.gateway.fetch_block(block_number)
        except GatewayError as e:
            logger.warning(
                "block timestamp unavailable",
                extra={"context": {"block": block_number, "error": str(e)}},
            )
            block = None
        if block and block.get("timestamp") is not None:
            return parse_hex_int(block["timestamp"])
        return int(time.time())


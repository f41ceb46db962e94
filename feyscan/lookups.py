import asyncio
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import aiohttp

from .config import AppConfig
from .logging_utils import get_logger

logger = get_logger(__name__)


async def _get_json(
    session: aiohttp.ClientSession,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Optional[Any]:
    try:
        async with session.get(url, params=params, headers=headers) as resp:
            if resp.status != 200:
                logger.debug("lookup non-200", extra={"context": {"url": url, "status": resp.status}})
                return None
            return await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.debug("lookup failed", extra={"context": {"url": url, "error": repr(e)}})
        return None


class MarketDataClient:
    def __init__(self, session: aiohttp.ClientSession, base_url: str):
        self.session = session
        self.base_url = base_url.rstrip("/")

    async def fetch_market_cap(self, token_address: str) -> Decimal:
        data = await _get_json(self.session, f"{self.base_url}/{token_address}")
        if not isinstance(data, dict):
            return Decimal(0)
        best = Decimal(0)
        for pair in data.get("pairs") or []:
            if not isinstance(pair, dict) or pair.get("chainId") != "base":
                continue
            try:
                mcap = Decimal(str(pair.get("marketCap") or 0))
            except InvalidOperation:
                continue
            if mcap > best:
                best = mcap
        return best


class EnsResolver:
    def __init__(self, session: aiohttp.ClientSession, base_url: str, chain_id: int):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.chain_id = chain_id

    async def resolve(self, address: str) -> Optional[str]:
        data = await _get_json(
            self.session, f"{self.base_url}/{address}", params={"chainId": self.chain_id}
        )
        if not isinstance(data, dict):
            return None
        name = data.get("name")
        return str(name) if name else None


class FarcasterClient:
    def __init__(self, session: aiohttp.ClientSession, url: str, api_key: Optional[str]):
        self.session = session
        self.url = url
        self.api_key = api_key

    async def fetch_user(self, address: str) -> Optional[Dict[str, Any]]:
        if not self.api_key:
            return None
        data = await _get_json(
            self.session,
            self.url,
            params={"addresses": address},
            headers={"api_key": self.api_key, "accept": "application/json"},
        )
        if not isinstance(data, dict):
            return None
        users = data.get(address.lower()) or data.get(address) or []
        if not users or not isinstance(users[0], dict):
            return None
        user = users[0]
        return {
            "fid": user.get("fid"),
            "username": user.get("username"),
            "displayName": user.get("display_name"),
            "pfp": user.get("pfp_url"),
            "followerCount": user.get("follower_count") or 0,
            "followingCount": user.get("following_count") or 0,
        }


class Lookups:
    """Decoration lookups sharing one HTTP session. Every method degrades to a default."""

    def __init__(self, cfg: AppConfig):
        self.cfg = cfg
        self._session: Optional[aiohttp.ClientSession] = None
        self.market: Optional[MarketDataClient] = None
        self.ens: Optional[EnsResolver] = None
        self.farcaster: Optional[FarcasterClient] = None

    async def __aenter__(self) -> "Lookups":
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.cfg.lookup_timeout_sec)
        )
        self.market = MarketDataClient(self._session, self.cfg.dexscreener_url)
        self.ens = EnsResolver(self._session, self.cfg.ens_api_url, self.cfg.chain_id)
        self.farcaster = FarcasterClient(
            self._session, self.cfg.neynar_api_url, self.cfg.neynar_api_key
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def fetch_market_cap(self, token_address: str) -> Decimal:
        if self.market is None:
            return Decimal(0)
        return await self.market.fetch_market_cap(token_address)

    async def resolve_ens(self, address: str) -> Optional[str]:
        if self.ens is None:
            return None
        return await self.ens.resolve(address)

    async def fetch_farcaster_user(self, address: str) -> Optional[Dict[str, Any]]:
        if self.farcaster is None:
            return None
        return await self.farcaster.fetch_user(address)

"""
Dual-tier ledger access.

Every read goes through AccessGateway, which walks an explicit retry state
machine over an ordered list of tiers:

    Trying(tier, attempt) -> Backoff(tier, attempt, delay) -> Trying(tier, attempt)
    Trying(tier, last attempt) -> Trying(next tier, 0)
    Trying(last tier, last attempt) -> Failed

RPCClient performs exactly one attempt per call and classifies failures into
ThrottledError / TransientError / RPCError; the gateway owns all retrying.
"""

import asyncio
import enum
import functools
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import aiohttp

from .chain import log_identity, parse_hex_int
from .config import AppConfig
from .logging_utils import get_logger

logger = get_logger(__name__)

THROTTLE_MARKERS = (
    "429",
    "too many requests",
    "exceeded",
    "rate limit",
    "compute units",
    "quota",
    "block range",
)
THROTTLE_RPC_CODES = {429, -32005}

PACING_STEP_SEC = 1.0
PACING_CAP_SEC = 5.0
PACING_WINDOW_SEC = 10.0


class GatewayError(Exception):
    pass


class ThrottledError(GatewayError):
    pass


class TransientError(GatewayError):
    pass


class RPCError(GatewayError):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class TierUnavailableError(GatewayError):
    pass


class CallFailedError(GatewayError):
    pass


class LogRangeError(CallFailedError):
    """A chunked log fetch stopped part way; logs up to completed_through are kept."""

    def __init__(self, message: str, logs: List[Dict[str, Any]], completed_through: int):
        super().__init__(message)
        self.logs = logs
        self.completed_through = completed_through


def is_throttle_message(text: str) -> bool:
    text = (text or "").lower()
    return any(marker in text for marker in THROTTLE_MARKERS)


@dataclass
class RateLimitState:
    consecutive_throttles: int = 0
    last_throttle_at: Optional[float] = None
    total_throttles: int = 0

    def record_throttle(self, now: Optional[float] = None) -> None:
        self.consecutive_throttles += 1
        self.total_throttles += 1
        self.last_throttle_at = time.monotonic() if now is None else now

    def record_success(self) -> None:
        self.consecutive_throttles = 0

    def recently_throttled(self, now: Optional[float] = None, window_sec: float = PACING_WINDOW_SEC) -> bool:
        if self.last_throttle_at is None:
            return False
        now = time.monotonic() if now is None else now
        return now - self.last_throttle_at < window_sec

    def pacing_delay(self, now: Optional[float] = None) -> float:
        if self.consecutive_throttles <= 0 or not self.recently_throttled(now):
            return 0.0
        return min(self.consecutive_throttles * PACING_STEP_SEC, PACING_CAP_SEC)

    def under_pressure(self, threshold: int) -> bool:
        return self.consecutive_throttles > threshold

    def reset(self) -> None:
        self.consecutive_throttles = 0
        self.last_throttle_at = None
        self.total_throttles = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consecutiveThrottles": self.consecutive_throttles,
            "totalThrottles": self.total_throttles,
            "recentlyThrottled": self.recently_throttled(),
        }


class Outcome(enum.Enum):
    THROTTLED = "throttled"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class Trying:
    tier_index: int
    attempt: int


@dataclass(frozen=True)
class Backoff:
    tier_index: int
    attempt: int
    delay: float


@dataclass(frozen=True)
class Failed:
    reason: str


RetryState = Union[Trying, Backoff, Failed]


class RetryPolicy:
    def __init__(self, attempts_per_tier: List[int], base_delay_sec: float, cap_delay_sec: float):
        if not attempts_per_tier:
            raise ValueError("at least one tier is required")
        self.attempts_per_tier = attempts_per_tier
        self.base_delay_sec = base_delay_sec
        self.cap_delay_sec = cap_delay_sec

    def initial(self) -> RetryState:
        return Trying(0, 0)

    def backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay_sec * (2 ** attempt), self.cap_delay_sec)

    def advance(self, state: Trying, outcome: Outcome) -> RetryState:
        if outcome is Outcome.FATAL:
            return Failed(f"non-retryable error on tier {state.tier_index}")
        if state.attempt + 1 < self.attempts_per_tier[state.tier_index]:
            return Backoff(state.tier_index, state.attempt + 1, self.backoff_delay(state.attempt))
        if state.tier_index + 1 < len(self.attempts_per_tier):
            return Trying(state.tier_index + 1, 0)
        return Failed(f"{outcome.value}: all tiers exhausted")

    def resume(self, state: Backoff) -> RetryState:
        return Trying(state.tier_index, state.attempt)


class RPCClient:
    def __init__(self, url: str, timeout_sec: float = 15.0):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        try:
            async with self._session.post(self.url, json=payload) as resp:
                if resp.status == 429:
                    raise ThrottledError(f"{method}: HTTP 429")
                if resp.status >= 500:
                    raise TransientError(f"{method}: HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransientError(f"{method}: {e!r}") from e

        if not isinstance(data, dict):
            raise TransientError(f"{method}: unexpected response {data!r}")
        if "error" in data and data["error"]:
            err = data["error"]
            code = err.get("code") if isinstance(err, dict) else None
            message = str(err.get("message", err)) if isinstance(err, dict) else str(err)
            if code in THROTTLE_RPC_CODES or is_throttle_message(message):
                raise ThrottledError(f"{method}: {message}")
            raise RPCError(f"{method}: {message}", code=code)
        return data.get("result")

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_by_number(self, block_number: int) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getBlockByNumber", [hex(block_number), False])

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return parse_hex_int(result)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        return result or []

    async def eth_call(self, to: str, data: str) -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, "latest"])
        return result

    async def trace_transaction(self, tx_hash: str) -> List[Dict[str, Any]]:
        result = await self.call("trace_transaction", [tx_hash])
        return result or []


@dataclass
class Tier:
    name: str
    client: RPCClient
    max_block_range: int
    max_attempts: int


class AccessGateway:
    def __init__(
        self,
        cfg: AppConfig,
        cheap_client: RPCClient,
        expensive_client: Optional[RPCClient] = None,
        rate_state: Optional[RateLimitState] = None,
    ):
        self.cfg = cfg
        self.cheap = Tier("cheap", cheap_client, cfg.cheap_max_block_range, cfg.cheap_max_attempts)
        self.expensive: Optional[Tier] = None
        if expensive_client is not None:
            self.expensive = Tier(
                "expensive",
                expensive_client,
                cfg.expensive_max_block_range,
                cfg.expensive_max_attempts,
            )
        self.rate_state = rate_state or RateLimitState()
        self.attempt_timeout_sec = cfg.attempt_timeout_sec
        self.call_timeout_sec = cfg.call_timeout_sec
        self.chunk_delay_sec = cfg.chunk_delay_ms / 1000
        self.stats: Dict[str, int] = {"calls": 0, "failures": 0, "cheap": 0, "expensive": 0}

    @property
    def has_expensive_tier(self) -> bool:
        return self.expensive is not None

    def tier_order(self, prefer_cheap_tier: bool = True) -> List[Tier]:
        if self.expensive is None:
            return [self.cheap]
        if prefer_cheap_tier:
            return [self.cheap, self.expensive]
        return [self.expensive, self.cheap]

    async def _drive(
        self,
        tiers: List[Tier],
        op: Callable[[Tier], Awaitable[Any]],
        label: str,
    ) -> Tuple[Any, Tier]:
        policy = RetryPolicy(
            [t.max_attempts for t in tiers],
            self.cfg.backoff_base_ms / 1000,
            self.cfg.backoff_cap_ms / 1000,
        )
        state = policy.initial()
        last_error: Optional[BaseException] = None
        while True:
            if isinstance(state, Failed):
                self.stats["failures"] += 1
                raise CallFailedError(f"{label}: {state.reason}") from last_error
            if isinstance(state, Backoff):
                await asyncio.sleep(state.delay)
                state = policy.resume(state)
                continue

            tier = tiers[state.tier_index]
            self.stats["calls"] += 1
            self.stats[tier.name] = self.stats.get(tier.name, 0) + 1
            try:
                result = await asyncio.wait_for(op(tier), timeout=self.attempt_timeout_sec)
            except ThrottledError as e:
                last_error = e
                outcome = Outcome.THROTTLED
                self.rate_state.record_throttle()
                logger.warning(
                    "throttled",
                    extra={
                        "context": {
                            "call": label,
                            "tier": tier.name,
                            "attempt": state.attempt + 1,
                            "consecutive": self.rate_state.consecutive_throttles,
                        }
                    },
                )
            except (TransientError, asyncio.TimeoutError) as e:
                last_error = e
                outcome = Outcome.TRANSIENT
                logger.debug(
                    "transient failure",
                    extra={"context": {"call": label, "tier": tier.name, "error": repr(e)}},
                )
            except RPCError as e:
                last_error = e
                outcome = Outcome.FATAL
            else:
                self.rate_state.record_success()
                logger.debug("call ok", extra={"context": {"call": label, "tier": tier.name}})
                return result, tier
            state = policy.advance(state, outcome)

    async def _call(
        self,
        label: str,
        op: Callable[[Tier], Awaitable[Any]],
        tiers: Optional[List[Tier]] = None,
    ) -> Any:
        tiers = tiers or self.tier_order(True)
        try:
            result, _ = await asyncio.wait_for(
                self._drive(tiers, op, label), timeout=self.call_timeout_sec
            )
        except asyncio.TimeoutError as e:
            self.stats["failures"] += 1
            raise CallFailedError(f"{label}: no result within {self.call_timeout_sec}s") from e
        return result

    async def fetch_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
        prefer_cheap_tier: bool = True,
    ) -> List[Dict[str, Any]]:
        if to_block < from_block:
            return []
        order = self.tier_order(prefer_cheap_tier)
        seen = set()
        out: List[Dict[str, Any]] = []
        start = from_block
        while start <= to_block:
            end = min(to_block, start + order[0].max_block_range - 1)
            span = end - start + 1
            # a tier cannot take a chunk wider than its own range limit
            tiers = [t for t in order if t.max_block_range >= span]
            label = f"eth_getLogs {start}-{end}"
            op = functools.partial(self._logs_on_tier, start, end, address, topics)
            try:
                logs, used = await asyncio.wait_for(
                    self._drive(tiers, op, label), timeout=self.call_timeout_sec
                )
            except (asyncio.TimeoutError, CallFailedError) as e:
                if isinstance(e, asyncio.TimeoutError):
                    self.stats["failures"] += 1
                    message = f"{label}: timed out"
                else:
                    message = str(e)
                if span > self.cheap.max_block_range:
                    # retry the same blocks in narrow chunks, cheap tier first
                    logger.warning(
                        "wide log fetch failed, narrowing chunks",
                        extra={"context": {"from": start, "to": end, "error": message}},
                    )
                    order = [self.cheap] + [t for t in order if t is not self.cheap]
                    continue
                raise LogRangeError(message, out, start - 1) from e

            for log in logs:
                key = log_identity(log)
                if key in seen:
                    continue
                seen.add(key)
                out.append(log)

            if used is not order[0]:
                logger.info(
                    "log fetch moved to fallback tier",
                    extra={"context": {"tier": used.name, "remaining_from": end + 1, "to": to_block}},
                )
                order = [used] + [t for t in order if t is not used]

            start = end + 1
            if start <= to_block:
                delay = self.chunk_delay_sec + self.rate_state.pacing_delay()
                if delay > 0:
                    await asyncio.sleep(delay)
        return out

    @staticmethod
    async def _logs_on_tier(
        from_block: int,
        to_block: int,
        address: Optional[str],
        topics: Optional[List[Any]],
        tier: Tier,
    ) -> List[Dict[str, Any]]:
        return await tier.client.get_logs(from_block, to_block, address=address, topics=topics)

    async def get_block_number(self) -> int:
        return await self._call(
            "eth_blockNumber", lambda tier: tier.client.get_latest_block_number()
        )

    async def fetch_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._call(
            f"eth_getTransactionByHash {tx_hash}",
            lambda tier: tier.client.get_transaction(tx_hash),
        )

    async def fetch_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._call(
            f"eth_getTransactionReceipt {tx_hash}",
            lambda tier: tier.client.get_receipt(tx_hash),
        )

    async def fetch_block(self, block_number: int) -> Optional[Dict[str, Any]]:
        return await self._call(
            f"eth_getBlockByNumber {block_number}",
            lambda tier: tier.client.get_block_by_number(block_number),
        )

    async def eth_call(self, to: str, data: str) -> str:
        return await self._call(
            f"eth_call {to} {data[:10]}",
            lambda tier: tier.client.eth_call(to, data),
        )

    async def trace_transaction(self, tx_hash: str) -> List[Dict[str, Any]]:
        if self.expensive is None:
            raise TierUnavailableError("trace_transaction needs the expensive tier")
        return await self._call(
            f"trace_transaction {tx_hash}",
            lambda tier: tier.client.trace_transaction(tx_hash),
            tiers=[self.expensive],
        )

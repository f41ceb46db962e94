import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from .chain import FACTORY_ADDR, normalize_address

VERY_NEW_AGE_SEC = 300
LOG_LEVELS = {"debug", "info", "warning", "error"}


@dataclass
class AppConfig:
    cheap_rpc_url: str
    expensive_rpc_url: Optional[str] = None
    chain_id: int = 8453
    factory_addr: str = FACTORY_ADDR
    block_time_sec: float = 2.0

    cheap_max_block_range: int = 10
    expensive_max_block_range: int = 2000
    attempt_timeout_sec: float = 15.0
    call_timeout_sec: float = 30.0
    cheap_max_attempts: int = 3
    expensive_max_attempts: int = 2
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 10000
    chunk_delay_ms: int = 500
    chunk_delay_ms_catch_up: int = 200

    recent_block_window: int = 100
    scan_max_block_range: int = 2000
    initial_backfill_blocks: int = 500
    catch_up_lag_blocks: int = 100

    cycle_timeout_sec: float = 120.0
    poll_interval_sec: float = 90.0
    poll_interval_sec_catch_up: float = 0.1
    catch_up_mode: bool = True
    catch_up_low_work_cycles: int = 2
    catch_up_low_work_tokens: int = 2
    startup_retry_sec: float = 5.0

    refresh_budget: int = 1
    refresh_budget_catch_up: int = 10
    volume_budget: int = 3
    volume_budget_catch_up: int = 15
    throttle_pressure_threshold: int = 3
    probe_limit: int = 10
    probe_limit_catch_up: int = 50
    probe_window_blocks: int = 50
    probe_delay_ms: int = 500
    probe_delay_ms_catch_up: int = 100
    min_volume_threshold: Decimal = Decimal("1.0")
    prune_age_sec: int = 3600
    prune_max_holders: int = 5
    chill_cooldown_sec: int = 300

    holder_scan_max_blocks: int = 200
    holder_timeout_sec: float = 20.0
    volume_trace_timeout_sec: float = 15.0
    volume_window_timeout_sec: float = 10.0
    volume_trace_tx_limit: int = 10
    estimate_eth_per_transfer: Decimal = Decimal("0.01")
    token_refresh_timeout_sec: float = 45.0
    inter_token_delay_ms: int = 5000
    inter_token_delay_ms_catch_up: int = 1000
    dev_sell_check_every: int = 20
    dev_transfer_check_every: int = 10

    dexscreener_url: str = "https://api.dexscreener.com/latest/dex/tokens"
    ens_api_url: str = "https://api.ensideas.com/ens/resolve"
    neynar_api_url: str = "https://api.neynar.com/v2/farcaster/user/bulk-by-address"
    neynar_api_key: Optional[str] = None
    lookup_timeout_sec: float = 5.0

    sqlite_path: str = "./data/feyscan.db"
    api_host: str = "127.0.0.1"
    api_port: int = 3001
    cors_allow_origins: List[str] = field(default_factory=list)
    log_level: str = "info"
    log_json: bool = False
    log_file: Optional[str] = None


# config key -> AppConfig attribute
_INT_KEYS = {
    "CHAIN_ID": "chain_id",
    "CHEAP_MAX_BLOCK_RANGE": "cheap_max_block_range",
    "EXPENSIVE_MAX_BLOCK_RANGE": "expensive_max_block_range",
    "CHEAP_MAX_ATTEMPTS": "cheap_max_attempts",
    "EXPENSIVE_MAX_ATTEMPTS": "expensive_max_attempts",
    "BACKOFF_BASE_MS": "backoff_base_ms",
    "BACKOFF_CAP_MS": "backoff_cap_ms",
    "CHUNK_DELAY_MS": "chunk_delay_ms",
    "CHUNK_DELAY_MS_CATCH_UP": "chunk_delay_ms_catch_up",
    "RECENT_BLOCK_WINDOW": "recent_block_window",
    "SCAN_MAX_BLOCK_RANGE": "scan_max_block_range",
    "INITIAL_BACKFILL_BLOCKS": "initial_backfill_blocks",
    "CATCH_UP_LAG_BLOCKS": "catch_up_lag_blocks",
    "CATCH_UP_LOW_WORK_CYCLES": "catch_up_low_work_cycles",
    "CATCH_UP_LOW_WORK_TOKENS": "catch_up_low_work_tokens",
    "REFRESH_BUDGET": "refresh_budget",
    "REFRESH_BUDGET_CATCH_UP": "refresh_budget_catch_up",
    "VOLUME_BUDGET": "volume_budget",
    "VOLUME_BUDGET_CATCH_UP": "volume_budget_catch_up",
    "THROTTLE_PRESSURE_THRESHOLD": "throttle_pressure_threshold",
    "PROBE_LIMIT": "probe_limit",
    "PROBE_LIMIT_CATCH_UP": "probe_limit_catch_up",
    "PROBE_WINDOW_BLOCKS": "probe_window_blocks",
    "PROBE_DELAY_MS": "probe_delay_ms",
    "PROBE_DELAY_MS_CATCH_UP": "probe_delay_ms_catch_up",
    "PRUNE_AGE_SEC": "prune_age_sec",
    "PRUNE_MAX_HOLDERS": "prune_max_holders",
    "CHILL_COOLDOWN_SEC": "chill_cooldown_sec",
    "HOLDER_SCAN_MAX_BLOCKS": "holder_scan_max_blocks",
    "VOLUME_TRACE_TX_LIMIT": "volume_trace_tx_limit",
    "INTER_TOKEN_DELAY_MS": "inter_token_delay_ms",
    "INTER_TOKEN_DELAY_MS_CATCH_UP": "inter_token_delay_ms_catch_up",
    "DEV_SELL_CHECK_EVERY": "dev_sell_check_every",
    "DEV_TRANSFER_CHECK_EVERY": "dev_transfer_check_every",
    "API_PORT": "api_port",
}
_FLOAT_KEYS = {
    "BLOCK_TIME_SEC": "block_time_sec",
    "ATTEMPT_TIMEOUT_SEC": "attempt_timeout_sec",
    "CALL_TIMEOUT_SEC": "call_timeout_sec",
    "CYCLE_TIMEOUT_SEC": "cycle_timeout_sec",
    "POLL_INTERVAL_SEC": "poll_interval_sec",
    "POLL_INTERVAL_SEC_CATCH_UP": "poll_interval_sec_catch_up",
    "STARTUP_RETRY_SEC": "startup_retry_sec",
    "HOLDER_TIMEOUT_SEC": "holder_timeout_sec",
    "VOLUME_TRACE_TIMEOUT_SEC": "volume_trace_timeout_sec",
    "VOLUME_WINDOW_TIMEOUT_SEC": "volume_window_timeout_sec",
    "TOKEN_REFRESH_TIMEOUT_SEC": "token_refresh_timeout_sec",
    "LOOKUP_TIMEOUT_SEC": "lookup_timeout_sec",
}
_DECIMAL_KEYS = {
    "MIN_VOLUME_THRESHOLD": "min_volume_threshold",
    "ESTIMATE_ETH_PER_TRANSFER": "estimate_eth_per_transfer",
}
_STR_KEYS = {
    "DEXSCREENER_URL": "dexscreener_url",
    "ENS_API_URL": "ens_api_url",
    "NEYNAR_API_URL": "neynar_api_url",
    "SQLITE_PATH": "sqlite_path",
    "API_HOST": "api_host",
}
_POSITIVE_KEYS = (
    "CHEAP_MAX_BLOCK_RANGE",
    "EXPENSIVE_MAX_BLOCK_RANGE",
    "CHEAP_MAX_ATTEMPTS",
    "EXPENSIVE_MAX_ATTEMPTS",
    "RECENT_BLOCK_WINDOW",
    "SCAN_MAX_BLOCK_RANGE",
    "REFRESH_BUDGET",
    "REFRESH_BUDGET_CATCH_UP",
    "VOLUME_BUDGET",
    "VOLUME_BUDGET_CATCH_UP",
    "PROBE_WINDOW_BLOCKS",
    "HOLDER_SCAN_MAX_BLOCKS",
    "DEV_SELL_CHECK_EVERY",
    "DEV_TRANSFER_CHECK_EVERY",
    "BLOCK_TIME_SEC",
    "ATTEMPT_TIMEOUT_SEC",
    "CALL_TIMEOUT_SEC",
    "CYCLE_TIMEOUT_SEC",
    "TOKEN_REFRESH_TIMEOUT_SEC",
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_origins(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [x.strip().rstrip("/") for x in raw.split(",") if x and x.strip()]
    if isinstance(raw, list):
        return [str(x).strip().rstrip("/") for x in raw if str(x).strip()]
    return []


def _convert(raw: Dict[str, Any], key: str, conv: Callable[[Any], Any], kind: str) -> Any:
    try:
        return conv(raw[key])
    except (TypeError, ValueError, InvalidOperation) as e:
        raise ValueError(f"{key} must be {kind}, got {raw[key]!r}") from e


def config_from_dict(raw: Dict[str, Any]) -> AppConfig:
    cheap_rpc_url = str(raw.get("CHEAP_RPC_URL", "")).strip()
    if not cheap_rpc_url:
        raise ValueError("CHEAP_RPC_URL is required")
    expensive_raw = str(raw.get("EXPENSIVE_RPC_URL", "") or "").strip()

    cfg = AppConfig(
        cheap_rpc_url=cheap_rpc_url,
        expensive_rpc_url=expensive_raw or None,
        factory_addr=normalize_address(raw.get("FACTORY_ADDR", FACTORY_ADDR)),
    )
    for key, attr in _INT_KEYS.items():
        if key in raw:
            setattr(cfg, attr, _convert(raw, key, int, "an integer"))
    for key, attr in _FLOAT_KEYS.items():
        if key in raw:
            setattr(cfg, attr, _convert(raw, key, float, "a number"))
    for key, attr in _DECIMAL_KEYS.items():
        if key in raw:
            setattr(cfg, attr, _convert(raw, key, lambda v: Decimal(str(v)), "a number"))
    for key, attr in _STR_KEYS.items():
        if key in raw:
            setattr(cfg, attr, str(raw[key]).strip())

    if "CATCH_UP_MODE" in raw:
        cfg.catch_up_mode = _parse_bool(raw["CATCH_UP_MODE"])
    if "LOG_JSON" in raw:
        cfg.log_json = _parse_bool(raw["LOG_JSON"])
    neynar_key = str(raw.get("NEYNAR_API_KEY", "") or "").strip()
    cfg.neynar_api_key = neynar_key or None
    log_file = str(raw.get("LOG_FILE", "") or "").strip()
    cfg.log_file = log_file or None
    cfg.cors_allow_origins = _parse_origins(raw.get("CORS_ALLOW_ORIGINS", []))
    cfg.log_level = str(raw.get("LOG_LEVEL", cfg.log_level)).lower()

    validate_config(cfg)
    return cfg


def validate_config(cfg: AppConfig) -> None:
    attrs = {**_INT_KEYS, **_FLOAT_KEYS}
    for key in _POSITIVE_KEYS:
        if getattr(cfg, attrs[key]) <= 0:
            raise ValueError(f"{key} must be > 0")
    if cfg.expensive_max_block_range < cfg.cheap_max_block_range:
        raise ValueError("EXPENSIVE_MAX_BLOCK_RANGE must be >= CHEAP_MAX_BLOCK_RANGE")
    if cfg.prune_age_sec < VERY_NEW_AGE_SEC:
        raise ValueError(f"PRUNE_AGE_SEC must be >= {VERY_NEW_AGE_SEC}")
    if cfg.backoff_cap_ms < cfg.backoff_base_ms:
        raise ValueError("BACKOFF_CAP_MS must be >= BACKOFF_BASE_MS")
    if cfg.min_volume_threshold < 0:
        raise ValueError("MIN_VOLUME_THRESHOLD must be >= 0")
    if cfg.log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}")


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("config root must be a JSON object")
    return config_from_dict(raw)

from decimal import Decimal, getcontext
from typing import Any, Dict, Optional

getcontext().prec = 60

FACTORY_ADDR = "0x8eef0dc80adf57908bb1be0236c2a72a7e379c2d"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
WETH_ADDR = "0x4200000000000000000000000000000000000006"

TRANSFER_TOPIC0 = (
    "0xddf252ad1be2c89b69c2b068fc378daa"
    "952ba7f163c4a11628f55a4df523b3ef"
)
# TokenCreated(address,address,address,string,string,string,string,string,
#              address,bytes32,int24,address,address,address,uint256,address[])
TOKEN_CREATED_TOPIC0 = (
    "0x74302444e15ca82a67e9284c835162d1"
    "e18869b67f01e0b7034456b5da544ca7"
)
NAME_SELECTOR = "0x06fdde03"
SYMBOL_SELECTOR = "0x95d89b41"
DECIMALS_SELECTOR = "0x313ce567"

KNOWN_TOKENS = frozenset(
    {
        WETH_ADDR,
        "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",  # USDC
        "0x50c5725949a6f0c72e6c4a641f24049a917e0cbd",  # DAI
        "0xd9aaec86b65d86f6a7b5b1b0c42ffa531710b6ca",  # USDbC
    }
)
KNOWN_TOKEN_NAMES = frozenset({"WRAPPED ETHER", "WETH", "FEY"})

DEX_ROUTERS = frozenset(
    {
        "0x2626664c2603336e57b271c5c0b26f421741e481",  # Uniswap V3 router
        "0x4752ba5dbc23f44d87826276bf6fd6b1c372ad24",  # Uniswap V3 router 2
        "0x03a520b32c04bf3beef7bebf72f091c1c93a44fe",  # Aerodrome
        "0xcf77a3ba9a5ca399b7c97c74d54e5b1beb874e45",  # Aerodrome V2
        "0x6bded42c6da8fbf0d2ba55b2fa120c5e0c8d7891",  # BaseSwap
        "0x327df1e6de05895d2ab08513aadd9313fe505d86",  # SwapBased
    }
)

ETH_DECIMALS = 18
BLOCKS_PER_DAY = 43200


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def is_address(addr: Any) -> bool:
    try:
        normalize_address(addr)
    except ValueError:
        return False
    return True


def topic_address(addr: str) -> str:
    return "0x" + ("0" * 24) + normalize_address(addr)[2:]


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    if value in ("0x", ""):
        return 0
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def decimal_to_str(v: Optional[Decimal], places: int = 18) -> Optional[str]:
    if v is None:
        return None
    q = Decimal(10) ** -places
    return str(v.quantize(q))


def raw_to_decimal(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)


def wei_to_eth(value: Optional[str]) -> Decimal:
    return raw_to_decimal(parse_hex_int(value), ETH_DECIMALS)


def decode_abi_string(data: Optional[str]) -> Optional[str]:
    if not data or data == "0x":
        return None
    raw = data[2:] if data.startswith("0x") else data
    try:
        if len(raw) == 64:
            # bytes32-style name()
            text = bytes.fromhex(raw).rstrip(b"\x00").decode("utf-8", errors="ignore")
            return text.strip() or None
        offset = int(raw[0:64], 16) * 2
        length = int(raw[offset : offset + 64], 16) * 2
        body = raw[offset + 64 : offset + 64 + length]
        text = bytes.fromhex(body).decode("utf-8", errors="ignore")
    except ValueError:
        return None
    return text.strip() or None


def log_identity(log: Dict[str, Any]) -> tuple:
    return (
        str(log.get("transactionHash") or "").lower(),
        parse_hex_int(log.get("logIndex")),
        str(log.get("blockHash") or "").lower(),
    )


def transfer_participants(log: Dict[str, Any]) -> Optional[tuple]:
    topics = log.get("topics") or []
    if len(topics) < 3 or str(topics[0]).lower() != TRANSFER_TOPIC0:
        return None
    return decode_topic_address(topics[1]), decode_topic_address(topics[2])


def explorer_links(token_address: Optional[str], tx_hash: str) -> Dict[str, Optional[str]]:
    if token_address:
        return {
            "dexscreener": f"https://dexscreener.com/base/{token_address}",
            "defined": f"https://defined.fi/base/{token_address}",
            "basescan": f"https://basescan.org/token/{token_address}",
        }
    return {
        "dexscreener": None,
        "defined": None,
        "basescan": f"https://basescan.org/tx/{tx_hash}",
    }

import os
from pathlib import Path

from dotenv import load_dotenv

from rangekeeper.errors import InvalidParameter
from rangekeeper.strategy import StrategyParams

# Load .env from the working directory BEFORE reading any env-backed settings.
# override=False means Docker/shell env vars take precedence over .env.
load_dotenv(Path.cwd() / ".env", override=False)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


# Malformed env values fall back to their defaults and are reported by validate(),
# so importing this module never fails.
PARSE_ERRORS: list[str] = []


def _env_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        PARSE_ERRORS.append(f"{name} must be a number, got {raw!r}")
        return float(default)


def _env_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        PARSE_ERRORS.append(f"{name} must be an integer, got {raw!r}")
        return int(default)


# Base chain (chain ID 8453)
RPC_URL = os.environ.get("RPC_URL", "https://mainnet.base.org")
EXPECTED_CHAIN_ID = _env_int("EXPECTED_CHAIN_ID", "8453")
AGENT_PRIVATE_KEY = os.environ.get("AGENT_PRIVATE_KEY", "")

# PositionManager NFT to adopt when no position is tracked yet
_position_token_id = os.environ.get("POSITION_TOKEN_ID", "").strip()
POSITION_TOKEN_ID = _env_int("POSITION_TOKEN_ID", "0") if _position_token_id else None

# Uniswap V4 contracts on Base
POSITION_MANAGER = os.environ.get(
    "POSITION_MANAGER", "0x7C5f5A4bBd8fD63184577525326123B519429bDc"
)
STATE_VIEW = os.environ.get("STATE_VIEW", "0xA3c0c9b65baD0b08107Aa264b0f3dB444b867A71")
PERMIT2 = "0x000000000022D473030F116dDEE9F6B43aC78BA3"

# Pool key, defaults to the ETH/USDC 0.05% pool on Base
# currency0=ETH (0x0), currency1=USDC, fee=500, tickSpacing=10, hooks=0x0
NATIVE_ADDRESS = "0x0000000000000000000000000000000000000000"
TOKEN0_ADDRESS = os.environ.get("TOKEN0_ADDRESS", NATIVE_ADDRESS)
TOKEN1_ADDRESS = os.environ.get("TOKEN1_ADDRESS", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913")
POOL_FEE = _env_int("POOL_FEE", "500")
TICK_SPACING = _env_int("TICK_SPACING", "10")
HOOKS_ADDRESS = os.environ.get("HOOKS_ADDRESS", NATIVE_ADDRESS)

# Fallback decimals when the token contract cannot be read
TOKEN0_DECIMALS = _env_int("TOKEN0_DECIMALS", "18")
TOKEN1_DECIMALS = _env_int("TOKEN1_DECIMALS", "6")

# Strategy
RANGE_WIDTH_FRACTION = _env_float("RANGE_WIDTH_FRACTION", "0.10")
EDGE_BUFFER_FRACTION = _env_float("EDGE_BUFFER_FRACTION", "0.02")
DWELL_SECONDS = _env_float("DWELL_SECONDS", "10")
MIN_MIGRATION_INTERVAL_SECONDS = _env_float("MIN_MIGRATION_INTERVAL_SECONDS", "180")
POLL_INTERVAL_SECONDS = _env_float("POLL_INTERVAL_SECONDS", "5")

# Operational
DRY_RUN = _env_bool("DRY_RUN", "true")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
DATA_DIR = Path(os.environ.get("DATA_DIR", "data"))
TX_DEADLINE_SECONDS = _env_int("TX_DEADLINE_SECONDS", "600")
# V4 refuses to mint an empty position; open_position mints this much first.
SEED_LIQUIDITY = _env_int("SEED_LIQUIDITY", "1000")
# Native balance kept back from deposits to pay for gas
GAS_RESERVE_WEI = _env_int("GAS_RESERVE_WEI", str(5 * 10**15))

# Dashboard
DASHBOARD_HOST = os.environ.get("DASHBOARD_HOST", "127.0.0.1")
DASHBOARD_PORT = _env_int("DASHBOARD_PORT", "5005")

# V4 PositionManager Action codes
INCREASE_LIQUIDITY = 0x00
DECREASE_LIQUIDITY = 0x01
MINT_POSITION = 0x02
BURN_POSITION = 0x03
TAKE_PAIR = 0x11
CLOSE_CURRENCY = 0x12
SWEEP = 0x14


def strategy_params(logger=None) -> StrategyParams:
    return StrategyParams(
        range_width_fraction=RANGE_WIDTH_FRACTION,
        edge_buffer_fraction=EDGE_BUFFER_FRACTION,
        dwell_seconds=DWELL_SECONDS,
        min_migration_interval_seconds=MIN_MIGRATION_INTERVAL_SECONDS,
    ).validate(logger)


def validate(logger=None) -> None:
    """Start-up checks. Raises InvalidParameter on the first problem found."""
    if PARSE_ERRORS:
        raise InvalidParameter(PARSE_ERRORS[0])
    strategy_params(logger)
    if POLL_INTERVAL_SECONDS <= 0:
        raise InvalidParameter(f"POLL_INTERVAL_SECONDS must be > 0, got {POLL_INTERVAL_SECONDS}")
    if TICK_SPACING <= 0:
        raise InvalidParameter(f"TICK_SPACING must be > 0, got {TICK_SPACING}")
    if SEED_LIQUIDITY <= 0:
        raise InvalidParameter(f"SEED_LIQUIDITY must be > 0, got {SEED_LIQUIDITY}")
    if POSITION_TOKEN_ID is not None and POSITION_TOKEN_ID <= 0:
        raise InvalidParameter(f"POSITION_TOKEN_ID must be > 0, got {POSITION_TOKEN_ID}")
    if not DRY_RUN and not AGENT_PRIVATE_KEY:
        raise InvalidParameter("AGENT_PRIVATE_KEY is required when DRY_RUN is false")


def describe() -> dict:
    """Effective settings for the start-up log, with the private key masked."""
    return {
        "rpc_url": RPC_URL,
        "expected_chain_id": EXPECTED_CHAIN_ID,
        "agent_private_key": "********" if AGENT_PRIVATE_KEY else None,
        "pool_key": [TOKEN0_ADDRESS, TOKEN1_ADDRESS, POOL_FEE, TICK_SPACING, HOOKS_ADDRESS],
        "range_width_fraction": RANGE_WIDTH_FRACTION,
        "edge_buffer_fraction": EDGE_BUFFER_FRACTION,
        "dwell_seconds": DWELL_SECONDS,
        "min_migration_interval_seconds": MIN_MIGRATION_INTERVAL_SECONDS,
        "poll_interval_seconds": POLL_INTERVAL_SECONDS,
        "dry_run": DRY_RUN,
        "position_token_id": POSITION_TOKEN_ID,
        "data_dir": str(DATA_DIR),
    }


def build_pool_key():
    from eth_utils.address import to_checksum_address

    currency0 = to_checksum_address(TOKEN0_ADDRESS)
    currency1 = to_checksum_address(TOKEN1_ADDRESS)
    if int(currency0, 16) > int(currency1, 16):
        currency0, currency1 = currency1, currency0

    return {
        "currency0": currency0,
        "currency1": currency1,
        "fee": POOL_FEE,
        "tick_spacing": TICK_SPACING,
        "hooks": to_checksum_address(HOOKS_ADDRESS),
    }


def compute_pool_id():
    from eth_abi.abi import encode
    from eth_utils.crypto import keccak

    pool_key = build_pool_key()
    pool_key_encoded = encode(
        ["address", "address", "uint24", "int24", "address"],
        [
            pool_key["currency0"],
            pool_key["currency1"],
            pool_key["fee"],
            pool_key["tick_spacing"],
            pool_key["hooks"],
        ],
    )
    return "0x" + keccak(pool_key_encoded).hex()


POOL_ID = os.environ.get("POOL_ID") or None

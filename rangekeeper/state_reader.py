"""
StateReader — reads Uniswap V4 pool, position and wallet state on Base.
"""

import json
import logging
import os

from web3 import Web3
from web3.exceptions import ContractLogicError

from rangekeeper.errors import SnapshotUnavailable
from rangekeeper.models import PoolSnapshot, PositionSnapshot, WalletBalances

logger = logging.getLogger(__name__)

ABI_DIR = os.path.join(os.path.dirname(__file__), "abi")

UINT256_MOD = 2**256


def _load_abi(filename: str) -> list:
    with open(os.path.join(ABI_DIR, filename)) as f:
        return json.load(f)


def _to_int24(value: int) -> int:
    value &= 0xFFFFFF
    return value - (1 << 24) if value & (1 << 23) else value


def decode_position_info(info: int) -> tuple[int, int]:
    """Unpack (tickLower, tickUpper) from a V4 PositionInfo word.

    Layout (high to low): 200 bits poolId | 24 bits tickUpper | 24 bits tickLower | 8 bits flags
    """
    return _to_int24(info >> 8), _to_int24(info >> 32)


def owed_fees(fee_growth_inside_x128: int, fee_growth_last_x128: int, liquidity: int) -> int:
    """Fees accrued since the last checkpoint: (inside - last) * liquidity / 2^128.

    Fee growth counters wrap, so the subtraction is taken mod 2^256.
    """
    delta = (fee_growth_inside_x128 - fee_growth_last_x128) % UINT256_MOD
    return (delta * liquidity) >> 128


def pool_key_matches(actual, expected) -> bool:
    """Compare a (currency0, currency1, fee, tickSpacing, hooks) key, addresses case-insensitively."""
    if len(actual) != len(expected):
        return False
    for a, b in zip(actual, expected):
        if isinstance(b, str):
            if str(a).lower() != b.lower():
                return False
        elif int(a) != int(b):
            return False
    return True


class StateReader:
    """Reads pool state via StateView and position state via PositionManager."""

    def __init__(self, w3: Web3, config, owner: str):
        self.w3 = w3
        self.config = config
        self.owner = Web3.to_checksum_address(owner)

        pool_key = config.build_pool_key()
        self.currency0 = pool_key["currency0"]
        self.currency1 = pool_key["currency1"]
        self.tick_spacing = pool_key["tick_spacing"]
        self.pool_key = (
            pool_key["currency0"],
            pool_key["currency1"],
            pool_key["fee"],
            pool_key["tick_spacing"],
            pool_key["hooks"],
        )

        pool_id = config.POOL_ID or config.compute_pool_id()
        self.pool_id_hex = pool_id if pool_id.startswith("0x") else "0x" + pool_id
        self.pool_id = bytes.fromhex(self.pool_id_hex[2:])

        self.state_view = w3.eth.contract(
            address=Web3.to_checksum_address(config.STATE_VIEW),
            abi=_load_abi("state_view.json"),
        )
        self.position_manager = w3.eth.contract(
            address=Web3.to_checksum_address(config.POSITION_MANAGER),
            abi=_load_abi("position_manager.json"),
        )
        self._erc20_abi = _load_abi("erc20.json")

    def _is_native(self, currency: str) -> bool:
        return int(currency, 16) == 0

    def _erc20(self, currency: str):
        return self.w3.eth.contract(address=currency, abi=self._erc20_abi)

    # ------------------------------------------------------------------
    # Pool
    # ------------------------------------------------------------------

    def get_slot0(self) -> dict:
        """Get pool slot0 data: sqrtPriceX96, tick, protocolFee, lpFee."""
        try:
            result = self.state_view.functions.getSlot0(self.pool_id).call()
            return {
                "sqrtPriceX96": result[0],
                "tick": result[1],
                "protocolFee": result[2],
                "lpFee": result[3],
            }
        except Exception as e:
            logger.error("Failed to get slot0: %s", e)
            raise SnapshotUnavailable(f"slot0 read failed: {e}") from e

    def get_pool_liquidity(self) -> int:
        """Get current in-range liquidity for the pool."""
        try:
            return self.state_view.functions.getLiquidity(self.pool_id).call()
        except Exception as e:
            logger.error("Failed to get pool liquidity: %s", e)
            raise SnapshotUnavailable(f"pool liquidity read failed: {e}") from e

    def get_pool_snapshot(self) -> PoolSnapshot:
        slot0 = self.get_slot0()
        liquidity = self.get_pool_liquidity()
        if slot0["sqrtPriceX96"] == 0:
            raise SnapshotUnavailable(f"pool {self.pool_id_hex} is not initialized")
        return PoolSnapshot(
            pool_id=self.pool_id_hex,
            current_tick=slot0["tick"],
            tick_spacing=self.tick_spacing,
            liquidity=liquidity,
            token_a=self.currency0,
            token_b=self.currency1,
            sqrt_price_x96=slot0["sqrtPriceX96"],
        )

    def get_fee_growth_inside(self, tick_lower: int, tick_upper: int) -> tuple[int, int]:
        """Returns (feeGrowthInside0X128, feeGrowthInside1X128)."""
        result = self.state_view.functions.getFeeGrowthInside(
            self.pool_id, tick_lower, tick_upper
        ).call()
        return (result[0], result[1])

    # ------------------------------------------------------------------
    # Position
    # ------------------------------------------------------------------

    def get_position_snapshot(self, token_id: int) -> PositionSnapshot | None:
        """Read one PositionManager NFT. None when burned, not owned by the agent or in another pool."""
        pm = self.position_manager
        try:
            owner = pm.functions.ownerOf(token_id).call()
        except ContractLogicError:
            logger.info("Position token_id=%s does not exist (burned?)", token_id)
            return None
        except Exception as e:
            logger.error("Failed to read owner of token_id=%s: %s", token_id, e)
            raise SnapshotUnavailable(f"position {token_id} read failed: {e}") from e

        if owner.lower() != self.owner.lower():
            logger.warning("Position token_id=%s owned by %s, not the agent", token_id, owner)
            return None

        try:
            position_pool_key, info = pm.functions.getPoolAndPositionInfo(token_id).call()
            if not pool_key_matches(position_pool_key, self.pool_key):
                logger.warning(
                    "Position token_id=%s is in pool %s, not the configured pool",
                    token_id,
                    position_pool_key,
                )
                return None
            tick_lower, tick_upper = decode_position_info(info)
            liquidity = pm.functions.getPositionLiquidity(token_id).call()

            # V4 positions are keyed by (owner=PositionManager, salt=tokenId)
            salt = int(token_id).to_bytes(32, "big")
            _, last0, last1 = self.state_view.functions.getPositionInfo(
                self.pool_id,
                Web3.to_checksum_address(self.config.POSITION_MANAGER),
                tick_lower,
                tick_upper,
                salt,
            ).call()
            inside0, inside1 = self.get_fee_growth_inside(tick_lower, tick_upper)
        except Exception as e:
            logger.error("Failed to read position token_id=%s: %s", token_id, e)
            raise SnapshotUnavailable(f"position {token_id} read failed: {e}") from e

        return PositionSnapshot(
            position_id=int(token_id),
            lower_tick=tick_lower,
            upper_tick=tick_upper,
            liquidity=int(liquidity),
            fees_owed_a=owed_fees(inside0, last0, liquidity),
            fees_owed_b=owed_fees(inside1, last1, liquidity),
        )

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------

    def _balance_of(self, currency: str) -> int:
        if self._is_native(currency):
            return self.w3.eth.get_balance(self.owner)
        return self._erc20(currency).functions.balanceOf(self.owner).call()

    def get_wallet_balances(self) -> WalletBalances:
        try:
            return WalletBalances(
                balance_a=int(self._balance_of(self.currency0)),
                balance_b=int(self._balance_of(self.currency1)),
            )
        except Exception as e:
            logger.error("Failed to read wallet balances: %s", e)
            raise SnapshotUnavailable(f"wallet balance read failed: {e}") from e

    def token_decimals(self) -> tuple[int, int]:
        """Decimals of (currency0, currency1), falling back to configured values."""
        fallbacks = (self.config.TOKEN0_DECIMALS, self.config.TOKEN1_DECIMALS)
        decimals = []
        for currency, fallback in zip((self.currency0, self.currency1), fallbacks):
            if self._is_native(currency):
                decimals.append(18)
                continue
            try:
                decimals.append(int(self._erc20(currency).functions.decimals().call()))
            except Exception as e:
                logger.warning(
                    "Could not read decimals of %s, using %d: %s", currency, fallback, e
                )
                decimals.append(fallback)
        return decimals[0], decimals[1]

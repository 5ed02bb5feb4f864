"""
Venue — the collaborator the migration orchestrator and poll loop talk to.

Venue is the abstract contract; UniswapV4Venue is the one concrete binding,
built from StateReader (reads) and LPManager (writes). Reads raise
SnapshotUnavailable. Mutations raise whatever the underlying call raised.
"""

import logging
import time
from abc import ABC, abstractmethod

from web3 import Web3

from rangekeeper.errors import NoPositionFound
from rangekeeper.lp_manager import LPManager, PositionStore
from rangekeeper.models import FeesCollected, PoolSnapshot, PositionSnapshot, WalletBalances
from rangekeeper.range_geometry import liquidity_for_amounts, sqrt_price_x96_at_tick
from rangekeeper.state_reader import StateReader

# Liquidity is sized slightly under the balances so rounding never overspends.
DEPOSIT_MARGIN_BPS = 50


class Venue(ABC):
    @abstractmethod
    def get_pool_snapshot(self) -> PoolSnapshot: ...

    @abstractmethod
    def get_position_snapshot(self, position_id) -> PositionSnapshot | None: ...

    @abstractmethod
    def find_position(self) -> PositionSnapshot:
        """The one position this agent manages; raises NoPositionFound when there is none."""

    @abstractmethod
    def collect_fees_and_rewards(self, position_id) -> FeesCollected: ...

    @abstractmethod
    def remove_liquidity_and_close(self, position_id) -> None: ...

    @abstractmethod
    def open_position(self, lower_tick: int, upper_tick: int):
        """Open an (empty or seed-funded) position and return its id."""

    @abstractmethod
    def deposit_available_balances(self, position_id, balances: WalletBalances) -> None: ...

    @abstractmethod
    def get_wallet_balances(self) -> WalletBalances: ...

    @abstractmethod
    def token_decimals(self) -> tuple[int, int]: ...


class UniswapV4Venue(Venue):
    """Uniswap V4 pool on an EVM chain, one PositionManager NFT at a time."""

    def __init__(self, w3: Web3, account, config, store: PositionStore, logger=None):
        self.w3 = w3
        self.account = account
        self.config = config
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.reader = StateReader(w3, config, account.address)
        self.lp_manager = LPManager(w3, account, config)

    def _deadline(self) -> int:
        return int(time.time()) + self.config.TX_DEADLINE_SECONDS

    def _spendable(self, balances: WalletBalances) -> tuple[int, int]:
        """Wallet balances minus the gas reserve held back from native ETH."""
        amount0, amount1 = balances.balance_a, balances.balance_b
        if self.lp_manager.native_currency0:
            amount0 = max(0, amount0 - self.config.GAS_RESERVE_WEI)
        return amount0, amount1

    def _require_position(self, position_id) -> PositionSnapshot:
        position = self.reader.get_position_snapshot(position_id)
        if position is None:
            raise RuntimeError(f"position {position_id} does not exist")
        return position

    def setup(self) -> None:
        self.lp_manager.setup_approvals()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_pool_snapshot(self) -> PoolSnapshot:
        return self.reader.get_pool_snapshot()

    def get_position_snapshot(self, position_id) -> PositionSnapshot | None:
        return self.reader.get_position_snapshot(position_id)

    def track_position(self, token_id: int) -> PositionSnapshot:
        """Adopt an existing PositionManager NFT as the tracked position."""
        position = self.reader.get_position_snapshot(int(token_id))
        if position is None:
            raise NoPositionFound(
                f"position {token_id} does not exist, is not owned by "
                f"{self.account.address} or is not in the configured pool"
            )
        self.store.save(position.position_id, position.lower_tick, position.upper_tick)
        self.logger.info(
            "Tracking position token_id=%s range=[%d, %d]",
            position.position_id,
            position.lower_tick,
            position.upper_tick,
        )
        return position

    def find_position(self) -> PositionSnapshot:
        record = self.store.load()
        if record is None or record.get("token_id") is None:
            if self.config.POSITION_TOKEN_ID is None:
                raise NoPositionFound(
                    f"no tracked position in {self.store.path}; set POSITION_TOKEN_ID "
                    "or run `rangekeeper track <token_id>`"
                )
            return self.track_position(self.config.POSITION_TOKEN_ID)
        position = self.reader.get_position_snapshot(int(record["token_id"]))
        if position is None:
            raise NoPositionFound(f"tracked position {record['token_id']} no longer exists")
        return position

    def get_wallet_balances(self) -> WalletBalances:
        return self.reader.get_wallet_balances()

    def token_decimals(self) -> tuple[int, int]:
        return self.reader.token_decimals()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def collect_fees_and_rewards(self, position_id) -> FeesCollected:
        position = self._require_position(position_id)
        self.lp_manager.collect_fees(int(position_id), self._deadline())
        # V4 pools have no reward emissions.
        return FeesCollected(token_a=position.fees_owed_a, token_b=position.fees_owed_b)

    def remove_liquidity_and_close(self, position_id) -> None:
        position = self._require_position(position_id)
        self.lp_manager.remove_liquidity_and_close(
            int(position_id), position.liquidity, self._deadline()
        )
        self.store.clear()

    def open_position(self, lower_tick: int, upper_tick: int) -> int:
        amount0_max, amount1_max = self._spendable(self.reader.get_wallet_balances())
        result = self.lp_manager.mint_position(
            tick_lower=lower_tick,
            tick_upper=upper_tick,
            liquidity=self.config.SEED_LIQUIDITY,
            amount0_max=amount0_max,
            amount1_max=amount1_max,
            deadline=self._deadline(),
        )
        token_id = result["token_id"]
        if token_id is None:
            raise RuntimeError(f"mint tx {result['tx_hash']} emitted no position token id")
        self.store.save(token_id, lower_tick, upper_tick)
        return token_id

    def deposit_available_balances(self, position_id, balances: WalletBalances) -> None:
        position = self._require_position(position_id)
        pool = self.reader.get_pool_snapshot()
        amount0, amount1 = self._spendable(balances)

        liquidity = liquidity_for_amounts(
            pool.sqrt_price_x96,
            sqrt_price_x96_at_tick(position.lower_tick),
            sqrt_price_x96_at_tick(position.upper_tick),
            amount0,
            amount1,
        )
        liquidity = liquidity * (10_000 - DEPOSIT_MARGIN_BPS) // 10_000
        if liquidity <= 0:
            raise RuntimeError(
                f"balances too small to add liquidity (amount0={amount0}, amount1={amount1})"
            )

        self.logger.info(
            "Depositing into token_id=%s: liquidity=%d amount0_max=%d amount1_max=%d",
            position_id,
            liquidity,
            amount0,
            amount1,
        )
        self.lp_manager.increase_liquidity(
            int(position_id), liquidity, amount0, amount1, self._deadline()
        )

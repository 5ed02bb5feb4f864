from __future__ import annotations

import pytest

from rangekeeper.errors import NoPositionFound
from rangekeeper.models import (
    FeesCollected,
    PoolSnapshot,
    PositionSnapshot,
    WalletBalances,
)
from rangekeeper.strategy import StrategyParams
from rangekeeper.venue import Venue


def make_pool(tick: int, spacing: int = 10) -> PoolSnapshot:
    return PoolSnapshot(
        pool_id="0xpool",
        current_tick=tick,
        tick_spacing=spacing,
        liquidity=10**18,
        token_a="TKA",
        token_b="TKB",
    )


def make_position(lower: int, upper: int, position_id=7, liquidity: int = 5_000) -> PositionSnapshot:
    return PositionSnapshot(
        position_id=position_id,
        lower_tick=lower,
        upper_tick=upper,
        liquidity=liquidity,
        fees_owed_a=11,
        fees_owed_b=22,
    )


class FakeVenue(Venue):
    """In-memory venue. Put an exception in ``fail[method_name]`` to make that call raise."""

    MUTATIONS = (
        "collect_fees_and_rewards",
        "remove_liquidity_and_close",
        "open_position",
        "deposit_available_balances",
    )

    def __init__(self, pool=None, position=None, balances=None):
        self.pool = pool or make_pool(0)
        self.position = position
        self.balances = balances or WalletBalances(balance_a=1_000_000, balance_b=2_000_000)
        self.fail: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.deposits: list[tuple] = []
        self.next_id = 100

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]

    def get_pool_snapshot(self):
        self._call("get_pool_snapshot")
        return self.pool

    def get_position_snapshot(self, position_id):
        if self.position is not None and self.position.position_id == position_id:
            return self.position
        return None

    def find_position(self):
        self._call("find_position")
        if self.position is None:
            raise NoPositionFound("no tracked position")
        return self.position

    def collect_fees_and_rewards(self, position_id):
        self._call("collect_fees_and_rewards")
        return FeesCollected(self.position.fees_owed_a, self.position.fees_owed_b)

    def remove_liquidity_and_close(self, position_id):
        self._call("remove_liquidity_and_close")
        self.position = None

    def open_position(self, lower_tick, upper_tick):
        self._call("open_position")
        self.next_id += 1
        self.position = PositionSnapshot(self.next_id, lower_tick, upper_tick, 0)
        return self.next_id

    def deposit_available_balances(self, position_id, balances):
        self._call("deposit_available_balances")
        self.deposits.append((position_id, balances))

    def get_wallet_balances(self):
        self._call("get_wallet_balances")
        return self.balances

    def token_decimals(self):
        return 6, 6

    def mutation_calls(self) -> list[str]:
        return [c for c in self.calls if c in self.MUTATIONS]


@pytest.fixture
def params() -> StrategyParams:
    return StrategyParams(
        range_width_fraction=0.10,
        edge_buffer_fraction=0.02,
        dwell_seconds=10.0,
        min_migration_interval_seconds=180.0,
    )


@pytest.fixture
def venue() -> FakeVenue:
    return FakeVenue(pool=make_pool(500), position=make_position(-1000, 0))

"""
Value types passed between the venue binding, the decision engine and the
migration orchestrator.

Snapshots are produced fresh on every poll and never mutated. EngineState is
the only long-lived state and is replaced wholesale on every transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, IntEnum


class TriggerReason(str, Enum):
    NONE = "none"
    OUT_OF_RANGE = "out_of_range"
    NEAR_LOWER_EDGE = "near_lower_edge"
    NEAR_UPPER_EDGE = "near_upper_edge"


class MigrationStep(IntEnum):
    COLLECT_FEES = 1
    REMOVE_LIQUIDITY = 2
    CLOSE_POSITION = 3
    OPEN_POSITION = 4
    DEPOSIT = 5

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", " ")


class MigrationOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    # New position exists but the deposit into it failed.
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class PriceRange:
    lower_tick: int
    upper_tick: int
    lower_price: Decimal
    upper_price: Decimal
    center_price: Decimal


@dataclass(frozen=True)
class PoolSnapshot:
    pool_id: str
    current_tick: int
    tick_spacing: int
    liquidity: int
    token_a: str
    token_b: str
    sqrt_price_x96: int = 0


@dataclass(frozen=True)
class PositionSnapshot:
    position_id: int | str
    lower_tick: int
    upper_tick: int
    liquidity: int
    fees_owed_a: int = 0
    fees_owed_b: int = 0
    rewards_owed: tuple[int, ...] = ()


@dataclass(frozen=True)
class WalletBalances:
    balance_a: int
    balance_b: int

    @property
    def is_empty(self) -> bool:
        return self.balance_a <= 0 and self.balance_b <= 0


@dataclass(frozen=True)
class PositionBounds:
    position_id: int | str
    lower_tick: int
    upper_tick: int

    @classmethod
    def of(cls, position: PositionSnapshot) -> "PositionBounds":
        return cls(position.position_id, position.lower_tick, position.upper_tick)


@dataclass(frozen=True)
class FeesCollected:
    token_a: int
    token_b: int
    rewards: tuple[int, ...] = ()


@dataclass(frozen=True)
class EngineState:
    active_trigger_reason: TriggerReason = TriggerReason.NONE
    dwell_start: float | None = None
    dwell_reason: TriggerReason | None = None
    # Epoch zero so the very first cooldown check always passes.
    last_migration_at: float = 0.0

    @property
    def dwelling(self) -> bool:
        return self.dwell_start is not None


@dataclass(frozen=True)
class MigrationResult:
    outcome: MigrationOutcome
    old_position: PositionBounds
    new_position: PositionBounds | None = None
    fees_collected: FeesCollected | None = None
    failure_detail: str | None = None
    failed_step: MigrationStep | None = None
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        """True whenever a new position exists, including an empty one."""
        return self.outcome in (MigrationOutcome.SUCCEEDED, MigrationOutcome.PARTIAL)

    def to_record(self) -> dict:
        record = {
            "outcome": self.outcome.value,
            "succeeded": self.succeeded,
            "dry_run": self.dry_run,
            "old_position": {
                "position_id": self.old_position.position_id,
                "range": [self.old_position.lower_tick, self.old_position.upper_tick],
            },
            "new_position": None,
            "fees_collected": None,
            "failed_step": int(self.failed_step) if self.failed_step else None,
            "failure_detail": self.failure_detail,
        }
        if self.new_position is not None:
            record["new_position"] = {
                "position_id": self.new_position.position_id,
                "range": [self.new_position.lower_tick, self.new_position.upper_tick],
            }
        if self.fees_collected is not None:
            record["fees_collected"] = {
                "token_a": str(self.fees_collected.token_a),
                "token_b": str(self.fees_collected.token_b),
                "rewards": [str(r) for r in self.fees_collected.rewards],
            }
        return record


@dataclass(frozen=True)
class EdgeDistances:
    lower: float
    upper: float

    @property
    def nearest_edge(self) -> str:
        return "lower" if self.lower < self.upper else "upper"


@dataclass(frozen=True)
class TriggerEvaluation:
    reason: TriggerReason
    in_range: bool
    edge_distances: EdgeDistances | None = None


@dataclass(frozen=True)
class DecisionDetails:
    current_tick: int
    current_price: Decimal
    lower_tick: int
    upper_tick: int
    lower_price: Decimal
    upper_price: Decimal
    in_range: bool
    edge_distances: EdgeDistances | None = None
    dwell_elapsed: float | None = None
    cooldown_remaining: float = 0.0


@dataclass(frozen=True)
class Decision:
    should_migrate: bool
    reason: TriggerReason
    state: EngineState
    details: DecisionDetails

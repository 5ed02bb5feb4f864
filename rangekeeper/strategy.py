"""
Strategy — decides when the tracked position should migrate to a new range.

Three pure filters run on every poll:

    evaluate_trigger  where is the price relative to the position?
    process_dwell     has that condition held long enough?
    check_cooldown    has enough time passed since the last migration?

evaluate_tick() composes them. DecisionEngine owns the single EngineState
instance for the process lifetime and folds migration outcomes into it.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum

from rangekeeper.errors import InvalidParameter
from rangekeeper.models import (
    Decision,
    DecisionDetails,
    EdgeDistances,
    EngineState,
    MigrationOutcome,
    MigrationResult,
    PoolSnapshot,
    PositionSnapshot,
    TriggerEvaluation,
    TriggerReason,
)
from rangekeeper.range_geometry import tick_to_price


@dataclass(frozen=True)
class StrategyParams:
    range_width_fraction: float = 0.10
    edge_buffer_fraction: float = 0.02
    dwell_seconds: float = 10.0
    min_migration_interval_seconds: float = 180.0

    def validate(self, logger: logging.Logger | None = None) -> "StrategyParams":
        """Raise InvalidParameter for any value the engine cannot honour."""
        if not 0 < self.range_width_fraction < 1:
            raise InvalidParameter(
                f"range_width_fraction must be in (0, 1), got {self.range_width_fraction}"
            )
        if self.edge_buffer_fraction < 0:
            raise InvalidParameter(
                f"edge_buffer_fraction must be >= 0, got {self.edge_buffer_fraction}"
            )
        if self.edge_buffer_fraction >= self.range_width_fraction:
            raise InvalidParameter("edge_buffer_fraction must be less than range_width_fraction")
        # Above 0.5 both edge checks could fire at once.
        if self.edge_buffer_fraction >= 0.5:
            raise InvalidParameter("edge_buffer_fraction must be less than 0.5")
        if self.dwell_seconds < 0:
            raise InvalidParameter(f"dwell_seconds must be >= 0, got {self.dwell_seconds}")
        if self.min_migration_interval_seconds < 0:
            raise InvalidParameter(
                "min_migration_interval_seconds must be >= 0, "
                f"got {self.min_migration_interval_seconds}"
            )

        if (
            logger is not None
            and self.min_migration_interval_seconds > 0
            and self.dwell_seconds > self.min_migration_interval_seconds
        ):
            logger.warning(
                "dwell_seconds (%s) exceeds min_migration_interval_seconds (%s)",
                self.dwell_seconds,
                self.min_migration_interval_seconds,
            )
        return self


class EnginePhase(str, Enum):
    IDLE = "idle"
    DWELLING = "dwelling"
    # Dwell satisfied; migrates as soon as the cooldown allows.
    ARMED = "armed"
    # No trigger held, but the last migration is still inside the cooldown.
    COOLING = "cooling"


@dataclass(frozen=True)
class DwellResult:
    fired: bool
    state: EngineState
    elapsed: float | None = None


@dataclass(frozen=True)
class CooldownResult:
    allowed: bool
    remaining: float


# ----------------------------------------------------------------------
# Trigger evaluator
# ----------------------------------------------------------------------


def is_in_range(current_tick: int, lower_tick: int, upper_tick: int) -> bool:
    """Upper bound is exclusive: a position is out at its exact upper tick."""
    return lower_tick <= current_tick < upper_tick


def edge_distances(current_tick: int, lower_tick: int, upper_tick: int) -> EdgeDistances:
    width = upper_tick - lower_tick
    assert width > 0, f"zero-width position range [{lower_tick}, {upper_tick}]"
    to_lower = (current_tick - lower_tick) / width
    return EdgeDistances(lower=to_lower, upper=1.0 - to_lower)


def evaluate_trigger(
    current_tick: int,
    lower_tick: int,
    upper_tick: int,
    edge_buffer_fraction: float,
) -> TriggerEvaluation:
    if not is_in_range(current_tick, lower_tick, upper_tick):
        return TriggerEvaluation(reason=TriggerReason.OUT_OF_RANGE, in_range=False)

    distances = edge_distances(current_tick, lower_tick, upper_tick)
    reason = TriggerReason.NONE
    if edge_buffer_fraction > 0:
        if distances.lower < edge_buffer_fraction:
            reason = TriggerReason.NEAR_LOWER_EDGE
        elif distances.upper < edge_buffer_fraction:
            reason = TriggerReason.NEAR_UPPER_EDGE

    return TriggerEvaluation(reason=reason, in_range=True, edge_distances=distances)


# ----------------------------------------------------------------------
# Dwell tracker and cooldown gate
# ----------------------------------------------------------------------


def process_dwell(
    state: EngineState,
    reason: TriggerReason,
    now: float,
    dwell_seconds: float,
) -> DwellResult:
    """Fire once ``reason`` has held continuously for ``dwell_seconds``.

    Firing leaves the dwell window in place; only the migration fold-in
    clears it, so a fire rejected by the cooldown is not lost.
    """
    if reason is TriggerReason.NONE:
        if state.dwelling:
            state = replace(state, dwell_start=None, dwell_reason=None)
        return DwellResult(fired=False, state=state)

    if not state.dwelling or state.dwell_reason is not reason:
        # No partial credit across different trigger kinds.
        state = replace(state, dwell_start=now, dwell_reason=reason)
        return DwellResult(fired=False, state=state, elapsed=0.0)

    elapsed = now - state.dwell_start
    return DwellResult(fired=elapsed >= dwell_seconds, state=state, elapsed=elapsed)


def check_cooldown(last_migration_at: float, now: float, min_interval: float) -> CooldownResult:
    since_last = now - last_migration_at
    if since_last >= min_interval:
        return CooldownResult(allowed=True, remaining=0.0)
    return CooldownResult(allowed=False, remaining=min_interval - since_last)


# ----------------------------------------------------------------------
# Decision
# ----------------------------------------------------------------------


def evaluate_tick(
    state: EngineState,
    pool: PoolSnapshot,
    position: PositionSnapshot,
    params: StrategyParams,
    decimals_a: int,
    decimals_b: int,
    now: float,
) -> Decision:
    """One poll's decision. The returned state must be persisted even on no-go."""
    trigger = evaluate_trigger(
        pool.current_tick,
        position.lower_tick,
        position.upper_tick,
        params.edge_buffer_fraction,
    )
    dwell = process_dwell(state, trigger.reason, now, params.dwell_seconds)
    new_state = replace(dwell.state, active_trigger_reason=trigger.reason)

    details = DecisionDetails(
        current_tick=pool.current_tick,
        current_price=tick_to_price(pool.current_tick, decimals_a, decimals_b),
        lower_tick=position.lower_tick,
        upper_tick=position.upper_tick,
        lower_price=tick_to_price(position.lower_tick, decimals_a, decimals_b),
        upper_price=tick_to_price(position.upper_tick, decimals_a, decimals_b),
        in_range=trigger.in_range,
        edge_distances=trigger.edge_distances,
        dwell_elapsed=dwell.elapsed,
    )

    if not dwell.fired:
        return Decision(False, trigger.reason, new_state, details)

    cooldown = check_cooldown(
        new_state.last_migration_at, now, params.min_migration_interval_seconds
    )
    details = replace(details, cooldown_remaining=cooldown.remaining)
    return Decision(cooldown.allowed, trigger.reason, new_state, details)


# ----------------------------------------------------------------------
# Migration fold-in
# ----------------------------------------------------------------------


def mark_migration_complete(state: EngineState, now: float) -> EngineState:
    return replace(
        state,
        active_trigger_reason=TriggerReason.NONE,
        dwell_start=None,
        dwell_reason=None,
        last_migration_at=now,
    )


def mark_migration_failed(state: EngineState) -> EngineState:
    """Drop the dwell that triggered the attempt but leave the cooldown untouched."""
    return replace(state, dwell_start=None, dwell_reason=None)


def fold_migration_result(state: EngineState, result: MigrationResult, now: float) -> EngineState:
    if result.outcome is MigrationOutcome.SUCCEEDED or result.outcome is MigrationOutcome.PARTIAL:
        return mark_migration_complete(state, now)
    if result.outcome is MigrationOutcome.FAILED:
        return mark_migration_failed(state)
    raise AssertionError(f"unhandled migration outcome {result.outcome!r}")


# ----------------------------------------------------------------------
# Phase reporting
# ----------------------------------------------------------------------


def engine_phase(state: EngineState, params: StrategyParams, now: float) -> EnginePhase:
    cooldown = check_cooldown(state.last_migration_at, now, params.min_migration_interval_seconds)
    if not state.dwelling:
        return EnginePhase.IDLE if cooldown.allowed else EnginePhase.COOLING
    if now - state.dwell_start < params.dwell_seconds:
        return EnginePhase.DWELLING
    return EnginePhase.ARMED


def time_to_eligibility(state: EngineState, params: StrategyParams, now: float) -> float:
    """Seconds until a held trigger could start a migration (0 when nothing blocks it)."""
    cooldown = check_cooldown(state.last_migration_at, now, params.min_migration_interval_seconds)
    if not state.dwelling:
        return cooldown.remaining
    dwell_remaining = max(0.0, params.dwell_seconds - (now - state.dwell_start))
    return max(dwell_remaining, cooldown.remaining)


class DecisionEngine:
    """Holds the process-lifetime EngineState and applies every transition to it."""

    def __init__(
        self,
        params: StrategyParams,
        decimals_a: int,
        decimals_b: int,
        logger: logging.Logger | None = None,
        state: EngineState | None = None,
    ):
        self.params = params
        self.decimals_a = decimals_a
        self.decimals_b = decimals_b
        self.logger = logger or logging.getLogger(__name__)
        self.state = state or EngineState()

    def evaluate(self, pool: PoolSnapshot, position: PositionSnapshot, now: float) -> Decision:
        decision = evaluate_tick(
            self.state,
            pool,
            position,
            self.params,
            self.decimals_a,
            self.decimals_b,
            now,
        )
        self._log_transition(self.state, decision)
        self.state = decision.state
        return decision

    def record_migration(self, result: MigrationResult, now: float) -> EngineState:
        self.state = fold_migration_result(self.state, result, now)
        if result.succeeded:
            self.logger.info(
                "Migration recorded (%s); cooldown of %ss starts now",
                result.outcome.value,
                self.params.min_migration_interval_seconds,
            )
        else:
            self.logger.warning("Migration failed; dwell cleared, cooldown not engaged")
        return self.state

    def phase(self, now: float) -> EnginePhase:
        return engine_phase(self.state, self.params, now)

    def time_to_eligibility(self, now: float) -> float:
        return time_to_eligibility(self.state, self.params, now)

    def _log_transition(self, before: EngineState, decision: Decision) -> None:
        after = decision.state
        details = decision.details

        if before.dwelling and not after.dwelling:
            self.logger.info("DWELL RESET: condition cleared (was %s)", before.dwell_reason.value)

        if after.dwelling and after.dwell_start != before.dwell_start:
            reason = decision.reason
            if reason is TriggerReason.OUT_OF_RANGE:
                self.logger.warning(
                    "OUT OF RANGE: tick=%d range=[%d, %d]",
                    details.current_tick,
                    details.lower_tick,
                    details.upper_tick,
                )
            elif reason is TriggerReason.NEAR_LOWER_EDGE or reason is TriggerReason.NEAR_UPPER_EDGE:
                self.logger.warning(
                    "EDGE HIT: %s price=%.6f lower=%.6f upper=%.6f",
                    reason.value,
                    details.current_price,
                    details.lower_price,
                    details.upper_price,
                )
            else:
                raise AssertionError(f"dwell started without a trigger: {reason!r}")
            self.logger.info(
                "DWELL STARTED: %s - waiting %ss", reason.value, self.params.dwell_seconds
            )

        if decision.should_migrate:
            self.logger.info(
                "Migration triggered: %s after %.1fs dwell",
                decision.reason.value,
                details.dwell_elapsed or 0.0,
            )
        elif details.cooldown_remaining > 0:
            self.logger.info(
                "Migration skipped: cooldown active, %.0fs remaining",
                details.cooldown_remaining,
            )
        elif after.dwelling and details.dwell_elapsed:
            self.logger.debug(
                "Dwell in progress: %.1fs / %ss",
                details.dwell_elapsed,
                self.params.dwell_seconds,
            )

"""
Migration — moves the tracked position's funds into a fresh range.

Steps, in order, each waiting on the committed outcome of the previous one:

    1. collect fees and rewards      best effort, failure recorded only
    2. remove all liquidity          \
    3. close the old position         } critical: failure aborts, nothing is opened
    4. open a new position            failure leaves funds uninvested in the wallet
    5. deposit wallet balances       failure leaves the new position empty (partial)

There is no internal retry and no automatic reopening of the old position.
"""

import logging
from dataclasses import dataclass

from rangekeeper.errors import StepFailure
from rangekeeper.models import (
    FeesCollected,
    MigrationOutcome,
    MigrationResult,
    MigrationStep,
    PoolSnapshot,
    PositionBounds,
    PositionSnapshot,
    PriceRange,
)
from rangekeeper.range_geometry import compute_symmetric_range, pool_price
from rangekeeper.strategy import StrategyParams
from rangekeeper.venue import Venue

DRY_RUN_POSITION_ID = "dry-run"


@dataclass(frozen=True)
class MigrationPreview:
    current: PositionBounds
    liquidity: int
    new_range: PriceRange


class MigrationOrchestrator:
    def __init__(
        self,
        venue: Venue,
        params: StrategyParams,
        dry_run: bool = False,
        logger: logging.Logger | None = None,
    ):
        self.venue = venue
        self.params = params
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(__name__)

    def target_range(self, pool: PoolSnapshot, decimals_a: int, decimals_b: int) -> PriceRange:
        return compute_symmetric_range(
            pool_price(pool, decimals_a, decimals_b),
            self.params.range_width_fraction,
            pool.tick_spacing,
            decimals_a,
            decimals_b,
        )

    def preview_migration(
        self,
        position: PositionSnapshot,
        pool: PoolSnapshot,
        decimals_a: int,
        decimals_b: int,
    ) -> MigrationPreview:
        return MigrationPreview(
            current=PositionBounds.of(position),
            liquidity=position.liquidity,
            new_range=self.target_range(pool, decimals_a, decimals_b),
        )

    def run_migration(
        self,
        position: PositionSnapshot,
        pool: PoolSnapshot,
        decimals_a: int,
        decimals_b: int,
    ) -> MigrationResult:
        """Run all five steps once and report what happened.

        ``pool`` is the snapshot that triggered the migration; the new range
        is centred on a fresh read taken after the old position is closed.
        """
        old = PositionBounds.of(position)
        notes: list[str] = []
        mode = " [DRY RUN]" if self.dry_run else ""
        self.logger.info(
            "Starting migration%s of position %s range=[%d, %d] (trigger tick=%d)",
            mode,
            old.position_id,
            old.lower_tick,
            old.upper_tick,
            pool.current_tick,
        )

        # Step 1: best effort
        self.logger.info("Step 1/5: Collecting fees and rewards...")
        fees = None
        try:
            fees = self._collect_fees(position)
            self.logger.info("Fees collected: A=%d B=%d", fees.token_a, fees.token_b)
        except Exception as e:
            failure = StepFailure(MigrationStep.COLLECT_FEES, e)
            self.logger.warning("%s; continuing, the close step settles owed fees", failure)
            notes.append(str(failure))

        # Steps 2 and 3: one venue call
        self.logger.info("Step 2/5: Removing liquidity from old position...")
        self.logger.info("Step 3/5: Closing old position...")
        try:
            self._close(position)
        except Exception as e:
            failure = StepFailure(MigrationStep.CLOSE_POSITION, e)
            self.logger.error("%s; aborting, old position %s left in place", failure, old.position_id)
            return self._failed(old, fees, failure, notes)

        # Step 4
        self.logger.info("Step 4/5: Opening new position...")
        try:
            fresh_pool = self.venue.get_pool_snapshot()
            new_range = self.target_range(fresh_pool, decimals_a, decimals_b)
            self.logger.info(
                "New position range: center=%.6f price=[%.6f, %.6f] ticks=[%d, %d]",
                new_range.center_price,
                new_range.lower_price,
                new_range.upper_price,
                new_range.lower_tick,
                new_range.upper_tick,
            )
            new_id = self._open(new_range)
        except Exception as e:
            failure = StepFailure(MigrationStep.OPEN_POSITION, e)
            self.logger.error(
                "%s; old position %s is closed and its funds sit uninvested in the wallet, "
                "manual intervention may be needed",
                failure,
                old.position_id,
            )
            return self._failed(old, fees, failure, notes)
        new = PositionBounds(new_id, new_range.lower_tick, new_range.upper_tick)

        # Step 5
        self.logger.info("Step 5/5: Depositing liquidity...")
        try:
            balances = self.venue.get_wallet_balances()
            self.logger.info(
                "Available balances: A=%d B=%d", balances.balance_a, balances.balance_b
            )
            if balances.is_empty:
                self.logger.warning("Wallet holds no balances; new position %s stays empty", new_id)
            else:
                self._deposit(new_id, balances)
        except Exception as e:
            failure = StepFailure(MigrationStep.DEPOSIT, e)
            self.logger.error("%s; new position %s is open but empty", failure, new_id)
            notes.append(str(failure))
            return MigrationResult(
                outcome=MigrationOutcome.PARTIAL,
                old_position=old,
                new_position=new,
                fees_collected=fees,
                failure_detail="; ".join(notes),
                failed_step=MigrationStep.DEPOSIT,
                dry_run=self.dry_run,
            )

        self.logger.info(
            "Migration complete%s: %s [%d, %d] -> %s [%d, %d]",
            mode,
            old.position_id,
            old.lower_tick,
            old.upper_tick,
            new.position_id,
            new.lower_tick,
            new.upper_tick,
        )
        return MigrationResult(
            outcome=MigrationOutcome.SUCCEEDED,
            old_position=old,
            new_position=new,
            fees_collected=fees,
            failure_detail="; ".join(notes) or None,
            dry_run=self.dry_run,
        )

    def _failed(
        self,
        old: PositionBounds,
        fees: FeesCollected | None,
        failure: StepFailure,
        notes: list[str],
    ) -> MigrationResult:
        return MigrationResult(
            outcome=MigrationOutcome.FAILED,
            old_position=old,
            fees_collected=fees,
            failure_detail="; ".join([*notes, str(failure)]),
            failed_step=failure.step,
            dry_run=self.dry_run,
        )

    # ------------------------------------------------------------------
    # Venue calls, simulated in dry-run mode
    # ------------------------------------------------------------------

    def _collect_fees(self, position: PositionSnapshot) -> FeesCollected:
        if self.dry_run:
            self.logger.info("[DRY RUN] Would collect fees and rewards")
            return FeesCollected(
                token_a=position.fees_owed_a,
                token_b=position.fees_owed_b,
                rewards=position.rewards_owed,
            )
        return self.venue.collect_fees_and_rewards(position.position_id)

    def _close(self, position: PositionSnapshot) -> None:
        if self.dry_run:
            self.logger.info(
                "[DRY RUN] Would remove liquidity %d and close position %s",
                position.liquidity,
                position.position_id,
            )
            return
        self.venue.remove_liquidity_and_close(position.position_id)

    def _open(self, new_range: PriceRange):
        if self.dry_run:
            self.logger.info(
                "[DRY RUN] Would open new position ticks=[%d, %d]",
                new_range.lower_tick,
                new_range.upper_tick,
            )
            return DRY_RUN_POSITION_ID
        return self.venue.open_position(new_range.lower_tick, new_range.upper_tick)

    def _deposit(self, position_id, balances) -> None:
        if self.dry_run:
            self.logger.info(
                "[DRY RUN] Would deposit A=%d B=%d into %s",
                balances.balance_a,
                balances.balance_b,
                position_id,
            )
            return
        self.venue.deposit_available_balances(position_id, balances)

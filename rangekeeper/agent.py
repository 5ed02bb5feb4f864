"""
LPAgent — poll loop that keeps one Uniswap V4 LP position inside its range.

Each poll reads the pool and the tracked position, runs the decision engine,
and when it says go, runs the migration to completion before polling again.
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

from rangekeeper import config
from rangekeeper.errors import InvalidParameter, NoPositionFound, SnapshotUnavailable
from rangekeeper.migration import MigrationOrchestrator
from rangekeeper.models import Decision, MigrationResult, PoolSnapshot, PositionSnapshot
from rangekeeper.status import build_status, format_position_status, write_status
from rangekeeper.strategy import DecisionEngine, StrategyParams
from rangekeeper.venue import Venue

logger = logging.getLogger("rangekeeper.agent")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str, data_dir: Path) -> None:
    """Console at ``level``, plus a DEBUG file log next to the decision journal."""
    root = logging.getLogger("rangekeeper")
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    data_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(data_dir / "decisions.log")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(fh)


class LPAgent:
    """Sequential poll loop. Never re-enters the engine while a migration runs."""

    def __init__(
        self,
        venue: Venue,
        params: StrategyParams,
        poll_interval: float,
        data_dir: Path,
        dry_run: bool = True,
        clock=time.time,
    ):
        self.venue = venue
        self.params = params
        self.poll_interval = poll_interval
        self.data_dir = Path(data_dir)
        self.dry_run = dry_run
        self.clock = clock

        self.decimals_a, self.decimals_b = venue.token_decimals()
        logger.info("Token decimals: A=%d B=%d", self.decimals_a, self.decimals_b)

        self.engine = DecisionEngine(
            params,
            self.decimals_a,
            self.decimals_b,
            logger=logging.getLogger("rangekeeper.strategy"),
        )
        self.orchestrator = MigrationOrchestrator(
            venue,
            params,
            dry_run=dry_run,
            logger=logging.getLogger("rangekeeper.migration"),
        )

        self.decisions_jsonl = self.data_dir / "decisions.jsonl"
        self.migrations_jsonl = self.data_dir / "migrations.jsonl"
        self.status_file = self.data_dir / "status.json"
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def poll_once(self) -> Decision | None:
        """One read -> decide -> (migrate) cycle. None when the tick was skipped."""
        now = self.clock()
        try:
            pool = self.venue.get_pool_snapshot()
            position = self.venue.find_position()
        except SnapshotUnavailable as e:
            logger.warning("Skipping tick, snapshot unavailable: %s", e)
            return None
        except NoPositionFound as e:
            logger.warning("No position found (%s). Waiting for position...", e)
            return None

        logger.info(
            "Pool: tick=%d  liquidity=%d | position %s range=[%d, %d]",
            pool.current_tick,
            pool.liquidity,
            position.position_id,
            position.lower_tick,
            position.upper_tick,
        )

        decision = self.engine.evaluate(pool, position, now)
        self.log_decision(pool, position, decision, now)
        self._publish_status(pool, position, now)

        if decision.should_migrate:
            result = self.orchestrator.run_migration(
                position, pool, self.decimals_a, self.decimals_b
            )
            self.engine.record_migration(result, self.clock())
            self.log_migration(result)
            if result.succeeded:
                logger.info("Migration %s", result.outcome.value)
            else:
                logger.error("Migration failed: %s", result.failure_detail)

        return decision

    def run(self) -> None:
        """Poll until stop() or SIGINT/SIGTERM. An in-flight migration always finishes."""
        self._install_signal_handlers()
        logger.info(
            "Agent running%s. Checking every %ss. Press Ctrl+C to stop.",
            " in DRY RUN mode" if self.dry_run else "",
            self.poll_interval,
        )

        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error("Error in agent loop: %s", e, exc_info=True)
            self._stop.wait(self.poll_interval)

        logger.info("Agent stopped.")

    def stop(self) -> None:
        self._stop.set()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handle(signum, _frame):
            logger.info(
                "Received %s, shutting down after the current step...",
                signal.Signals(signum).name,
            )
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    # ------------------------------------------------------------------
    # Journals
    # ------------------------------------------------------------------

    def _append_jsonl(self, path: Path, record: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(record) + "\n")

    def log_decision(
        self,
        pool: PoolSnapshot,
        position: PositionSnapshot,
        decision: Decision,
        now: float,
    ) -> None:
        details = decision.details
        phase = self.engine.phase(now).value
        logger.debug(
            "DECISION: migrate=%s reason=%s phase=%s | tick=%d price=%.6f | "
            "range=[%d,%d] in_range=%s | position=%s",
            decision.should_migrate,
            decision.reason.value,
            phase,
            details.current_tick,
            details.current_price,
            details.lower_tick,
            details.upper_tick,
            details.in_range,
            position.position_id,
        )

        record = {
            "ts": datetime.fromtimestamp(now, timezone.utc).isoformat(),
            "should_migrate": decision.should_migrate,
            "reason": decision.reason.value,
            "phase": phase,
            "tick": details.current_tick,
            "price": round(float(details.current_price), 6),
            "range": [details.lower_tick, details.upper_tick],
            "in_range": details.in_range,
            "nearest_edge": (
                details.edge_distances.nearest_edge if details.edge_distances else None
            ),
            "dwell_elapsed": details.dwell_elapsed,
            "cooldown_remaining": round(details.cooldown_remaining, 1),
            "position_id": position.position_id,
        }
        self._append_jsonl(self.decisions_jsonl, record)

    def log_migration(self, result: MigrationResult) -> None:
        record = {"ts": datetime.now(timezone.utc).isoformat(), **result.to_record()}
        self._append_jsonl(self.migrations_jsonl, record)

    def _publish_status(self, pool: PoolSnapshot, position: PositionSnapshot, now: float) -> None:
        status = build_status(
            pool,
            position,
            self.engine.state,
            self.params,
            self.decimals_a,
            self.decimals_b,
            now,
            dry_run=self.dry_run,
        )
        write_status(self.status_file, status)


# ======================================================================
# Entry point
# ======================================================================


def build_venue():
    from web3 import Web3

    from rangekeeper.lp_manager import PositionStore
    from rangekeeper.venue import UniswapV4Venue

    logger.info("Connecting to RPC: %s", config.RPC_URL)
    w3 = Web3(Web3.HTTPProvider(config.RPC_URL))
    if not w3.is_connected():
        raise ConnectionError(f"Cannot connect to RPC at {config.RPC_URL}")
    chain_id = w3.eth.chain_id
    if chain_id != config.EXPECTED_CHAIN_ID:
        raise InvalidParameter(
            f"RPC chain id {chain_id} does not match EXPECTED_CHAIN_ID {config.EXPECTED_CHAIN_ID}"
        )
    logger.info("Connected. Chain ID: %d", chain_id)

    # Dry runs still read the position owned by this key.
    if not config.AGENT_PRIVATE_KEY:
        raise InvalidParameter("AGENT_PRIVATE_KEY is not set. Run `rangekeeper gen-wallet` first.")
    account = w3.eth.account.from_key(config.AGENT_PRIVATE_KEY)
    logger.info("Agent address: %s", account.address)

    store = PositionStore(config.DATA_DIR / "positions.json")
    return UniswapV4Venue(
        w3, account, config, store, logger=logging.getLogger("rangekeeper.venue")
    )


def cmd_run(args) -> int:
    venue = build_venue()
    if not config.DRY_RUN and not args.skip_approvals:
        logger.info("Running Permit2 approvals...")
        venue.setup()
    agent = LPAgent(
        venue,
        config.strategy_params(),
        config.POLL_INTERVAL_SECONDS,
        config.DATA_DIR,
        dry_run=config.DRY_RUN,
    )
    agent.run()
    return 0


def cmd_once(args) -> int:
    venue = build_venue()
    params = config.strategy_params()
    decimals_a, decimals_b = venue.token_decimals()
    pool = venue.get_pool_snapshot()
    try:
        position = venue.find_position()
    except NoPositionFound as e:
        print(f"\nNo position found: {e}\n")
        return 0

    engine = DecisionEngine(params, decimals_a, decimals_b)
    decision = engine.evaluate(pool, position, time.time())
    details = decision.details

    print(format_position_status(pool, position, decimals_a, decimals_b))
    print("                   EVALUATION RESULT")
    print(f"  Should Migrate: {'YES' if decision.should_migrate else 'NO'}")
    print(f"  Trigger Reason: {decision.reason.value}")
    if details.edge_distances is not None:
        print(f"  Distance to Lower: {details.edge_distances.lower * 100:.2f}%")
        print(f"  Distance to Upper: {details.edge_distances.upper * 100:.2f}%")
        print(f"  Nearest Edge: {details.edge_distances.nearest_edge}")

    preview = MigrationOrchestrator(venue, params, dry_run=True).preview_migration(
        position, pool, decimals_a, decimals_b
    )
    new_range = preview.new_range
    print("\n                  MIGRATION PREVIEW")
    print(f"  Mode: {'DRY RUN' if config.DRY_RUN else 'LIVE'}")
    print(f"  Current Tick Range: [{preview.current.lower_tick}, {preview.current.upper_tick}]")
    print(f"  New Center Price: {new_range.center_price:.6f}")
    print(f"  New Price Range: [{new_range.lower_price:.6f}, {new_range.upper_price:.6f}]")
    print(f"  New Tick Range: [{new_range.lower_tick}, {new_range.upper_tick}]")
    return 0


def cmd_status(args) -> int:
    venue = build_venue()
    decimals_a, decimals_b = venue.token_decimals()
    pool = venue.get_pool_snapshot()
    try:
        position = venue.find_position()
    except NoPositionFound:
        position = None
    print(format_position_status(pool, position, decimals_a, decimals_b))
    return 0


def cmd_track(args) -> int:
    venue = build_venue()
    decimals_a, decimals_b = venue.token_decimals()
    try:
        position = venue.track_position(args.token_id)
    except (NoPositionFound, SnapshotUnavailable) as e:
        logger.error("Cannot track position: %s", e)
        return 1
    print(format_position_status(venue.get_pool_snapshot(), position, decimals_a, decimals_b))
    return 0


def cmd_gen_wallet(args) -> int:
    from eth_account import Account

    account = Account.create()
    private_key_hex = account.key.hex()
    if not private_key_hex.startswith("0x"):
        private_key_hex = f"0x{private_key_hex}"

    print("Generated new wallet (store private key securely):")
    print(f"Address: {account.address}")
    print()
    print("Paste into .env:")
    print(f"AGENT_PRIVATE_KEY={private_key_hex}")
    return 0


def cmd_dashboard(args) -> int:
    from rangekeeper.dashboard import create_app

    app = create_app(config.DATA_DIR, poll_interval=config.POLL_INTERVAL_SECONDS)
    print(f"rangekeeper dashboard starting on http://{config.DASHBOARD_HOST}:{config.DASHBOARD_PORT}")
    app.run(host=config.DASHBOARD_HOST, port=config.DASHBOARD_PORT, debug=False)
    return 0


COMMANDS = {
    "run": cmd_run,
    "once": cmd_once,
    "status": cmd_status,
    "track": cmd_track,
    "gen-wallet": cmd_gen_wallet,
    "dashboard": cmd_dashboard,
}


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rangekeeper", description="Uniswap V4 LP range manager"
    )
    sub = parser.add_subparsers(dest="command")
    run = sub.add_parser("run", help="Run the poll loop (default)")
    run.add_argument(
        "--skip-approvals", action="store_true", help="Do not send Permit2 approvals at start-up"
    )
    sub.add_parser("once", help="Evaluate once, print the decision and a migration preview")
    sub.add_parser("status", help="Print the current position status")
    track = sub.add_parser("track", help="Adopt an existing position NFT as the managed position")
    track.add_argument("token_id", type=int, help="PositionManager token id")
    sub.add_parser("gen-wallet", help="Generate a new EVM wallet")
    sub.add_parser("dashboard", help="Serve the status dashboard")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
        args.skip_approvals = False
    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.command == "gen-wallet":
        return cmd_gen_wallet(args)

    setup_logging(config.LOG_LEVEL, config.DATA_DIR)
    try:
        config.validate(logger)
    except InvalidParameter as e:
        logger.error("Configuration error: %s", e)
        print("\nPlease check your .env file or environment variables.", file=sys.stderr)
        return 1
    logger.info("Configuration: %s", json.dumps(config.describe()))

    try:
        return COMMANDS[args.command](args)
    except (InvalidParameter, ConnectionError) as e:
        logger.error("Start-up failed: %s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

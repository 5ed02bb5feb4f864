"""
Status feed — the numbers an operator needs to see on every poll.

build_status() produces a JSON-serialisable dict that the agent writes to
status.json for the dashboard; format_position_status() renders the console
panel used by the `status` and `once` commands.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

from rangekeeper.models import EngineState, PoolSnapshot, PositionSnapshot
from rangekeeper.range_geometry import pool_price, tick_to_price
from rangekeeper.strategy import (
    StrategyParams,
    check_cooldown,
    engine_phase,
    is_in_range,
    time_to_eligibility,
)

RULE = "═" * 59


def build_status(
    pool: PoolSnapshot,
    position: PositionSnapshot | None,
    state: EngineState,
    params: StrategyParams,
    decimals_a: int,
    decimals_b: int,
    now: float,
    dry_run: bool = False,
) -> dict:
    cooldown = check_cooldown(state.last_migration_at, now, params.min_migration_interval_seconds)
    status = {
        "ts": datetime.fromtimestamp(now, timezone.utc).isoformat(),
        "dry_run": dry_run,
        "pool": {
            "pool_id": pool.pool_id,
            "tick": pool.current_tick,
            "price": float(pool_price(pool, decimals_a, decimals_b)),
            "tick_spacing": pool.tick_spacing,
            "liquidity": str(pool.liquidity),
        },
        "position": None,
        "engine": {
            "phase": engine_phase(state, params, now).value,
            "trigger_reason": state.active_trigger_reason.value,
            "dwell_reason": state.dwell_reason.value if state.dwell_reason else None,
            "dwell_elapsed": round(now - state.dwell_start, 1) if state.dwelling else None,
            "cooldown_remaining": round(cooldown.remaining, 1),
            "time_to_eligibility": round(time_to_eligibility(state, params, now), 1),
            "last_migration_at": (
                datetime.fromtimestamp(state.last_migration_at, timezone.utc).isoformat()
                if state.last_migration_at
                else None
            ),
        },
    }
    if position is not None:
        status["position"] = {
            "position_id": position.position_id,
            "tick_lower": position.lower_tick,
            "tick_upper": position.upper_tick,
            "price_lower": float(tick_to_price(position.lower_tick, decimals_a, decimals_b)),
            "price_upper": float(tick_to_price(position.upper_tick, decimals_a, decimals_b)),
            "liquidity": str(position.liquidity),
            "in_range": is_in_range(pool.current_tick, position.lower_tick, position.upper_tick),
            "fees_owed": [str(position.fees_owed_a), str(position.fees_owed_b)],
        }
    return status


def write_status(path: Path, status: dict) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(status, indent=2))
    tmp.replace(path)


def format_position_status(
    pool: PoolSnapshot,
    position: PositionSnapshot | None,
    decimals_a: int,
    decimals_b: int,
) -> str:
    lines = [
        RULE,
        "                    POSITION STATUS",
        RULE,
        f"  Pool: {pool.pool_id}",
        f"  Current Tick: {pool.current_tick}",
        f"  Current Price: {pool_price(pool, decimals_a, decimals_b):.6f}",
        f"  Pool Liquidity: {pool.liquidity}",
        "",
    ]

    if position is not None:
        lower_price = tick_to_price(position.lower_tick, decimals_a, decimals_b)
        upper_price = tick_to_price(position.upper_tick, decimals_a, decimals_b)
        in_range = is_in_range(pool.current_tick, position.lower_tick, position.upper_tick)
        lines += [
            "  ACTIVE POSITION:",
            f"  Id: {position.position_id}",
            f"  Tick Range: [{position.lower_tick}, {position.upper_tick}]",
            f"  Price Range: [{lower_price:.6f}, {upper_price:.6f}]",
            f"  Liquidity: {position.liquidity}",
            f"  In Range: {'YES' if in_range else 'NO'}",
            f"  Fees Owed: A={position.fees_owed_a}, B={position.fees_owed_b}",
        ]
    else:
        lines.append("  NO ACTIVE POSITION")

    lines.append(RULE)
    return "\n".join(lines)

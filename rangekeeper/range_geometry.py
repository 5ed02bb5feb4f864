"""
Range geometry — price <-> tick conversion and symmetric range construction.

Ticks follow the concentrated-liquidity convention: price = 1.0001^tick,
scaled by 10^(decimals_a - decimals_b) to turn raw token units into a
human-readable price of token A quoted in token B.
"""

from decimal import ROUND_FLOOR, Decimal, getcontext

from rangekeeper.errors import InvalidParameter
from rangekeeper.models import PoolSnapshot, PriceRange

getcontext().prec = 40

TICK_BASE = Decimal("1.0001")
LN_TICK_BASE = TICK_BASE.ln()
Q96 = 2**96

# Uniswap V4 TickMath bounds
MIN_TICK = -887272
MAX_TICK = 887272


def _decimal_scale(decimals_a: int, decimals_b: int) -> Decimal:
    return Decimal(10) ** (decimals_a - decimals_b)


def tick_to_price(tick: int, decimals_a: int, decimals_b: int) -> Decimal:
    """Convert a tick to a human-readable price.

    Formula: price = 1.0001^tick * 10^(decimals_a - decimals_b)
    """
    return TICK_BASE ** int(tick) * _decimal_scale(decimals_a, decimals_b)


def price_to_tick(price, decimals_a: int, decimals_b: int) -> int:
    """Return the greatest tick whose price does not exceed ``price``.

    Formula: tick = floor(ln(price / 10^(decimals_a - decimals_b)) / ln(1.0001))
    """
    price = Decimal(str(price))
    if price <= 0:
        raise InvalidParameter(f"price must be positive, got {price}")

    raw = price / _decimal_scale(decimals_a, decimals_b)
    tick = int((raw.ln() / LN_TICK_BASE).to_integral_value(rounding=ROUND_FLOOR))

    # ln() rounding can land one tick off at exact boundaries
    if tick_to_price(tick + 1, decimals_a, decimals_b) <= price:
        tick += 1
    elif tick_to_price(tick, decimals_a, decimals_b) > price:
        tick -= 1
    return tick


def snap_tick_down(tick: int, tick_spacing: int) -> int:
    return (tick // tick_spacing) * tick_spacing


def snap_tick_up(tick: int, tick_spacing: int) -> int:
    return -((-tick) // tick_spacing) * tick_spacing


def usable_tick_bounds(tick_spacing: int) -> tuple[int, int]:
    """Lowest and highest ticks aligned to ``tick_spacing`` inside TickMath bounds."""
    return snap_tick_up(MIN_TICK, tick_spacing), snap_tick_down(MAX_TICK, tick_spacing)


def compute_symmetric_range(
    center_price,
    width_fraction: float,
    tick_spacing: int,
    decimals_a: int,
    decimals_b: int,
) -> PriceRange:
    """Build a range of center/(1+w) .. center*(1+w) aligned to ``tick_spacing``.

    The lower tick is snapped down and the upper tick up, so the realized
    range is never narrower than the requested one.
    """
    if not 0 < width_fraction < 1:
        raise InvalidParameter(f"width_fraction must be in (0, 1), got {width_fraction}")
    if tick_spacing <= 0:
        raise InvalidParameter(f"tick_spacing must be positive, got {tick_spacing}")

    center_price = Decimal(str(center_price))
    if center_price <= 0:
        raise InvalidParameter(f"center_price must be positive, got {center_price}")

    multiplier = Decimal(1) + Decimal(str(width_fraction))
    lower_price = center_price / multiplier
    upper_price = center_price * multiplier

    lower_tick = price_to_tick(lower_price, decimals_a, decimals_b)
    upper_tick = price_to_tick(upper_price, decimals_a, decimals_b)
    if tick_to_price(upper_tick, decimals_a, decimals_b) < upper_price:
        upper_tick += 1

    lower_tick = snap_tick_down(lower_tick, tick_spacing)
    upper_tick = snap_tick_up(upper_tick, tick_spacing)
    if lower_tick > upper_tick:
        lower_tick, upper_tick = upper_tick, lower_tick

    min_usable, max_usable = usable_tick_bounds(tick_spacing)
    lower_tick = max(lower_tick, min_usable)
    upper_tick = min(upper_tick, max_usable)
    if lower_tick == upper_tick:
        if upper_tick + tick_spacing <= max_usable:
            upper_tick += tick_spacing
        else:
            lower_tick -= tick_spacing

    return PriceRange(
        lower_tick=lower_tick,
        upper_tick=upper_tick,
        lower_price=lower_price,
        upper_price=upper_price,
        center_price=center_price,
    )


# ----------------------------------------------------------------------
# sqrtPriceX96 helpers used when sizing deposits
# ----------------------------------------------------------------------


def sqrt_price_x96_at_tick(tick: int) -> int:
    """sqrtPriceX96 = sqrt(1.0001^tick) * 2^96"""
    return int((TICK_BASE ** int(tick)).sqrt() * Q96)


def price_from_sqrt_price_x96(sqrt_price_x96: int, decimals_a: int, decimals_b: int) -> Decimal:
    """price = (sqrtPriceX96 / 2^96)^2 * 10^(decimals_a - decimals_b)"""
    ratio = Decimal(sqrt_price_x96) / Decimal(Q96)
    return ratio**2 * _decimal_scale(decimals_a, decimals_b)


def _liquidity_for_amount0(sqrt_a: int, sqrt_b: int, amount0: int) -> int:
    intermediate = sqrt_a * sqrt_b // Q96
    return amount0 * intermediate // (sqrt_b - sqrt_a)


def _liquidity_for_amount1(sqrt_a: int, sqrt_b: int, amount1: int) -> int:
    return amount1 * Q96 // (sqrt_b - sqrt_a)


def liquidity_for_amounts(
    sqrt_price_x96: int,
    sqrt_lower_x96: int,
    sqrt_upper_x96: int,
    amount0: int,
    amount1: int,
) -> int:
    """Maximum liquidity mintable from the given token amounts at the current price.

    Only one token is needed when the price sits outside the range, so a
    single-sided deposit is sized from that token alone.
    """
    if sqrt_lower_x96 > sqrt_upper_x96:
        sqrt_lower_x96, sqrt_upper_x96 = sqrt_upper_x96, sqrt_lower_x96
    if sqrt_lower_x96 == sqrt_upper_x96:
        return 0

    if sqrt_price_x96 <= sqrt_lower_x96:
        return _liquidity_for_amount0(sqrt_lower_x96, sqrt_upper_x96, amount0)
    if sqrt_price_x96 < sqrt_upper_x96:
        return min(
            _liquidity_for_amount0(sqrt_price_x96, sqrt_upper_x96, amount0),
            _liquidity_for_amount1(sqrt_lower_x96, sqrt_price_x96, amount1),
        )
    return _liquidity_for_amount1(sqrt_lower_x96, sqrt_upper_x96, amount1)


def pool_price(pool: PoolSnapshot, decimals_a: int, decimals_b: int) -> Decimal:
    """Current pool price, from sqrtPriceX96 when the snapshot carries it."""
    if pool.sqrt_price_x96:
        return price_from_sqrt_price_x96(pool.sqrt_price_x96, decimals_a, decimals_b)
    return tick_to_price(pool.current_tick, decimals_a, decimals_b)

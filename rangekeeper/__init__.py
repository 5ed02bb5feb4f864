"""rangekeeper — dwell/cooldown-gated range migration for a Uniswap V4 LP position."""

__version__ = "0.1.0"

"""
Trade direction of a transfer relative to the liquidity pool.
"""
from enum import Enum


class Direction(str, Enum):
    """Direction of a transfer as seen from the pool."""
    NONE = "none"        # recorded state only: the pool was never touched
    BUY = "buy"          # tokens leave the pool
    SELL = "sell"        # tokens enter the pool
    NEUTRAL = "neutral"  # the pool is not a counterparty

    @property
    def is_trade(self) -> bool:
        return self in (Direction.BUY, Direction.SELL)


def classify(sender: bytes, receiver: bytes, pool: bytes) -> Direction:
    """
    Classify a transfer against the pool address.

    A pool-to-pool transfer touches the pool on both sides and is neutral.
    """
    if receiver == pool and sender != pool:
        return Direction.SELL
    if sender == pool and receiver != pool:
        return Direction.BUY
    return Direction.NEUTRAL

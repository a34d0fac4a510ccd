"""
Directional cooldown state machine.

The gate remembers the last trade direction seen at the pool and the block it
was recorded in. A reversal (BUY after SELL or SELL after BUY) is rejected until
``cooldown_blocks`` blocks have elapsed, whichever account attempts it. Trades in
the same direction are always allowed and refresh the recorded block.

States:
    NONE            never touched
    ARMED(SELL, b)  last trade was a sell recorded at block b
    ARMED(BUY, b)   last trade was a buy recorded at block b
"""
import logging
from dataclasses import dataclass
from typing import Optional

from antimev.direction import Direction
from antimev.errors import COOLDOWN_REASON, ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

DIRECTION_PREFIX = b"DIRECTION:"


class DirectionState:
    """Last recorded direction at a pool and the block it was recorded in."""
    __slots__ = ('last_direction', 'last_direction_block')

    def __init__(self, last_direction: Direction = Direction.NONE,
                 last_direction_block: int = 0):
        self.last_direction = Direction(last_direction)
        self.last_direction_block = last_direction_block

    @property
    def armed(self) -> bool:
        return self.last_direction is not Direction.NONE

    def to_dict(self) -> dict:
        return {
            'last_direction': self.last_direction.value,
            'last_direction_block': self.last_direction_block,
        }

    @staticmethod
    def from_dict(d: dict) -> 'DirectionState':
        return DirectionState(d['last_direction'], d['last_direction_block'])

    def __eq__(self, other) -> bool:
        if not isinstance(other, DirectionState):
            return NotImplemented
        return (self.last_direction is other.last_direction
                and self.last_direction_block == other.last_direction_block)

    def __repr__(self) -> str:
        if not self.armed:
            return "DirectionState(NONE)"
        return (f"DirectionState({self.last_direction.name}, "
                f"block={self.last_direction_block})")


class CooldownStateStore:
    """
    Reads and writes the DirectionState of one pool inside the world state.

    The record is keyed by pool address (namespaced by the owning token), so a
    later multi-pool extension only needs more keys, not a new state machine.
    The store enforces nothing; the rules live in TransferGate.
    """

    def __init__(self, state, pool_address: bytes, namespace: bytes = b''):
        self.state = state
        self.pool_address = pool_address
        self.key = DIRECTION_PREFIX + namespace + pool_address

    def read(self) -> DirectionState:
        data = self.state.get_obj(self.key)
        if data is None:
            return DirectionState()
        return DirectionState.from_dict(data)

    def write(self, direction: Direction, block: int):
        """Replace the record. Atomic within the enclosing state transaction."""
        self.state.set_obj(self.key, DirectionState(direction, block).to_dict())


@dataclass(frozen=True)
class GateDecision:
    """Outcome of running one classified transfer through the gate."""
    allowed: bool
    direction: Direction
    block: int
    previous: Optional[DirectionState] = None
    elapsed: Optional[int] = None
    reason: Optional[str] = None

    @property
    def updates_state(self) -> bool:
        return self.allowed and self.direction.is_trade

    @property
    def is_reversal(self) -> bool:
        return (self.previous is not None and self.previous.armed
                and self.direction.is_trade
                and self.direction is not self.previous.last_direction)


class TransferGate:
    """
    Decides allow/reject for a classified transfer at a given block.

    ``evaluate`` is pure. ``check`` reads the store, evaluates and, when the
    transfer is allowed and is a trade, writes the new state. A rejection is
    returned as a GateDecision, never raised; the caller turns it into an abort.
    """

    def __init__(self, cooldown_blocks: int):
        if isinstance(cooldown_blocks, bool) or not isinstance(cooldown_blocks, int):
            raise ConfigurationError(
                f"cooldown_blocks must be an integer, got {cooldown_blocks!r}"
            )
        if cooldown_blocks < 1:
            raise ConfigurationError(
                f"cooldown_blocks must be >= 1, got {cooldown_blocks}"
            )
        self.cooldown_blocks = cooldown_blocks

    def evaluate(self, direction: Direction, block: int,
                 current: Optional[DirectionState]) -> GateDecision:
        if direction is Direction.NEUTRAL:
            return GateDecision(True, direction, block)
        if direction is Direction.NONE:
            raise ValueError("NONE is not a transfer direction")

        if current is None or not current.armed:
            return GateDecision(True, direction, block, previous=current)

        if block < current.last_direction_block:
            raise ValidationError(
                f"Block number went backwards: {block} < {current.last_direction_block}"
            )

        elapsed = block - current.last_direction_block
        if direction is current.last_direction:
            return GateDecision(True, direction, block, previous=current, elapsed=elapsed)

        if elapsed < self.cooldown_blocks:
            return GateDecision(False, direction, block, previous=current,
                                elapsed=elapsed, reason=COOLDOWN_REASON)
        return GateDecision(True, direction, block, previous=current, elapsed=elapsed)

    def check(self, store: CooldownStateStore, direction: Direction,
              block: int) -> GateDecision:
        # Neutral transfers never read or write the direction record.
        if direction is Direction.NEUTRAL:
            return self.evaluate(direction, block, None)

        decision = self.evaluate(direction, block, store.read())
        if decision.allowed:
            store.write(direction, block)
            if decision.is_reversal:
                logger.info(
                    f"Pool {store.pool_address.hex()[:8]} direction flipped "
                    f"{decision.previous.last_direction.name} -> {direction.name} "
                    f"at block {block} ({decision.elapsed} blocks elapsed)"
                )
        return decision

    def remaining(self, current: DirectionState, block: int) -> int:
        """Blocks left before a reversal of ``current`` is allowed at ``block``."""
        if not current.armed:
            return 0
        elapsed = block - current.last_direction_block
        return max(0, self.cooldown_blocks - elapsed)

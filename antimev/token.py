"""
Fungible token with a directional-cooldown gate on its transfer path.

Both ``transfer`` and ``transfer_from`` run the same pipeline inside one atomic
state transaction:

    validate -> classify -> gate check (+ direction record) -> allowance
             -> debit/credit -> events -> receiver hook

A rejected gate decision becomes a CooldownViolation and aborts the whole
operation, balances and direction record alike. The decision never looks at
who is calling, only at the direction and the recorded block, which is what
stops sandwiches spread over several addresses.
"""
import logging
from typing import Callable, Optional

from antimev.context import ExecutionContext
from antimev.cooldown import CooldownStateStore, DirectionState, TransferGate
from antimev.crypto import ZERO_ADDRESS, is_valid_address
from antimev.direction import Direction, classify
from antimev.errors import (
    ConfigurationError,
    CooldownViolation,
    InsufficientAllowance,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    ValidationError,
)

logger = logging.getLogger(__name__)

META_PREFIX = b"TOKEN_META:"
BALANCE_PREFIX = b"BALANCE:"
ALLOWANCE_PREFIX = b"ALLOWANCE:"
SUPPLY_PREFIX = b"SUPPLY:"

# hook(ctx, token, sender, amount) with ctx.caller set to the receiver
ReceiverHook = Callable[[ExecutionContext, 'AntiMEVToken', bytes, int], None]


class AntiMEVToken:
    def __init__(self, name: str, symbol: str, pool_address: bytes,
                 cooldown_blocks: int, decimals: int = 18,
                 address: Optional[bytes] = None):
        if pool_address is None:
            raise ConfigurationError("pool_address is required")
        if not is_valid_address(pool_address) or pool_address == ZERO_ADDRESS:
            raise ConfigurationError(f"Invalid pool_address: {pool_address!r}")
        if not name or not symbol:
            raise ConfigurationError("Token name and symbol are required")

        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.pool_address = pool_address
        self.gate = TransferGate(cooldown_blocks)
        self.address = address
        self._receivers: dict[bytes, ReceiverHook] = {}

    @property
    def cooldown_blocks(self) -> int:
        return self.gate.cooldown_blocks

    @classmethod
    def from_config(cls, config) -> 'AntiMEVToken':
        """Build from a validated TokenConfig."""
        config.validate()
        return cls(
            name=config.name,
            symbol=config.symbol,
            pool_address=config.pool_address_bytes,
            cooldown_blocks=config.cooldown_blocks,
            decimals=config.decimals,
        )

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'symbol': self.symbol,
            'decimals': self.decimals,
            'pool_address': self.pool_address.hex(),
            'cooldown_blocks': self.cooldown_blocks,
        }

    @staticmethod
    def load(state, address: bytes) -> 'AntiMEVToken':
        """Rebuild a deployed token from its stored metadata."""
        meta = state.get_obj(META_PREFIX + address)
        if meta is None:
            raise ValidationError(f"No token deployed at {address.hex()}")
        return AntiMEVToken(
            name=meta['name'],
            symbol=meta['symbol'],
            pool_address=bytes.fromhex(meta['pool_address']),
            cooldown_blocks=meta['cooldown_blocks'],
            decimals=meta['decimals'],
            address=address,
        )

    def __repr__(self) -> str:
        addr = self.address.hex()[:8] if self.address else "undeployed"
        return (f"AntiMEVToken({self.symbol}@{addr}, "
                f"pool={self.pool_address.hex()[:8]}, k={self.cooldown_blocks})")

    # ==========================================================================
    # STATE KEYS
    # ==========================================================================

    def _ns(self) -> bytes:
        if self.address is None:
            raise ValidationError("Token is not deployed")
        return self.address

    def _balance_key(self, owner: bytes) -> bytes:
        return BALANCE_PREFIX + self._ns() + owner

    def _allowance_key(self, owner: bytes, spender: bytes) -> bytes:
        return ALLOWANCE_PREFIX + self._ns() + owner + spender

    def _direction_store(self, state) -> CooldownStateStore:
        return CooldownStateStore(state, self.pool_address, namespace=self._ns())

    # ==========================================================================
    # VIEWS
    # ==========================================================================

    def total_supply(self, state) -> int:
        key = SUPPLY_PREFIX + self._ns()
        return _get_amount(state, key)

    def balance_of(self, state, owner: bytes) -> int:
        key = self._balance_key(owner)
        return _get_amount(state, key)

    def allowance(self, state, owner: bytes, spender: bytes) -> int:
        key = self._allowance_key(owner, spender)
        return _get_amount(state, key)

    def direction_state(self, state) -> DirectionState:
        return self._direction_store(state).read()

    def cooldown_remaining(self, state, block: int) -> int:
        """Blocks until a reversal of the last recorded direction is allowed."""
        return self.gate.remaining(self.direction_state(state), block)

    # ==========================================================================
    # LIFECYCLE
    # ==========================================================================

    def initialize(self, ctx: ExecutionContext, initial_supply: int):
        """Persist metadata and mint the initial supply to the deployer. Runs once."""
        self._check_amount(initial_supply)
        with ctx.atomic():
            meta_key = META_PREFIX + self._ns()
            if ctx.state.get(meta_key) is not None:
                raise ValidationError(f"Token {self.address.hex()} already initialized")
            ctx.state.set_obj(meta_key, self.to_dict())
            if initial_supply:
                self._credit(ctx.state, ctx.caller, initial_supply)
                _set_amount(ctx.state, SUPPLY_PREFIX + self._ns(), initial_supply)
            ctx.emit('Transfer', sender=ZERO_ADDRESS.hex(), receiver=ctx.caller.hex(),
                     amount=str(initial_supply))
        logger.info(f"{self} initialized with supply {initial_supply} "
                    f"for {ctx.caller.hex()[:8]}")

    def register_receiver(self, address: bytes, hook: ReceiverHook):
        """Call ``hook`` whenever ``address`` receives tokens."""
        self._receivers[address] = hook

    def unregister_receiver(self, address: bytes):
        self._receivers.pop(address, None)

    # ==========================================================================
    # PUBLIC OPERATIONS
    # ==========================================================================

    def approve(self, ctx: ExecutionContext, spender: bytes, amount: int) -> bool:
        self._check_address(ctx.caller, "owner")
        self._check_address(spender, "spender")
        self._check_amount(amount)
        with ctx.atomic():
            _set_amount(ctx.state, self._allowance_key(ctx.caller, spender), amount)
            ctx.emit('Approval', owner=ctx.caller.hex(), spender=spender.hex(),
                     amount=str(amount))
        return True

    def transfer(self, ctx: ExecutionContext, to: bytes, amount: int) -> bool:
        """Move ``amount`` from the caller to ``to``."""
        return self._transfer(ctx, ctx.caller, to, amount)

    def transfer_from(self, ctx: ExecutionContext, sender: bytes, to: bytes,
                      amount: int) -> bool:
        """Move ``amount`` from ``sender`` to ``to`` using the caller's allowance."""
        return self._transfer(ctx, sender, to, amount, spender=ctx.caller)

    # ==========================================================================
    # TRANSFER PIPELINE
    # ==========================================================================

    def _transfer(self, ctx: ExecutionContext, sender: bytes, receiver: bytes,
                  amount: int, spender: Optional[bytes] = None) -> bool:
        self._check_address(sender, "sender")
        self._check_address(receiver, "receiver")
        self._check_amount(amount)

        with ctx.atomic():
            direction = classify(sender, receiver, self.pool_address)
            store = self._direction_store(ctx.state)
            decision = self.gate.check(store, direction, ctx.block_number)
            if not decision.allowed:
                logger.warning(
                    f"Rejected {direction.name} {sender.hex()[:8]} -> {receiver.hex()[:8]} "
                    f"at block {ctx.block_number}: {decision.elapsed}/{self.cooldown_blocks} "
                    f"blocks since {decision.previous.last_direction.name}"
                )
                raise CooldownViolation(
                    pool=self.pool_address,
                    last_direction=decision.previous.last_direction,
                    attempted=direction,
                    elapsed=decision.elapsed,
                    cooldown_blocks=self.cooldown_blocks,
                )

            if spender is not None:
                self._spend_allowance(ctx.state, sender, spender, amount)
            self._debit(ctx.state, sender, amount)
            self._credit(ctx.state, receiver, amount)

            ctx.emit('Transfer', sender=sender.hex(), receiver=receiver.hex(),
                     amount=str(amount))
            if decision.updates_state:
                ctx.emit('DirectionRecorded', pool=self.pool_address.hex(),
                         direction=direction.value, block=ctx.block_number)
            else:
                logger.debug(f"Neutral transfer {sender.hex()[:8]} -> "
                             f"{receiver.hex()[:8]} of {amount}")

            # Direction record and balances are already written above.
            hook = self._receivers.get(receiver)
            if hook is not None:
                hook(ctx.with_caller(receiver), self, sender, amount)
        return True

    def _spend_allowance(self, state, owner: bytes, spender: bytes, amount: int):
        key = self._allowance_key(owner, spender)
        current = _get_amount(state, key)
        if current < amount:
            raise InsufficientAllowance(
                f"Allowance of {spender.hex()[:8]} over {owner.hex()[:8]} is "
                f"{current}, needs {amount}"
            )
        _set_amount(state, key, current - amount)

    def _debit(self, state, owner: bytes, amount: int):
        key = self._balance_key(owner)
        balance = _get_amount(state, key)
        if balance < amount:
            raise InsufficientBalance(
                f"Balance of {owner.hex()[:8]} is {balance}, needs {amount}"
            )
        _set_amount(state, key, balance - amount)

    def _credit(self, state, owner: bytes, amount: int):
        key = self._balance_key(owner)
        _set_amount(state, key, _get_amount(state, key) + amount)

    @staticmethod
    def _check_address(address, role: str):
        if not is_valid_address(address):
            raise InvalidAddress(f"Invalid {role} address: {address!r}")
        if address == ZERO_ADDRESS:
            raise InvalidAddress(f"Zero address cannot be {role}")

    @staticmethod
    def _check_amount(amount):
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount(f"Amount must be an integer, got {amount!r}")
        if amount < 0:
            raise InvalidAmount(f"Amount cannot be negative: {amount}")


# msgpack ints stop at 64 bits; amounts are kept as decimal strings.
def _get_amount(state, key: bytes) -> int:
    return int(state.get_obj(key, "0"))


def _set_amount(state, key: bytes, amount: int):
    state.set_obj(key, str(amount))

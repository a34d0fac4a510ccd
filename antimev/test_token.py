"""
Tests for the token ledger and its anti-sandwich transfer path.

Sandwich scenarios use a cooldown window of k = 3 blocks. Every trade in a
scenario happens in the open block B0 unless blocks are mined explicitly.
"""
import unittest

from antimev.chain import Blockchain
from antimev.config import TokenConfig
from antimev.cooldown import DirectionState
from antimev.db import MemoryDB
from antimev.direction import Direction
from antimev.errors import (
    COOLDOWN_REASON,
    ConfigurationError,
    CooldownViolation,
    InsufficientAllowance,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    ValidationError,
)
from antimev.token import AntiMEVToken

OWNER = b'\x0a' * 20
ATTACKER1 = b'\xa1' * 20
ATTACKER2 = b'\xa2' * 20
VICTIM = b'\xee' * 20
CAROL = b'\xca' * 20
POOL = b'\x50' * 20


class TokenTestCase(unittest.TestCase):
    def setUp(self):
        self.chain = Blockchain(db=MemoryDB())
        self.token = AntiMEVToken("AntiMEV", "AMV", POOL, 3)
        self.chain.deploy(self.token, OWNER, 10_000)

        for account in (ATTACKER1, ATTACKER2, VICTIM):
            self.token.transfer(self.ctx(OWNER), account, 1000)
        # The pool lets both attackers pull tokens out (a "buy")
        self.token.approve(self.ctx(POOL), ATTACKER1, 1000)
        self.token.approve(self.ctx(POOL), ATTACKER2, 1000)
        self.b0 = self.chain.block_number

    def tearDown(self):
        self.chain.close()

    def ctx(self, caller):
        return self.chain.context(caller)

    @property
    def state(self):
        return self.chain.state

    def balance(self, account):
        return self.token.balance_of(self.state, account)


class TestConstruction(unittest.TestCase):
    def test_zero_cooldown_rejected(self):
        with self.assertRaises(ConfigurationError):
            AntiMEVToken("AntiMEV", "AMV", POOL, 0)

    def test_negative_cooldown_rejected(self):
        with self.assertRaises(ConfigurationError):
            AntiMEVToken("AntiMEV", "AMV", POOL, -1)

    def test_missing_pool_rejected(self):
        with self.assertRaises(ConfigurationError):
            AntiMEVToken("AntiMEV", "AMV", None, 3)

    def test_zero_pool_rejected(self):
        with self.assertRaises(ConfigurationError):
            AntiMEVToken("AntiMEV", "AMV", b'\x00' * 20, 3)

    def test_malformed_pool_rejected(self):
        with self.assertRaises(ConfigurationError):
            AntiMEVToken("AntiMEV", "AMV", b'\x50' * 19, 3)

    def test_undeployed_token_has_no_state(self):
        token = AntiMEVToken("AntiMEV", "AMV", POOL, 3)
        with self.assertRaises(ValidationError):
            token.balance_of(None, OWNER)


class TestLedger(TokenTestCase):
    def test_initial_distribution(self):
        self.assertEqual(self.token.total_supply(self.state), 10_000)
        self.assertEqual(self.balance(OWNER), 7_000)
        self.assertEqual(self.balance(ATTACKER1), 1000)

    def test_neutral_transfers_leave_direction_untouched(self):
        self.assertEqual(self.token.direction_state(self.state), DirectionState())

    def test_insufficient_balance(self):
        with self.assertRaises(InsufficientBalance):
            self.token.transfer(self.ctx(CAROL), VICTIM, 1)

    def test_approve_and_transfer_from(self):
        self.token.approve(self.ctx(VICTIM), CAROL, 300)
        self.token.transfer_from(self.ctx(CAROL), VICTIM, CAROL, 200)
        self.assertEqual(self.balance(CAROL), 200)
        self.assertEqual(self.token.allowance(self.state, VICTIM, CAROL), 100)

    def test_transfer_from_without_allowance(self):
        with self.assertRaises(InsufficientAllowance):
            self.token.transfer_from(self.ctx(CAROL), VICTIM, CAROL, 1)
        self.assertEqual(self.balance(VICTIM), 1000)

    def test_invalid_inputs(self):
        with self.assertRaises(InvalidAddress):
            self.token.transfer(self.ctx(VICTIM), b'\x00' * 20, 1)
        with self.assertRaises(InvalidAddress):
            self.token.transfer(self.ctx(VICTIM), b'short', 1)
        with self.assertRaises(InvalidAmount):
            self.token.transfer(self.ctx(VICTIM), CAROL, -5)
        with self.assertRaises(InvalidAmount):
            self.token.transfer(self.ctx(VICTIM), CAROL, 1.5)

    def test_initialize_runs_once(self):
        with self.assertRaises(ValidationError):
            self.token.initialize(self.ctx(OWNER), 1)
        self.assertEqual(self.token.total_supply(self.state), 10_000)

    def test_events(self):
        ctx = self.ctx(VICTIM)
        self.token.transfer(ctx, POOL, 50)
        names = [event.name for event in ctx.events]
        self.assertEqual(names, ['Transfer', 'DirectionRecorded'])
        self.assertEqual(ctx.events[1].args['direction'], 'sell')
        self.assertEqual(ctx.events[1].args['block'], self.b0)
        self.assertEqual(ctx.events[0].args['amount'], '50')

    def test_neutral_transfer_emits_no_direction_event(self):
        ctx = self.ctx(VICTIM)
        self.token.transfer(ctx, CAROL, 50)
        self.assertEqual([event.name for event in ctx.events], ['Transfer'])


class TestDefaultSupply(unittest.TestCase):
    """An 18-decimal supply is far beyond 64 bits."""

    def setUp(self):
        self.chain = Blockchain(db=MemoryDB())
        self.config = TokenConfig(pool_address=POOL.hex())
        self.token = AntiMEVToken.from_config(self.config)
        self.chain.deploy(self.token, OWNER, self.config.initial_supply)

    def tearDown(self):
        self.chain.close()

    def test_default_supply_deploys(self):
        self.assertEqual(self.config.initial_supply, 10 ** 24)
        self.assertEqual(self.token.total_supply(self.chain.state), 10 ** 24)
        self.assertEqual(self.token.balance_of(self.chain.state, OWNER), 10 ** 24)

    def test_large_transfer_and_allowance(self):
        amount = 10 ** 20
        self.token.transfer(self.chain.context(OWNER), POOL, amount)
        self.assertEqual(self.token.balance_of(self.chain.state, POOL), amount)
        self.assertEqual(self.token.balance_of(self.chain.state, OWNER), 10 ** 24 - amount)

        self.token.approve(self.chain.context(POOL), ATTACKER1, 2 ** 70)
        self.chain.mine(self.config.cooldown_blocks)
        self.token.transfer_from(self.chain.context(ATTACKER1), POOL, ATTACKER1, 5)
        self.assertEqual(self.token.allowance(self.chain.state, POOL, ATTACKER1), 2 ** 70 - 5)

    def test_large_amount_rolls_back(self):
        self.token.transfer(self.chain.context(OWNER), POOL, 10 ** 20)
        with self.assertRaises(CooldownViolation):
            self.token.transfer(self.chain.context(POOL), VICTIM, 10 ** 20)
        self.assertEqual(self.token.balance_of(self.chain.state, POOL), 10 ** 20)
        self.assertEqual(self.token.balance_of(self.chain.state, VICTIM), 0)


class TestSandwichScenarios(TokenTestCase):
    def sandwich_front(self):
        """Frontrun sell by attacker1, then the victim's sell, both in B0."""
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        self.assertEqual(self.token.direction_state(self.state),
                         DirectionState(Direction.SELL, self.b0))
        self.token.transfer(self.ctx(VICTIM), POOL, 50)
        self.assertEqual(self.token.direction_state(self.state),
                         DirectionState(Direction.SELL, self.b0))

    def test_same_address_sandwich_blocked(self):
        self.sandwich_front()
        with self.assertRaises(CooldownViolation) as cm:
            self.token.transfer_from(self.ctx(ATTACKER1), POOL, ATTACKER1, 100)

        self.assertTrue(str(cm.exception).startswith(COOLDOWN_REASON))
        self.assertEqual(cm.exception.reason, COOLDOWN_REASON)
        self.assertEqual(cm.exception.elapsed, 0)
        self.assertIs(cm.exception.last_direction, Direction.SELL)
        self.assertIs(cm.exception.attempted, Direction.BUY)
        # Nothing moved, nothing spent
        self.assertEqual(self.balance(POOL), 150)
        self.assertEqual(self.balance(ATTACKER1), 900)
        self.assertEqual(self.token.allowance(self.state, POOL, ATTACKER1), 1000)
        self.assertEqual(self.token.direction_state(self.state),
                         DirectionState(Direction.SELL, self.b0))

    def test_multi_address_sandwich_blocked(self):
        self.sandwich_front()
        with self.assertRaises(CooldownViolation):
            self.token.transfer_from(self.ctx(ATTACKER2), POOL, ATTACKER2, 100)
        self.assertEqual(self.balance(ATTACKER2), 1000)

    def test_pool_initiated_buy_blocked(self):
        """The pool paying out directly is still a buy."""
        self.sandwich_front()
        with self.assertRaises(CooldownViolation):
            self.token.transfer(self.ctx(POOL), CAROL, 10)

    def test_delayed_sandwich_inside_window_blocked(self):
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        self.chain.mine(2)
        self.assertEqual(self.chain.block_number, self.b0 + 2)
        with self.assertRaises(CooldownViolation) as cm:
            self.token.transfer_from(self.ctx(ATTACKER1), POOL, ATTACKER1, 100)
        self.assertEqual(cm.exception.elapsed, 2)

    def test_reversal_after_window_allowed(self):
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        self.chain.mine(3)
        self.assertTrue(
            self.token.transfer_from(self.ctx(ATTACKER1), POOL, ATTACKER1, 100)
        )
        self.assertEqual(self.token.direction_state(self.state),
                         DirectionState(Direction.BUY, self.b0 + 3))
        self.assertEqual(self.balance(ATTACKER1), 1000)

    def test_new_window_after_accepted_reversal(self):
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        self.chain.mine(3)
        self.token.transfer_from(self.ctx(ATTACKER1), POOL, ATTACKER1, 50)
        self.chain.mine(2)
        with self.assertRaises(CooldownViolation):
            self.token.transfer(self.ctx(VICTIM), POOL, 10)
        self.chain.mine()
        self.token.transfer(self.ctx(VICTIM), POOL, 10)
        self.assertEqual(self.token.direction_state(self.state),
                         DirectionState(Direction.SELL, self.b0 + 6))

    def test_reinforcing_trade_extends_window(self):
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        self.chain.mine(2)
        self.token.transfer(self.ctx(VICTIM), POOL, 50)
        self.chain.mine(1)
        # 3 blocks since the first sell but only 1 since the victim's
        with self.assertRaises(CooldownViolation):
            self.token.transfer_from(self.ctx(ATTACKER1), POOL, ATTACKER1, 100)
        self.assertEqual(self.token.cooldown_remaining(self.state, self.chain.block_number), 2)

    def test_neutral_transfers_allowed_during_cooldown(self):
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        self.token.transfer(self.ctx(ATTACKER1), ATTACKER2, 100)
        self.assertEqual(self.balance(ATTACKER2), 1100)
        self.assertEqual(self.token.direction_state(self.state),
                         DirectionState(Direction.SELL, self.b0))

    def test_zero_amount_reversal_blocked(self):
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        with self.assertRaises(CooldownViolation):
            self.token.transfer_from(self.ctx(ATTACKER1), POOL, ATTACKER1, 0)
        self.assertEqual(self.token.direction_state(self.state),
                         DirectionState(Direction.SELL, self.b0))

    def test_cooldown_remaining(self):
        self.assertEqual(self.token.cooldown_remaining(self.state, self.b0), 0)
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        self.assertEqual(self.token.cooldown_remaining(self.state, self.b0), 3)
        self.chain.mine(2)
        self.assertEqual(self.token.cooldown_remaining(self.state, self.chain.block_number), 1)


class TestAtomicity(TokenTestCase):
    def test_failed_sell_does_not_arm_state(self):
        """The gate writes before the debit; a failed debit must undo it."""
        with self.assertRaises(InsufficientBalance):
            self.token.transfer(self.ctx(CAROL), POOL, 100)
        self.assertEqual(self.token.direction_state(self.state), DirectionState())

    def test_failed_reversal_does_not_flip_state(self):
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        self.chain.mine(3)
        # Allowed by the gate, but CAROL has no allowance from the pool
        with self.assertRaises(InsufficientAllowance):
            self.token.transfer_from(self.ctx(CAROL), POOL, CAROL, 100)
        self.assertEqual(self.token.direction_state(self.state),
                         DirectionState(Direction.SELL, self.b0))

    def test_failed_operation_emits_nothing(self):
        ctx = self.ctx(CAROL)
        with self.assertRaises(InsufficientBalance):
            self.token.transfer(ctx, POOL, 100)
        self.assertEqual(ctx.events, [])

    def test_outer_transaction_abort_rolls_back_accepted_transfer(self):
        with self.assertRaises(ValidationError):
            with self.state.transaction():
                self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
                raise ValidationError("enclosing transaction aborted")
        self.assertEqual(self.balance(ATTACKER1), 1000)
        self.assertEqual(self.token.direction_state(self.state), DirectionState())


class TestReentrancy(TokenTestCase):
    def test_reentrant_reversal_sees_committed_state(self):
        """A receiver hook reversing the trade mid-operation is rejected."""
        def pool_hook(ctx, token, sender, amount):
            token.transfer(ctx, sender, amount)

        self.token.register_receiver(POOL, pool_hook)
        with self.assertRaises(CooldownViolation):
            self.token.transfer(self.ctx(ATTACKER1), POOL, 100)
        # The whole sell aborted with the reentrant buy
        self.assertEqual(self.balance(ATTACKER1), 1000)
        self.assertEqual(self.balance(POOL), 0)
        self.assertEqual(self.token.direction_state(self.state), DirectionState())

    def test_hook_observes_updated_state(self):
        seen = []

        def pool_hook(ctx, token, sender, amount):
            seen.append(token.direction_state(ctx.state))
            seen.append(token.balance_of(ctx.state, ctx.caller))
            try:
                token.transfer(ctx, sender, amount)
            except CooldownViolation:
                seen.append('blocked')

        self.token.register_receiver(POOL, pool_hook)
        self.token.transfer(self.ctx(ATTACKER1), POOL, 100)

        self.assertEqual(seen, [DirectionState(Direction.SELL, self.b0), 100, 'blocked'])
        self.assertEqual(self.balance(POOL), 100)
        self.assertEqual(self.balance(ATTACKER1), 900)

    def test_unregister_receiver(self):
        calls = []
        self.token.register_receiver(CAROL, lambda *args: calls.append(args))
        self.token.transfer(self.ctx(VICTIM), CAROL, 1)
        self.token.unregister_receiver(CAROL)
        self.token.transfer(self.ctx(VICTIM), CAROL, 1)
        self.assertEqual(len(calls), 1)

    def test_call_depth_is_bounded(self):
        def ping_pong(ctx, token, sender, amount):
            token.transfer(ctx, sender, amount)

        self.token.register_receiver(VICTIM, ping_pong)
        self.token.register_receiver(CAROL, ping_pong)
        with self.assertRaises(ValidationError):
            self.token.transfer(self.ctx(VICTIM), CAROL, 1)
        self.assertEqual(self.balance(VICTIM), 1000)


if __name__ == '__main__':
    unittest.main()

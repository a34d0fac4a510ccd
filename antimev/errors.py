"""
Error taxonomy for the token ledger.

Every failure raised while executing a transaction derives from ValidationError
and carries a machine-readable ``reason`` so callers can tell an anti-sandwich
rejection apart from an ordinary ledger failure.
"""

COOLDOWN_REASON = "DirectionalCooldownActive"


class ValidationError(Exception):
    """Raised when a transaction fails validation."""
    reason = "ValidationError"


class ConfigurationError(ValueError):
    """Raised when construction parameters are invalid."""
    reason = "ConfigurationError"


class LedgerError(ValidationError):
    """Balance or allowance bookkeeping failure."""
    reason = "LedgerError"


class InsufficientBalance(LedgerError):
    reason = "InsufficientBalance"


class InsufficientAllowance(LedgerError):
    reason = "InsufficientAllowance"


class InvalidAddress(LedgerError):
    reason = "InvalidAddress"


class InvalidAmount(LedgerError):
    reason = "InvalidAmount"


class CooldownViolation(ValidationError):
    """
    A direction reversal at the pool was attempted before the cooldown
    window elapsed.

    The message always starts with ``DirectionalCooldownActive``.
    """
    reason = COOLDOWN_REASON

    def __init__(self, pool: bytes, last_direction, attempted, elapsed: int,
                 cooldown_blocks: int):
        self.pool = pool
        self.last_direction = last_direction
        self.attempted = attempted
        self.elapsed = elapsed
        self.cooldown_blocks = cooldown_blocks
        super().__init__(
            f"{COOLDOWN_REASON}: {attempted.value} at pool {pool.hex()} "
            f"reverses {last_direction.value} after {elapsed}/{cooldown_blocks} blocks"
        )

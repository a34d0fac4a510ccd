"""
Fungible-token ledger with a directional-cooldown defence against sandwich attacks.
"""
__version__ = "0.1.0"

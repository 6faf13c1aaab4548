"""
Credit ledger module.

Atomic reserve / settle / release / grant / deduct on per-user credit balances.
"""

from .ledger import CreditLedger

__all__ = ["CreditLedger"]

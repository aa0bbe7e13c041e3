"""
Credits Module

Balance calculation, grants, deductions, expiration and cycle allocation.

Usage:
    from credit_ledger.src.billing.credits import CreditLedger

    ledger = CreditLedger(store)
    balance = await ledger.get_balance(user_id)
"""

from .calculator import BalanceCalculator, calculate_balance, replay_grants
from .cycles import CycleAllocator
from .deductions import DeductionManager, DeductionResult
from .expiration import ExpirationSweeper
from .grants import GrantManager, GrantResult
from .manager import CreditLedger, MaintenanceResult

__all__ = [
    'BalanceCalculator',
    'calculate_balance',
    'replay_grants',
    'CycleAllocator',
    'DeductionManager',
    'DeductionResult',
    'ExpirationSweeper',
    'GrantManager',
    'GrantResult',
    'CreditLedger',
    'MaintenanceResult',
]

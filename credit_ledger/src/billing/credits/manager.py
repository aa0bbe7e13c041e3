"""
Credit Ledger

Facade the rest of the application talks to:
- get_balance (with a lazy expiration sweep when the cached next expiry passed)
- grant_credits / deduct_credits
- get_history
- has_enough_credits
- run_maintenance (sweep, cycle allocation, cancellation finalisation)

Usage:
    ledger = CreditLedger(store)

    balance = await ledger.get_balance(user_id)
    result = await ledger.deduct_credits(DeductCreditsParams(
        user_id=user_id, amount=120, reason='image_enhancement', idempotency_key=f'deduct_{task_id}'
    ))
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from credit_ledger.src.billing.credits.calculator import BalanceCalculator
from credit_ledger.src.billing.credits.cycles import CycleAllocator
from credit_ledger.src.billing.credits.deductions import DeductionManager, DeductionResult
from credit_ledger.src.billing.credits.expiration import ExpirationSweeper
from credit_ledger.src.billing.credits.grants import GrantManager, GrantResult
from credit_ledger.src.billing.credits.schemas import DeductCreditsParams, GrantCreditsParams
from credit_ledger.src.billing.domain import CreditBalance, CreditTransaction, GrantKind
from credit_ledger.src.billing.domain.credit_grant import utcnow
from credit_ledger.src.billing.shared.cache_utils import is_sweep_due, set_cached_next_expiry

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceResult:
    """Outcome of one maintenance pass."""
    deactivated_grants: int
    allocated_cycles: int
    finalized_cancellations: int

    def to_dict(self) -> Dict[str, int]:
        return {
            'deactivated_grants': self.deactivated_grants,
            'allocated_cycles': self.allocated_cycles,
            'finalized_cancellations': self.finalized_cancellations,
        }


class CreditLedger:
    """Single entry point for balance, grant and deduction operations."""

    def __init__(self, store):
        self.store = store
        self.calculator = BalanceCalculator(store)
        self.grants = GrantManager(store)
        self.deductions = DeductionManager(store)
        self.sweeper = ExpirationSweeper(store)
        self.cycles = CycleAllocator(store, self.grants)

    async def get_balance(self, user_id: str, as_of: Optional[datetime] = None) -> CreditBalance:
        """
        Current balance of a user.

        Runs the expiration sweep for the user first when their cached next
        expiry has passed. The sweep only tidies ``is_active`` and the audit
        log; the returned balance is the same either way.
        """
        as_of = as_of or utcnow()
        if await is_sweep_due(user_id, as_of):
            logger.debug(f"[CREDITS] Lazy sweep for {user_id}")
            await self.sweeper.sweep(as_of=as_of, user_id=user_id)

        balance = await self.calculator.get_balance(user_id, as_of)
        await set_cached_next_expiry(user_id, balance.next_expiry)
        return balance

    async def grant_credits(self, params: GrantCreditsParams) -> GrantResult:
        return await self.grants.grant(
            user_id=params.user_id,
            amount=params.amount,
            kind=GrantKind(params.kind),
            source=params.source,
            idempotency_key=params.idempotency_key,
            expires_at=params.expires_at,
            metadata=params.metadata,
            description=params.description,
        )

    async def deduct_credits(self, params: DeductCreditsParams) -> DeductionResult:
        return await self.deductions.deduct(
            user_id=params.user_id,
            amount=params.amount,
            reason=params.reason,
            description=params.description,
            idempotency_key=params.idempotency_key,
            metadata=params.metadata,
        )

    async def has_enough_credits(self, user_id: str, amount: int) -> bool:
        return await self.deductions.has_enough_credits(user_id, amount)

    async def get_history(self, user_id: str, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        async with self.store.transaction() as tx:
            return await tx.list_transactions(user_id, limit=limit, offset=offset)

    async def run_maintenance(self, as_of: Optional[datetime] = None) -> MaintenanceResult:
        """Scheduled job: expire grants, allocate yearly cycles, finalise cancellations."""
        as_of = as_of or utcnow()
        deactivated = await self.sweeper.sweep(as_of=as_of)
        finalized = await self.sweeper.finalize_cancellations(as_of=as_of)
        allocated = await self.cycles.allocate_due_cycles(as_of=as_of)
        result = MaintenanceResult(
            deactivated_grants=deactivated,
            allocated_cycles=allocated,
            finalized_cancellations=finalized,
        )
        logger.info(f"[SWEEPER] Maintenance finished: {result.to_dict()}")
        return result

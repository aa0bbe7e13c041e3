"""
Deduction Manager

Debits credits for consumption events (e.g. an enhancement job).

The balance check and the insert of the deduction row happen in one ledger
unit of work holding the user's write lock, so two concurrent deductions
cannot both pass the check against the same balance.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from credit_ledger.src.billing.credits.calculator import calculate_balance
from credit_ledger.src.billing.domain import (
    CreditGrant,
    CreditTransaction,
    GrantKind,
    TransactionType,
)
from credit_ledger.src.billing.domain.credit_grant import new_id, utcnow
from credit_ledger.src.billing.shared.exceptions import (
    DuplicateIdempotencyKeyError,
    InsufficientCreditsError,
    LedgerStorageError,
)

logger = logging.getLogger(__name__)


@dataclass
class DeductionResult:
    """Outcome of a deduction."""
    success: bool
    new_balance: int
    grant_id: str
    amount: int
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'new_balance': self.new_balance,
            'grant_id': self.grant_id,
            'amount': self.amount,
            'duplicate': self.duplicate,
        }


class DeductionManager:
    """
    Writes deduction rows (negative grants) after an atomic balance check.

    Deductions do not pick source grants; the balance calculator nets them
    against expiring credits first, then permanent ones.

    Usage:
        deductions = DeductionManager(store)
        result = await deductions.deduct(user_id, 120, reason='image_enhancement')
    """

    def __init__(self, store):
        self.store = store

    async def deduct(
        self,
        user_id: str,
        amount: int,
        reason: str,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DeductionResult:
        """
        Deduct credits from a user.

        Args:
            user_id: User to debit
            amount: Positive number of credits
            reason: Provenance tag stored as the row's source
            description: Human-readable description for the transaction log
            idempotency_key: Optional key (e.g. ``deduct_{task_id}``) that
                makes retries of the same job safe
            metadata: Audit metadata

        Returns:
            DeductionResult with the new balance

        Raises:
            ValueError: amount is not a positive integer
            InsufficientCreditsError: amount exceeds the balance; nothing is written
            LedgerStorageError: storage failure
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("Amount must be a positive integer")

        key = idempotency_key or f"deduct_{new_id()}"

        if idempotency_key:
            existing = await self._existing(idempotency_key)
            if existing is not None:
                return await self._duplicate_result(existing)

        logger.info(f"[CREDITS] Deducting {amount} from {user_id} ({reason})")

        try:
            async with self.store.transaction(lock_user_id=user_id) as tx:
                now = utcnow()
                grants = await tx.list_all_grants(user_id)
                balance_before = calculate_balance(user_id, grants, now).total

                if amount > balance_before:
                    logger.warning(
                        f"[CREDITS] Insufficient credits for {user_id}: required {amount}, available {balance_before}"
                    )
                    raise InsufficientCreditsError(
                        message=f"Insufficient credits: {amount} required, {max(balance_before, 0)} available",
                        required=amount,
                        available=balance_before,
                    )

                row = CreditGrant(
                    user_id=user_id,
                    amount=-amount,
                    kind=GrantKind.DEDUCTION,
                    source=reason,
                    idempotency_key=key,
                    created_at=now,
                    expires_at=None,
                    metadata=dict(metadata or {}),
                )
                await tx.append_grant(row)
                balance_after = balance_before - amount

                await tx.append_transaction(CreditTransaction(
                    user_id=user_id,
                    grant_id=row.id,
                    amount=-amount,
                    type=TransactionType.DEBIT,
                    reason=reason,
                    description=description or reason.replace('_', ' ').capitalize(),
                    balance_before=balance_before,
                    balance_after=balance_after,
                    created_at=now,
                    metadata=dict(metadata or {}),
                ))
        except DuplicateIdempotencyKeyError:
            existing = await self._existing(key)
            if existing is None:
                raise LedgerStorageError(f"Deduction for key {key} vanished after conflict", operation='deduct')
            return await self._duplicate_result(existing)

        logger.info(f"[CREDITS] Deducted {amount} from {user_id}, balance {balance_before} -> {balance_after}")
        return DeductionResult(success=True, new_balance=balance_after, grant_id=row.id, amount=amount)

    async def has_enough_credits(self, user_id: str, amount: int) -> bool:
        """Advisory check; ``deduct`` re-checks atomically."""
        async with self.store.transaction() as tx:
            grants = await tx.list_all_grants(user_id)
        return calculate_balance(user_id, grants).total >= amount

    async def _existing(self, idempotency_key: str) -> Optional[CreditGrant]:
        async with self.store.transaction() as tx:
            return await tx.get_grant_by_idempotency_key(idempotency_key)

    async def _duplicate_result(self, existing: CreditGrant) -> DeductionResult:
        if existing.kind != GrantKind.DEDUCTION:
            raise ValueError(f"Idempotency key {existing.idempotency_key} belongs to a {existing.kind.value} grant")
        logger.info(f"[CREDITS] Deduction {existing.idempotency_key} already applied, skipping")
        async with self.store.transaction() as tx:
            grants = await tx.list_all_grants(existing.user_id)
        balance = calculate_balance(existing.user_id, grants)
        return DeductionResult(
            success=True,
            new_balance=balance.total,
            grant_id=existing.id,
            amount=-existing.amount,
            duplicate=True,
        )

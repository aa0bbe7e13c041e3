"""
Grant Manager

Creates credit grants with idempotency keys:
- subscription cycle allocations
- one-time purchases (top-ups)
- bonus / admin grants
- plan-change proration adjustments

Idempotency is enforced by the ledger store's unique key. A replayed key
returns the grant that already exists instead of raising.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.credits.calculator import calculate_balance
from credit_ledger.src.billing.domain import (
    CreditGrant,
    CreditTransaction,
    GrantKind,
    Subscription,
    TransactionType,
)
from credit_ledger.src.billing.domain.credit_grant import utcnow
from credit_ledger.src.billing.shared.cache_utils import invalidate_next_expiry
from credit_ledger.src.billing.shared.config import (
    CREDIT_CYCLE_DAYS,
    CreditPackage,
    get_plan_by_name,
    normalize_expiry,
)
from credit_ledger.src.billing.shared.exceptions import (
    DuplicateIdempotencyKeyError,
    LedgerStorageError,
)

logger = logging.getLogger(__name__)

# Grant kinds that make up a subscription's allocation for a cycle
CYCLE_ALLOCATION_KINDS = (GrantKind.SUBSCRIPTION, GrantKind.PLAN_CHANGE_ADJUSTMENT)


@dataclass
class GrantResult:
    """Outcome of a grant call."""
    grant: CreditGrant
    duplicate: bool
    new_balance: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'duplicate': self.duplicate,
            'grant': self.grant.to_dict(),
            'new_balance': self.new_balance,
        }


def subscription_grant_key(subscription_id: str, cycle_start: datetime) -> str:
    return f"sub_{subscription_id}_{cycle_start:%Y-%m-%d}"


def plan_change_grant_key(subscription_id: str, period_end: datetime, product_id: str) -> str:
    return f"plan_change_{subscription_id}_{period_end:%Y-%m-%d}_{product_id}"


def purchase_grant_key(payment_id: str) -> str:
    return f"purchase_{payment_id}"


class GrantManager:
    """
    Writes positive ledger entries.

    Usage:
        grants = GrantManager(store)
        result = await grants.grant(
            user_id, 500, GrantKind.BONUS, source='promo', idempotency_key='promo_2026_user1'
        )
    """

    def __init__(self, store):
        self.store = store

    # =========================================================================
    # GENERIC GRANT
    # =========================================================================

    async def grant(
        self,
        user_id: str,
        amount: int,
        kind: GrantKind,
        source: str,
        idempotency_key: str,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        subscription: Optional[Subscription] = None,
        description: Optional[str] = None,
    ) -> GrantResult:
        """
        Grant credits to a user.

        Args:
            user_id: Recipient
            amount: Positive number of credits
            kind: Any kind except deduction
            source: Provenance tag
            idempotency_key: Unique key; a replay returns the existing grant
            expires_at: Explicit expiry; defaults by policy
            metadata: Audit metadata stored on the grant
            subscription: For subscription grants, supplies the default expiry
            description: Transaction log description

        Returns:
            GrantResult (duplicate=True when the key already existed)

        Raises:
            ValueError: invalid amount, kind or missing key
            LedgerStorageError: storage failure
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("Amount must be a positive integer")
        if kind == GrantKind.DEDUCTION:
            raise ValueError("Deductions are written by the Deduction Manager")
        if not idempotency_key:
            raise ValueError("idempotency_key is required")

        now = utcnow()
        expires_at = normalize_expiry(expires_at) or self._default_expiry(kind, subscription, now)

        existing = await self._existing_grant(idempotency_key)
        if existing is not None:
            return await self._duplicate_result(existing)

        grant = CreditGrant(
            user_id=user_id,
            amount=amount,
            kind=kind,
            source=source,
            idempotency_key=idempotency_key,
            created_at=now,
            expires_at=expires_at,
            metadata=dict(metadata or {}),
        )

        logger.info(f"[CREDITS] Granting {amount} {kind.value} credits to {user_id} (key={idempotency_key})")

        try:
            async with self.store.transaction(lock_user_id=user_id) as tx:
                grants = await tx.list_all_grants(user_id)
                balance_before = calculate_balance(user_id, grants, now).total
                await tx.append_grant(grant)
                balance_after = calculate_balance(user_id, grants + [grant], now).total
                await tx.append_transaction(CreditTransaction(
                    user_id=user_id,
                    grant_id=grant.id,
                    amount=amount,
                    type=TransactionType.CREDIT,
                    reason=source,
                    description=description or f"{kind.value.replace('_', ' ').capitalize()} credits",
                    balance_before=balance_before,
                    balance_after=balance_after,
                    created_at=now,
                    metadata={'kind': kind.value, **grant.metadata},
                ))
        except DuplicateIdempotencyKeyError:
            # Lost the race against a concurrent delivery of the same event
            existing = await self._existing_grant(idempotency_key)
            if existing is None:
                raise LedgerStorageError(
                    f"Grant for key {idempotency_key} vanished after conflict",
                    operation='grant',
                )
            return await self._duplicate_result(existing)

        if expires_at is not None:
            await invalidate_next_expiry(user_id)

        logger.info(f"[CREDITS] Granted {amount} to {user_id}, balance {balance_before} -> {balance_after}")
        return GrantResult(grant=grant, duplicate=False, new_balance=balance_after)

    @staticmethod
    def _default_expiry(kind: GrantKind, subscription: Optional[Subscription], now: datetime) -> Optional[datetime]:
        if kind not in CYCLE_ALLOCATION_KINDS:
            return None
        if subscription is not None:
            _, cycle_end = subscription.credit_cycle(now)
            if cycle_end is not None:
                return cycle_end
        return now + timedelta(days=CREDIT_CYCLE_DAYS)

    async def _existing_grant(self, idempotency_key: str) -> Optional[CreditGrant]:
        async with self.store.transaction() as tx:
            return await tx.get_grant_by_idempotency_key(idempotency_key)

    async def _duplicate_result(self, existing: CreditGrant) -> GrantResult:
        logger.info(f"[CREDITS] Grant {existing.idempotency_key} already applied, skipping")
        async with self.store.transaction() as tx:
            grants = await tx.list_all_grants(existing.user_id)
        balance = calculate_balance(existing.user_id, grants)
        return GrantResult(grant=existing, duplicate=True, new_balance=balance.total)

    # =========================================================================
    # SUBSCRIPTION CREDITS
    # =========================================================================

    async def grant_subscription_credits(
        self,
        subscription: Subscription,
        cycle_start: datetime,
        cycle_end: datetime,
        source: str = 'subscription_renewal',
        event_id: Optional[str] = None,
    ) -> GrantResult:
        """
        Allocate one credit cycle of the subscription's plan.

        Keyed by ``sub_{subscriptionId}_{cycleStart}`` so the activation event,
        the payment event and any redelivery of either grant once.
        """
        plan = get_plan_by_name(subscription.plan)
        subscription_id = subscription.provider_subscription_id or subscription.id

        return await self.grant(
            user_id=subscription.user_id,
            amount=plan.monthly_credits,
            kind=GrantKind.SUBSCRIPTION,
            source=source,
            idempotency_key=subscription_grant_key(subscription_id, cycle_start),
            expires_at=cycle_end,
            metadata={
                'subscription_id': subscription_id,
                'plan': plan.name,
                'billing_period': subscription.billing_period,
                'period_start': cycle_start.isoformat(),
                'period_end': cycle_end.isoformat(),
                'event_id': event_id,
            },
            description=f"{plan.display_name} plan credits",
        )

    # =========================================================================
    # PLAN CHANGE PRORATION
    # =========================================================================

    async def allocated_for_cycle(self, subscription: Subscription, cycle_end: datetime) -> int:
        """Credits already granted to this subscription for the cycle ending at ``cycle_end``."""
        subscription_id = subscription.provider_subscription_id or subscription.id
        async with self.store.transaction() as tx:
            grants = await tx.list_all_grants(subscription.user_id)
        return sum(
            g.amount for g in grants
            if g.kind in CYCLE_ALLOCATION_KINDS
            and g.metadata.get('subscription_id') == subscription_id
            and g.expires_at == cycle_end
        )

    async def apply_plan_change(
        self,
        subscription: Subscription,
        target_plan: str,
        product_id: str,
        previous_plan: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> Optional[GrantResult]:
        """
        Top up the current cycle to the target plan's allocation.

        Grants ``target_monthly_credits - already_allocated`` when positive.
        Downgrades never claw credits back. Repeating the change in the same
        cycle finds the allocation already satisfied and grants nothing.

        Returns:
            GrantResult, or None when nothing was granted
        """
        as_of = as_of or utcnow()
        if subscription.period_has_ended(as_of):
            logger.warning(
                f"[CREDITS] Plan change for {subscription.provider_subscription_id} after period end, no proration"
            )
            return None

        _, cycle_end = subscription.credit_cycle(as_of)
        target = get_plan_by_name(target_plan)
        allocated = await self.allocated_for_cycle(subscription, cycle_end)
        delta = target.monthly_credits - allocated

        if delta <= 0:
            logger.info(
                f"[CREDITS] Plan change to {target.name} for {subscription.user_id}: "
                f"{allocated} already allocated, nothing to grant"
            )
            return None

        subscription_id = subscription.provider_subscription_id or subscription.id
        return await self.grant(
            user_id=subscription.user_id,
            amount=delta,
            kind=GrantKind.PLAN_CHANGE_ADJUSTMENT,
            source='plan_change',
            idempotency_key=plan_change_grant_key(subscription_id, cycle_end, product_id),
            expires_at=cycle_end,
            metadata={
                'subscription_id': subscription_id,
                'from_plan': previous_plan,
                'to_plan': target.name,
                'product_id': product_id,
                'previous_allocation': allocated,
                'target_allocation': target.monthly_credits,
                'period_end': cycle_end.isoformat(),
            },
            description=f"Upgrade to {target.display_name} (prorated)",
        )

    # =========================================================================
    # PURCHASES AND ADMIN
    # =========================================================================

    async def grant_purchase_credits(
        self,
        user_id: str,
        credits: int,
        payment_id: str,
        package: Optional[CreditPackage] = None,
        amount_paid: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> GrantResult:
        """Grant permanent credits for a one-time top-up payment."""
        return await self.grant(
            user_id=user_id,
            amount=credits,
            kind=GrantKind.PURCHASE,
            source='credit_purchase',
            idempotency_key=purchase_grant_key(payment_id),
            metadata={
                'payment_id': payment_id,
                'package': package.name if package else None,
                'amount_paid': amount_paid,
                'currency': currency,
            },
            description=package.description if package else f"{credits:,} credits purchase",
        )

    async def grant_admin_credits(
        self,
        user_id: str,
        credits: int,
        reason: str,
        granted_by: str,
        idempotency_key: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> GrantResult:
        """
        Manual grant by an operator, capped at ADMIN_GRANT_MAX_CREDITS.

        Raises:
            ValueError: credits above the cap
        """
        if isinstance(credits, int) and credits > settings.ADMIN_GRANT_MAX_CREDITS:
            raise ValueError(f"Admin grants are limited to {settings.ADMIN_GRANT_MAX_CREDITS:,} credits")

        key = idempotency_key or f"admin_{user_id}_{utcnow():%Y%m%d%H%M%S%f}"
        return await self.grant(
            user_id=user_id,
            amount=credits,
            kind=GrantKind.ADMIN,
            source='admin_grant',
            idempotency_key=key,
            expires_at=expires_at,
            metadata={'reason': reason, 'granted_by': granted_by},
            description=f"Admin grant: {reason}",
        )

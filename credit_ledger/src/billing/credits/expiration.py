"""
Expiration Sweeper

Deactivates grants whose expiry has passed and records an ``expiration``
entry in the transaction log for the credits that went unspent. Also moves
subscriptions in ``pending_cancellation`` to ``cancelled`` once their
billing period is over.

Balance reads never depend on the sweeper: the calculator already ignores
expired grants. The sweep keeps ``is_active`` and the audit log in line
with that, and is safe to re-run for the same ``as_of``.

Triggered externally (``credit-ledger sweep``, the admin endpoint) or lazily
before a balance read when the user's cached next expiry has passed.
"""

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Optional

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.credits.calculator import replay_grants
from credit_ledger.src.billing.domain import CreditTransaction, SubscriptionStatus, TransactionType
from credit_ledger.src.billing.domain.credit_grant import utcnow
from credit_ledger.src.billing.shared.cache_utils import set_cached_next_expiry

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """
    Usage:
        sweeper = ExpirationSweeper(store)
        deactivated = await sweeper.sweep()
    """

    def __init__(self, store, batch_size: Optional[int] = None):
        self.store = store
        self.batch_size = batch_size or settings.SWEEP_BATCH_SIZE

    async def sweep(self, as_of: Optional[datetime] = None, user_id: Optional[str] = None) -> int:
        """
        Deactivate every active grant with ``expires_at <= as_of``.

        Args:
            as_of: Cut-off time (defaults to now)
            user_id: Restrict the sweep to one user

        Returns:
            Number of grants deactivated by this call
        """
        as_of = as_of or utcnow()
        deactivated = 0

        while True:
            async with self.store.transaction() as tx:
                expired = await tx.list_expired_active_grants(as_of, user_id=user_id, limit=self.batch_size)
            if not expired:
                break

            users = list(OrderedDict.fromkeys(g.user_id for g in expired))
            batch_count = 0
            for uid in users:
                batch_count += await self._sweep_user(uid, as_of)
            deactivated += batch_count

            if len(expired) < self.batch_size or batch_count == 0:
                break

        if deactivated:
            logger.info(f"[SWEEPER] Deactivated {deactivated} expired grants (as_of={as_of.isoformat()})")
        return deactivated

    async def _sweep_user(self, user_id: str, as_of: datetime) -> int:
        count = 0
        async with self.store.transaction(lock_user_id=user_id) as tx:
            grants = await tx.list_all_grants(user_id)
            replay = replay_grants(grants, as_of)
            balance_after = replay.total

            for grant in grants:
                if not grant.is_active or grant.amount <= 0 or not grant.is_expired(as_of):
                    continue
                if not await tx.deactivate_grant(grant.id):
                    continue

                unspent = replay.remaining.get(grant.id, 0)
                count += 1
                await tx.append_transaction(CreditTransaction(
                    user_id=user_id,
                    grant_id=grant.id,
                    amount=-unspent,
                    type=TransactionType.EXPIRATION,
                    reason='credit_expiration',
                    description=f"{unspent:,} {grant.kind.value.replace('_', ' ')} credits expired",
                    balance_before=balance_after + unspent,
                    balance_after=balance_after,
                    created_at=as_of,
                    metadata={'expired_at': grant.expires_at.isoformat(), 'kind': grant.kind.value},
                ))
                logger.debug(f"[SWEEPER] Grant {grant.id} of {user_id} expired with {unspent} unspent")

        await set_cached_next_expiry(user_id, replay.next_expiry)
        return count

    async def finalize_cancellations(self, as_of: Optional[datetime] = None) -> int:
        """
        Cancel subscriptions whose pending cancellation took effect.

        Returns:
            Number of subscriptions moved to ``cancelled``
        """
        as_of = as_of or utcnow()
        async with self.store.transaction() as tx:
            pending = await tx.list_subscriptions([SubscriptionStatus.PENDING_CANCELLATION.value])

        finalized = 0
        for subscription in pending:
            if not subscription.period_has_ended(as_of):
                continue
            lock_key = subscription.provider_subscription_id or subscription.id
            async with self.store.subscription_lock(lock_key):
                async with self.store.transaction() as tx:
                    current = (
                        await tx.get_subscription_by_provider_id(subscription.provider_subscription_id)
                        if subscription.provider_subscription_id else subscription
                    )
                    if current is None or current.status != SubscriptionStatus.PENDING_CANCELLATION:
                        continue
                    current.transition_to(SubscriptionStatus.CANCELLED)
                    current.updated_at = utcnow()
                    await tx.save_subscription(current)
            finalized += 1
            logger.info(f"[SWEEPER] Subscription {lock_key} of {subscription.user_id} cancelled at period end")

        return finalized

"""
Credit Cycle Allocation

Yearly subscriptions are billed once a year but receive credits in 30-day
cycles, the last one running to the next billing date. Between renewals
nothing arrives from the provider, so this job grants each yearly
subscription its current cycle. The grant key is the same
``sub_{subscriptionId}_{cycleStart}`` used by webhook grants, which makes
the job safe to run as often as the scheduler likes.
"""

import logging
from datetime import datetime
from typing import Optional

from credit_ledger.src.billing.credits.grants import GrantManager
from credit_ledger.src.billing.domain import SubscriptionStatus
from credit_ledger.src.billing.domain.credit_grant import utcnow

logger = logging.getLogger(__name__)


class CycleAllocator:
    """
    Usage:
        allocator = CycleAllocator(store, grants)
        granted = await allocator.allocate_due_cycles()
    """

    def __init__(self, store, grants: Optional[GrantManager] = None):
        self.store = store
        self.grants = grants or GrantManager(store)

    async def allocate_due_cycles(self, as_of: Optional[datetime] = None) -> int:
        """
        Grant the current credit cycle to every usable yearly subscription.

        Returns:
            Number of new grants written (replays are not counted)
        """
        as_of = as_of or utcnow()
        async with self.store.transaction() as tx:
            subscriptions = await tx.list_subscriptions(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PENDING_CANCELLATION.value],
                billing_period='yearly',
            )

        granted = 0
        for subscription in subscriptions:
            if subscription.current_period_start is None or subscription.period_has_ended(as_of):
                continue
            cycle_start, cycle_end = subscription.credit_cycle(as_of)
            result = await self.grants.grant_subscription_credits(
                subscription,
                cycle_start,
                cycle_end,
                source='subscription_cycle',
            )
            if not result.duplicate:
                granted += 1
                logger.info(
                    f"[CREDITS] Allocated cycle {cycle_start:%Y-%m-%d} for yearly subscription "
                    f"{subscription.provider_subscription_id} ({subscription.user_id})"
                )

        return granted

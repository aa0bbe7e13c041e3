"""
Pending Checkout Correlation

The provider's first webhook for a new subscription can arrive before, or
without, a usable user reference. When the app starts a checkout it records
a pending checkout (``user_id:plan:billing_period``) in the ledger database;
events that cannot be mapped directly are matched against the recent ones.

Resolution precedence:
1. ``metadata.userId`` on the event (or on its customer)
2. Stored subscription with the event's provider subscription id
3. Stored subscription with the event's provider customer id
4. Best-scored pending checkout inside the TTL window

Score = base + plan match + billing period match + recency, with weights
taken from settings. The expiry window is enforced at read time.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.domain import PaymentEvent, PendingCheckout
from credit_ledger.src.billing.domain.credit_grant import utcnow
from credit_ledger.src.billing.shared.config import normalize_billing_period
from credit_ledger.src.billing.shared.exceptions import UserResolutionFailedError

logger = logging.getLogger(__name__)


class CheckoutCorrelator:
    """
    Usage:
        correlator = CheckoutCorrelator(store)
        await correlator.register('user-1', 'creator', 'monthly', 'a@b.c')
        user_id = await correlator.resolve_user(event, plan='creator', billing_period='monthly')
    """

    def __init__(
        self,
        store,
        window_seconds: Optional[int] = None,
        base_score: Optional[float] = None,
        plan_weight: Optional[float] = None,
        period_weight: Optional[float] = None,
        recency_weight: Optional[float] = None,
    ):
        self.store = store
        self.window_seconds = window_seconds or settings.PENDING_CHECKOUT_TTL_SECONDS
        self.base_score = settings.CORRELATION_BASE_SCORE if base_score is None else base_score
        self.plan_weight = settings.CORRELATION_PLAN_MATCH_WEIGHT if plan_weight is None else plan_weight
        self.period_weight = settings.CORRELATION_PERIOD_MATCH_WEIGHT if period_weight is None else period_weight
        self.recency_weight = settings.CORRELATION_RECENCY_WEIGHT if recency_weight is None else recency_weight

    async def register(
        self,
        user_id: str,
        plan: str,
        billing_period: str,
        user_email: Optional[str] = None,
    ) -> PendingCheckout:
        """Record (or refresh) a checkout the user just started."""
        checkout = PendingCheckout(
            user_id=user_id,
            plan=plan.lower(),
            billing_period=billing_period,
            user_email=user_email,
        )
        async with self.store.transaction() as tx:
            await tx.save_pending_checkout(checkout)
        logger.info(f"[CORRELATION] Pending checkout stored: {checkout.key}")
        return checkout

    def score(self, checkout: PendingCheckout, plan: Optional[str], billing_period: Optional[str], as_of: datetime) -> float:
        score = self.base_score
        if plan and checkout.plan == plan:
            score += self.plan_weight
        if billing_period and checkout.billing_period == billing_period:
            score += self.period_weight
        age = checkout.age_seconds(as_of)
        score += max(0.0, (self.window_seconds - age) / self.window_seconds) * self.recency_weight
        return score

    async def find_best_match(
        self,
        plan: Optional[str],
        billing_period: Optional[str],
        as_of: Optional[datetime] = None,
    ) -> Optional[PendingCheckout]:
        """Best-scored pending checkout created within the window, or None."""
        as_of = as_of or utcnow()
        since = as_of - timedelta(seconds=self.window_seconds)
        async with self.store.transaction() as tx:
            candidates = [c for c in await tx.list_pending_checkouts(since) if c.created_at <= as_of]

        if not candidates:
            return None

        best = max(candidates, key=lambda c: (self.score(c, plan, billing_period, as_of), c.created_at))
        logger.info(
            f"[CORRELATION] Matched pending checkout {best.key} "
            f"(score {self.score(best, plan, billing_period, as_of):.2f}, {len(candidates)} candidates)"
        )
        return best

    async def consume(self, checkout: PendingCheckout) -> None:
        async with self.store.transaction() as tx:
            await tx.delete_pending_checkout(checkout.key)

    async def resolve_user(
        self,
        event: PaymentEvent,
        plan: Optional[str] = None,
        billing_period: Optional[str] = None,
        allow_pending: bool = True,
    ) -> str:
        """
        Map an event to a user id.

        One-time payments pass ``allow_pending=False``; pending checkouts only
        describe subscription purchases.

        Raises:
            UserResolutionFailedError: no direct reference and no pending checkout match
        """
        if event.user_id:
            return event.user_id

        async with self.store.transaction() as tx:
            if event.subscription_id:
                known = await tx.get_subscription_by_provider_id(event.subscription_id)
                if known is not None:
                    return known.user_id
            if event.customer_id:
                known = await tx.find_subscription_by_customer(event.customer_id)
                if known is not None:
                    return known.user_id

        match = None
        if allow_pending:
            match = await self.find_best_match(
                plan or event.plan,
                normalize_billing_period(billing_period or event.billing_period),
                as_of=utcnow(),
            )
        if match is not None:
            await self.consume(match)
            return match.user_id

        logger.error(
            f"[CORRELATION] Could not resolve user for event {event.id} ({event.type}), "
            f"subscription={event.subscription_id} customer={event.customer_id}"
        )
        raise UserResolutionFailedError(event_id=event.id, event_type=event.type)

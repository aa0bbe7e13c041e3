"""
Subscription Webhook Handler

Handles subscription lifecycle webhook events:
- subscription.active / subscription.renewed (and payments tied to a subscription)
- subscription.plan_changed
- subscription.cancelled
- subscription.expired / subscription.failed
- subscription.on_hold

Every handler runs under the per-subscription lock, so deliveries for the
same subscription are applied one at a time. Credit grants are keyed by
subscription id and cycle start, which makes replays and out-of-order
deliveries converge on the same ledger state.
"""

import logging
from typing import Optional, Tuple

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.credits.grants import GrantManager, GrantResult
from credit_ledger.src.billing.domain import PaymentEvent, Subscription, SubscriptionStatus
from credit_ledger.src.billing.domain.subscription import preserve_billing_date
from credit_ledger.src.billing.domain.credit_grant import utcnow
from credit_ledger.src.billing.payments.interfaces import PaymentProviderInterface, ProviderSubscription
from credit_ledger.src.billing.shared.config import (
    billing_period_length,
    find_plan,
    normalize_billing_period,
)
from credit_ledger.src.billing.shared.exceptions import (
    MalformedEventError,
    ProviderUnavailableError,
    SubscriptionNotFoundError,
)
from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

logger = logging.getLogger(__name__)


class SubscriptionHandler:
    """
    Handler for Dodo subscription webhook events.

    Usage:
        handler = SubscriptionHandler(store, grants, provider, correlator)
        await handler.handle_subscription_active(event)
    """

    def __init__(
        self,
        store,
        grants: GrantManager,
        provider: PaymentProviderInterface,
        correlator: CheckoutCorrelator,
    ):
        self.store = store
        self.grants = grants
        self.provider = provider
        self.correlator = correlator

    # =========================================================================
    # ACTIVATION / RENEWAL
    # =========================================================================

    async def handle_subscription_active(self, event: PaymentEvent, source: str = 'subscription_activation') -> Optional[GrantResult]:
        """
        Upsert the subscription for the reported period and grant the
        credit cycle the event falls into.

        Used for ``subscription.active``, ``subscription.renewed`` and
        ``payment.succeeded`` events that carry a subscription id.
        """
        subscription_id = self._require_subscription_id(event)

        async with self.store.subscription_lock(subscription_id):
            subscription, _ = await self._upsert_subscription(event, subscription_id)
            if not subscription.is_usable():
                logger.info(
                    f"[SUBSCRIPTION] {subscription_id} is {subscription.status.value}, no credits granted"
                )
                return None
            return await self._grant_current_cycle(subscription, event, source)

    async def handle_subscription_renewed(self, event: PaymentEvent) -> Optional[GrantResult]:
        return await self.handle_subscription_active(event, source='subscription_renewal')

    # =========================================================================
    # PLAN CHANGE
    # =========================================================================

    async def handle_plan_changed(self, event: PaymentEvent) -> Optional[GrantResult]:
        """
        Apply a provider-side plan change and prorate the current cycle.

        If no allocation exists for the cycle yet (the activation event has
        not arrived), the cycle is granted at the new plan first, so the
        proration delta comes out as zero instead of double counting.
        """
        subscription_id = self._require_subscription_id(event)

        async with self.store.subscription_lock(subscription_id):
            subscription, previous_plan = await self._upsert_subscription(event, subscription_id)
            if not subscription.is_usable():
                logger.info(f"[SUBSCRIPTION] Plan change on {subscription.status.value} subscription {subscription_id}")
                return None

            as_of = max(event.occurred_at, subscription.current_period_start or event.occurred_at)
            _, cycle_end = subscription.credit_cycle(as_of)
            if await self.grants.allocated_for_cycle(subscription, cycle_end) == 0:
                await self._grant_current_cycle(subscription, event, 'subscription_activation')

            logger.info(
                f"[SUBSCRIPTION] Plan changed: {subscription_id} {previous_plan} -> {subscription.plan}"
            )
            return await self.grants.apply_plan_change(
                subscription,
                target_plan=subscription.plan,
                product_id=event.product_id or settings.product_id_for(subscription.plan, subscription.billing_period) or subscription.plan,
                previous_plan=previous_plan,
                as_of=as_of,
            )

    # =========================================================================
    # CANCELLATION / EXPIRY
    # =========================================================================

    async def handle_subscription_cancelled(self, event: PaymentEvent) -> None:
        """
        Auto-renew turned off. Access continues until the stored billing date;
        the sweeper finalises the cancellation once that date passes.
        """
        subscription_id = self._require_subscription_id(event)
        now = utcnow()

        async with self.store.subscription_lock(subscription_id):
            async with self.store.transaction() as tx:
                subscription = await tx.get_subscription_by_provider_id(subscription_id)
                if subscription is None:
                    logger.warning(f"[SUBSCRIPTION] Cancellation for unknown subscription {subscription_id}, ignoring")
                    return
                if subscription.status == SubscriptionStatus.CANCELLED:
                    logger.info(f"[SUBSCRIPTION] {subscription_id} already cancelled")
                    return

                subscription.next_billing_date = preserve_billing_date(
                    event.next_billing_date, subscription.next_billing_date, now
                )
                if subscription.period_has_ended(now):
                    subscription.transition_to(SubscriptionStatus.CANCELLED)
                else:
                    subscription.transition_to(SubscriptionStatus.PENDING_CANCELLATION)
                subscription.updated_at = now
                await tx.save_subscription(subscription)

        logger.info(
            f"[SUBSCRIPTION] {subscription_id} of {subscription.user_id} -> {subscription.status.value}, "
            f"access until {subscription.next_billing_date}"
        )

    async def handle_subscription_ended(self, event: PaymentEvent) -> None:
        """``subscription.expired`` / ``subscription.failed``: the subscription is over."""
        subscription_id = self._require_subscription_id(event)

        async with self.store.subscription_lock(subscription_id):
            async with self.store.transaction() as tx:
                subscription = await tx.get_subscription_by_provider_id(subscription_id)
                if subscription is None:
                    logger.warning(f"[SUBSCRIPTION] {event.type} for unknown subscription {subscription_id}, ignoring")
                    return
                subscription.transition_to(SubscriptionStatus.CANCELLED)
                subscription.updated_at = utcnow()
                await tx.save_subscription(subscription)

        logger.info(f"[SUBSCRIPTION] {subscription_id} of {subscription.user_id} cancelled ({event.type})")

    async def handle_subscription_on_hold(self, event: PaymentEvent) -> None:
        # Renewal payment failed; Dodo retries the charge and sends renewed or failed later
        logger.warning(
            f"[SUBSCRIPTION] {event.subscription_id} on hold, waiting for the provider to retry the payment"
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _require_subscription_id(event: PaymentEvent) -> str:
        if not event.subscription_id:
            raise MalformedEventError("Subscription event has no subscription_id", event_id=event.id, event_type=event.type)
        return event.subscription_id

    def _resolve_plan(self, event: PaymentEvent, existing: Optional[Subscription]) -> Tuple[str, str]:
        """Plan and billing period from the product id, then metadata, then the stored row."""
        plan, billing_period = None, None
        if event.product_id:
            configured = settings.plan_for_product(event.product_id)
            if configured is not None:
                plan, billing_period = configured

        plan = plan or event.plan or (existing.plan if existing else None)
        billing_period = (
            billing_period
            or normalize_billing_period(event.billing_period)
            or normalize_billing_period(event.payment_frequency_interval)
            or (existing.billing_period if existing else None)
            or 'monthly'
        )

        if find_plan(plan) is None:
            raise MalformedEventError(
                f"Cannot determine plan for product {event.product_id}", event_id=event.id, event_type=event.type
            )
        return plan.lower(), billing_period

    async def _fetch_provider_state(
        self, subscription_id: str, subscription: Subscription, event: PaymentEvent
    ) -> Optional[ProviderSubscription]:
        try:
            return await self.provider.retrieve_subscription(subscription_id)
        except SubscriptionNotFoundError as e:
            logger.warning(f"[SUBSCRIPTION] Provider has no {subscription_id}, using stored dates: {e}")
            return None
        except ProviderUnavailableError as e:
            if event.previous_billing_date is None and self._may_open_new_period(subscription, event):
                # Stored dates would file a renewal under the old cycle key; fail so the provider redelivers
                logger.error(
                    f"[SUBSCRIPTION] Cannot date {event.type} for {subscription_id} while the provider is unavailable"
                )
                raise
            logger.warning(f"[SUBSCRIPTION] Provider lookup for {subscription_id} failed, using stored dates: {e}")
            return None

    @staticmethod
    def _may_open_new_period(subscription: Subscription, event: PaymentEvent) -> bool:
        """True when the event falls past the stored period, so it may belong to a renewal."""
        if subscription.current_period_start is None or subscription.next_billing_date is None:
            return False
        return event.occurred_at >= subscription.next_billing_date

    async def _upsert_subscription(self, event: PaymentEvent, subscription_id: str) -> Tuple[Subscription, Optional[str]]:
        """
        Create or update the subscription row from an event.

        Returns:
            (subscription, previous_plan)
        """
        async with self.store.transaction() as tx:
            existing = await tx.get_subscription_by_provider_id(subscription_id)

        plan, billing_period = self._resolve_plan(event, existing)

        if existing is None:
            user_id = await self.correlator.resolve_user(event, plan=plan, billing_period=billing_period)
            async with self.store.transaction() as tx:
                current = await tx.find_current_subscription(user_id)
            if current is not None and current.status == SubscriptionStatus.PENDING and not current.provider_subscription_id:
                # Row created when the checkout started
                existing = current
            subscription = existing or Subscription(
                user_id=user_id,
                plan=plan,
                billing_period=billing_period,
                status=SubscriptionStatus.PENDING,
            )
        else:
            subscription = existing
        previous_plan = existing.plan if existing else None

        period_start, next_billing_date = event.previous_billing_date, event.next_billing_date
        if period_start is None or next_billing_date is None:
            provider_state = await self._fetch_provider_state(subscription_id, subscription, event)
            if provider_state is not None:
                period_start = period_start or provider_state.previous_billing_date
                next_billing_date = next_billing_date or provider_state.next_billing_date
        period_start = period_start or subscription.current_period_start or event.occurred_at
        next_billing_date = next_billing_date or period_start + billing_period_length(billing_period)

        replayed = (
            subscription.current_period_start is not None
            and period_start <= subscription.current_period_start
        )
        if replayed and subscription.status in (SubscriptionStatus.PENDING_CANCELLATION, SubscriptionStatus.CANCELLED):
            # Older delivery for a period the user already cancelled
            logger.info(
                f"[SUBSCRIPTION] Replayed {event.type} for {subscription_id}, keeping {subscription.status.value}"
            )
        else:
            subscription.transition_to(SubscriptionStatus.ACTIVE)
            if event.data.get('cancel_at_next_billing_date'):
                subscription.transition_to(SubscriptionStatus.PENDING_CANCELLATION)
            if not replayed:
                subscription.current_period_start = period_start
                subscription.next_billing_date = next_billing_date

        if subscription.current_period_start is None:
            subscription.current_period_start = period_start
            subscription.next_billing_date = next_billing_date

        subscription.plan = plan
        subscription.billing_period = billing_period
        subscription.provider_subscription_id = subscription_id
        subscription.provider_customer_id = event.customer_id or subscription.provider_customer_id
        subscription.updated_at = utcnow()

        async with self.store.transaction() as tx:
            await tx.save_subscription(subscription)

        logger.info(
            f"[SUBSCRIPTION] {subscription_id} of {subscription.user_id}: {subscription.plan}/"
            f"{subscription.billing_period} {subscription.status.value}, period "
            f"{subscription.current_period_start:%Y-%m-%d} -> {subscription.next_billing_date:%Y-%m-%d}"
        )
        return subscription, previous_plan

    async def _grant_current_cycle(self, subscription: Subscription, event: PaymentEvent, source: str) -> GrantResult:
        as_of = max(event.occurred_at, subscription.current_period_start)
        cycle_start, cycle_end = subscription.credit_cycle(as_of)
        return await self.grants.grant_subscription_credits(
            subscription,
            cycle_start=cycle_start,
            cycle_end=cycle_end,
            source=source,
            event_id=event.id,
        )

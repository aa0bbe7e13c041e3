"""
Subscription Service

Main orchestrator for user-initiated subscription operations:
- Checkout creation (subscriptions and credit top-ups)
- Cancellation at period end and reactivation
- Plan changes with immediate proration
- Status lookup

Provider-side changes are made first; the local row is only updated once
Dodo accepted the request. Webhooks for the same change arrive later and
converge on the same state.
"""

import logging
from typing import Any, Dict, Optional

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.credits.grants import GrantManager
from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus
from credit_ledger.src.billing.domain.credit_grant import utcnow
from credit_ledger.src.billing.domain.subscription import preserve_billing_date
from credit_ledger.src.billing.payments.interfaces import PaymentProviderInterface
from credit_ledger.src.billing.shared.config import (
    get_credit_package,
    get_plan_by_name,
    normalize_billing_period,
)
from credit_ledger.src.billing.shared.exceptions import SubscriptionError, SubscriptionNotFoundError

from .correlation import CheckoutCorrelator

logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Unified subscription management service.

    Usage:
        from credit_ledger.src.billing.subscriptions import subscription_service

        checkout = await subscription_service.register_checkout(
            user_id, 'creator', 'monthly', email='a@b.c', name='Ada', billing={'country': 'US'}
        )
        await subscription_service.cancel(user_id)
    """

    def __init__(self, store=None, provider: Optional[PaymentProviderInterface] = None):
        self._store = store
        self._provider = provider

    @property
    def store(self):
        if self._store is None:
            from credit_ledger.src.billing.ledger import get_ledger_store

            self._store = get_ledger_store()
        return self._store

    @property
    def provider(self) -> PaymentProviderInterface:
        if self._provider is None:
            from credit_ledger.src.billing.external.dodo.client import dodo_client

            self._provider = dodo_client
        return self._provider

    @property
    def grants(self) -> GrantManager:
        return GrantManager(self.store)

    @property
    def correlator(self) -> CheckoutCorrelator:
        return CheckoutCorrelator(self.store)

    # =========================================================================
    # Checkout
    # =========================================================================

    async def register_checkout(
        self,
        user_id: str,
        plan: str,
        billing_period: str,
        email: str,
        name: Optional[str] = None,
        billing: Optional[Dict[str, str]] = None,
        return_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a subscription checkout.

        Records a pending subscription and a pending checkout before calling
        the provider, so an early webhook can already be correlated.

        Returns:
            Dict with checkout_id, payment_link and the pending subscription
        """
        target = get_plan_by_name(plan)
        period = normalize_billing_period(billing_period)
        if period is None:
            raise SubscriptionError(f"Unknown billing period '{billing_period}'", code="INVALID_BILLING_PERIOD")

        product_id = settings.product_id_for(target.name, period)
        if not product_id:
            raise SubscriptionError(
                f"No product configured for {target.name}/{period}", code="PRODUCT_NOT_CONFIGURED"
            )

        async with self.store.transaction() as tx:
            current = await tx.find_current_subscription(user_id)
            if current is not None and current.is_usable():
                raise SubscriptionError(
                    "User already has an active subscription, use change-plan instead",
                    code="ALREADY_SUBSCRIBED",
                    subscription_id=current.provider_subscription_id,
                )

            subscription = current if current is not None and current.status == SubscriptionStatus.PENDING else None
            if subscription is None:
                subscription = Subscription(
                    user_id=user_id,
                    plan=target.name,
                    billing_period=period,
                    status=SubscriptionStatus.PENDING,
                )
            subscription.plan = target.name
            subscription.billing_period = period
            subscription.updated_at = utcnow()
            await tx.save_subscription(subscription)

        await self.correlator.register(user_id, target.name, period, email)

        checkout = await self.provider.create_subscription_checkout(
            product_id=product_id,
            customer_email=email,
            customer_name=name or email,
            billing=billing or {},
            metadata={'userId': user_id, 'plan': target.name, 'billingPeriod': period},
            return_url=return_url,
        )

        logger.info(f"[SUBSCRIPTION] Checkout {checkout.checkout_id} for {user_id}: {target.name}/{period}")
        return {
            'checkout_id': checkout.checkout_id,
            'payment_link': checkout.payment_link,
            'subscription': subscription.to_dict(),
        }

    async def create_top_up_checkout(
        self,
        user_id: str,
        package: str,
        email: str,
        name: Optional[str] = None,
        billing: Optional[Dict[str, str]] = None,
        return_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a one-time credit purchase.

        Top-ups are only sold to users with a live subscription.
        """
        credit_package = get_credit_package(package)
        if credit_package is None:
            raise SubscriptionError(f"Unknown credit package '{package}'", code="PACKAGE_NOT_FOUND")

        async with self.store.transaction() as tx:
            current = await tx.find_current_subscription(user_id)
        if current is None or not current.is_usable() or current.period_has_ended():
            raise SubscriptionError("An active subscription is required to buy credits", code="SUBSCRIPTION_REQUIRED")

        product_id = settings.DODO_CREDIT_PRODUCT_IDS.get(credit_package.name)
        if not product_id:
            raise SubscriptionError(
                f"No product configured for package {credit_package.name}", code="PRODUCT_NOT_CONFIGURED"
            )

        checkout = await self.provider.create_payment_checkout(
            product_id=product_id,
            customer_email=email,
            customer_name=name or email,
            billing=billing or {},
            metadata={
                'userId': user_id,
                'package': credit_package.name,
                'credits': str(credit_package.total_credits),
            },
            return_url=return_url,
        )

        logger.info(f"[SUBSCRIPTION] Top-up checkout {checkout.checkout_id} for {user_id}: {credit_package.name}")
        return {
            'checkout_id': checkout.checkout_id,
            'payment_link': checkout.payment_link,
            'package': credit_package.name,
            'credits': credit_package.total_credits,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _require_subscription(self, user_id: str, *statuses: SubscriptionStatus) -> Subscription:
        async with self.store.transaction() as tx:
            subscription = await tx.find_current_subscription(user_id)
        if subscription is None or subscription.status not in statuses or not subscription.provider_subscription_id:
            raise SubscriptionNotFoundError()
        return subscription

    async def cancel(self, user_id: str) -> Dict[str, Any]:
        """
        Turn off auto-renew. The plan stays usable until the end of the
        current billing period.
        """
        subscription = await self._require_subscription(
            user_id, SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CANCELLATION
        )
        subscription_id = subscription.provider_subscription_id

        if subscription.status == SubscriptionStatus.PENDING_CANCELLATION:
            logger.info(f"[SUBSCRIPTION] {subscription_id} already set to cancel")
        else:
            provider_state = await self.provider.set_cancel_at_period_end(subscription_id, True)
            async with self.store.subscription_lock(subscription_id):
                async with self.store.transaction() as tx:
                    subscription = await tx.get_subscription_by_provider_id(subscription_id)
                    subscription.next_billing_date = preserve_billing_date(
                        provider_state.next_billing_date, subscription.next_billing_date, utcnow()
                    )
                    subscription.transition_to(SubscriptionStatus.PENDING_CANCELLATION)
                    subscription.updated_at = utcnow()
                    await tx.save_subscription(subscription)
            logger.info(f"[SUBSCRIPTION] {subscription_id} of {user_id} cancels at {subscription.next_billing_date}")

        return {
            'success': True,
            'status': subscription.status.value,
            'access_until': subscription.next_billing_date.isoformat() if subscription.next_billing_date else None,
        }

    async def reactivate(self, user_id: str) -> Dict[str, Any]:
        """Undo a pending cancellation before the period ends."""
        subscription = await self._require_subscription(user_id, SubscriptionStatus.PENDING_CANCELLATION)
        subscription_id = subscription.provider_subscription_id

        if subscription.period_has_ended():
            raise SubscriptionError(
                "Billing period already ended, start a new subscription",
                code="PERIOD_ENDED",
                subscription_id=subscription_id,
            )

        await self.provider.set_cancel_at_period_end(subscription_id, False)
        async with self.store.subscription_lock(subscription_id):
            async with self.store.transaction() as tx:
                subscription = await tx.get_subscription_by_provider_id(subscription_id)
                subscription.transition_to(SubscriptionStatus.ACTIVE)
                subscription.updated_at = utcnow()
                await tx.save_subscription(subscription)

        logger.info(f"[SUBSCRIPTION] {subscription_id} of {user_id} reactivated")
        return {'success': True, 'status': subscription.status.value}

    async def change_plan(
        self,
        user_id: str,
        plan: str,
        billing_period: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move the user's subscription to another plan.

        Dodo charges the price difference immediately; the ledger tops the
        current credit cycle up to the new plan's allocation.
        """
        subscription = await self._require_subscription(
            user_id, SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CANCELLATION
        )
        subscription_id = subscription.provider_subscription_id
        target = get_plan_by_name(plan)
        period = normalize_billing_period(billing_period) or subscription.billing_period

        if target.name == subscription.plan and period == subscription.billing_period:
            raise SubscriptionError("Already on this plan", code="SAME_PLAN", subscription_id=subscription_id)
        if subscription.period_has_ended():
            raise SubscriptionError(
                "Billing period already ended, plan cannot be changed",
                code="PERIOD_ENDED",
                subscription_id=subscription_id,
            )

        product_id = settings.product_id_for(target.name, period)
        if not product_id:
            raise SubscriptionError(
                f"No product configured for {target.name}/{period}", code="PRODUCT_NOT_CONFIGURED"
            )

        await self.provider.change_plan(subscription_id, product_id)

        async with self.store.subscription_lock(subscription_id):
            async with self.store.transaction() as tx:
                subscription = await tx.get_subscription_by_provider_id(subscription_id)
                previous_plan = subscription.plan
                subscription.plan = target.name
                subscription.billing_period = period
                subscription.updated_at = utcnow()
                await tx.save_subscription(subscription)

            result = await self.grants.apply_plan_change(
                subscription, target_plan=target.name, product_id=product_id, previous_plan=previous_plan
            )

        credits_added = result.grant.amount if result is not None and not result.duplicate else 0
        logger.info(
            f"[SUBSCRIPTION] {subscription_id} of {user_id}: {previous_plan} -> {target.name}, "
            f"{credits_added} credits added"
        )
        return {
            'success': True,
            'plan': target.name,
            'billing_period': period,
            'credits_added': credits_added,
            'new_balance': result.new_balance if result is not None else None,
        }

    # =========================================================================
    # Status
    # =========================================================================

    async def get_status(self, user_id: str) -> Dict[str, Any]:
        async with self.store.transaction() as tx:
            subscription = await tx.find_current_subscription(user_id)

        if subscription is None:
            return {'has_active_subscription': False, 'current_plan': 'free', 'subscription': None}

        active = subscription.is_usable() and not subscription.period_has_ended()
        return {
            'has_active_subscription': active,
            'current_plan': subscription.plan if active else 'free',
            'subscription': subscription.to_dict(),
        }


# Global instance
subscription_service = SubscriptionService()

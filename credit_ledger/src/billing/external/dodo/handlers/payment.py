"""
Payment Webhook Handler

Handles ``payment.succeeded``:
- payments that belong to a subscription are treated as a renewal
- one-time payments grant permanent top-up credits

Credits for a top-up come from ``metadata.credits`` first, then the credit
package (metadata or product id), then the paid amount.
"""

import logging
from typing import Optional

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.credits.grants import GrantManager, GrantResult
from credit_ledger.src.billing.domain import PaymentEvent
from credit_ledger.src.billing.shared.config import (
    CREDITS_PER_CURRENCY_UNIT,
    CreditPackage,
    get_credit_package,
)
from credit_ledger.src.billing.shared.exceptions import MalformedEventError
from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

from .subscription import SubscriptionHandler

logger = logging.getLogger(__name__)


def package_for_product(product_id: Optional[str]) -> Optional[CreditPackage]:
    for name, configured in settings.DODO_CREDIT_PRODUCT_IDS.items():
        if configured == product_id:
            return get_credit_package(name)
    return None


def credits_for_payment(event: PaymentEvent) -> tuple:
    """
    Work out how many credits a one-time payment buys.

    Returns:
        (credits, package) where package may be None
    """
    raw = event.metadata.get('credits')
    package = get_credit_package(event.metadata.get('package')) or package_for_product(event.product_id)

    if raw is not None:
        try:
            return int(raw), package
        except (TypeError, ValueError):
            raise MalformedEventError(
                f"metadata.credits is not a number: {raw!r}", event_id=event.id, event_type=event.type
            )
    if package is not None:
        return package.total_credits, package
    if event.amount:
        return event.amount // 100 * CREDITS_PER_CURRENCY_UNIT, None
    return 0, None


class PaymentHandler:
    """
    Handler for Dodo payment webhook events.

    Usage:
        handler = PaymentHandler(grants, correlator, subscription_handler)
        await handler.handle_payment_succeeded(event)
    """

    def __init__(
        self,
        grants: GrantManager,
        correlator: CheckoutCorrelator,
        subscriptions: SubscriptionHandler,
    ):
        self.grants = grants
        self.correlator = correlator
        self.subscriptions = subscriptions

    async def handle_payment_succeeded(self, event: PaymentEvent) -> Optional[GrantResult]:
        if event.subscription_id:
            logger.info(f"[PAYMENT] Payment {event.payment_id} for subscription {event.subscription_id}")
            return await self.subscriptions.handle_subscription_active(event, source='subscription_payment')

        return await self.handle_top_up(event)

    async def handle_top_up(self, event: PaymentEvent) -> Optional[GrantResult]:
        """Grant permanent credits for a one-time purchase, keyed by payment id."""
        if not event.payment_id:
            raise MalformedEventError("Payment event has no payment_id", event_id=event.id, event_type=event.type)

        credits, package = credits_for_payment(event)
        if credits <= 0:
            logger.warning(f"[PAYMENT] Payment {event.payment_id} carries no credits, nothing to grant")
            return None

        user_id = await self.correlator.resolve_user(event, allow_pending=False)
        result = await self.grants.grant_purchase_credits(
            user_id=user_id,
            credits=credits,
            payment_id=event.payment_id,
            package=package,
            amount_paid=event.amount,
            currency=event.currency,
        )

        if not result.duplicate:
            logger.info(f"[PAYMENT] Top-up {event.payment_id}: {credits:,} credits to {user_id}")
        return result

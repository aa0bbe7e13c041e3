"""
Subscriptions Module

User-initiated subscription operations and pending-checkout correlation.

Usage:
    from credit_ledger.src.billing.subscriptions import subscription_service

    status = await subscription_service.get_status(user_id)
"""

from .correlation import CheckoutCorrelator
from .service import SubscriptionService, subscription_service

__all__ = [
    'CheckoutCorrelator',
    'SubscriptionService',
    'subscription_service',
]

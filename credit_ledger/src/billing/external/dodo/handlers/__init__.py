"""
Dodo Payments Webhook Handlers

- SubscriptionHandler: subscription lifecycle events
- PaymentHandler: payment events (renewal payments and top-ups)
"""

from .payment import PaymentHandler
from .subscription import SubscriptionHandler

__all__ = [
    'PaymentHandler',
    'SubscriptionHandler',
]

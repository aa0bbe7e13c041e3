"""Domain entities for billing module."""

from .credit_grant import CreditBalance, CreditGrant, CreditTransaction, GrantKind, TransactionType
from .payment_event import PaymentEvent, WebhookEventRecord, WebhookEventStatus
from .subscription import PendingCheckout, Subscription, SubscriptionStatus, preserve_billing_date

__all__ = [
    'CreditBalance',
    'CreditGrant',
    'CreditTransaction',
    'GrantKind',
    'TransactionType',
    'PaymentEvent',
    'WebhookEventRecord',
    'WebhookEventStatus',
    'PendingCheckout',
    'Subscription',
    'SubscriptionStatus',
    'preserve_billing_date',
]

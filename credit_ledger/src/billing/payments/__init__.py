"""Payment provider interfaces and one-time credit purchases."""

from .interfaces import CheckoutLink, PaymentProviderInterface, ProviderSubscription

__all__ = [
    'CheckoutLink',
    'PaymentProviderInterface',
    'ProviderSubscription',
]

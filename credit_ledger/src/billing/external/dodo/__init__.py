"""
Dodo Payments Integration Module

- DodoPaymentsClient: API wrapper with retry/backoff
- WebhookService: signature verification, deduplication and routing
- WebhookLock: event-level processing records
"""

from .client import DodoPaymentsClient, dodo_client
from .webhook_lock import WebhookLock
from .webhooks import WebhookService, webhook_service

__all__ = [
    'DodoPaymentsClient',
    'dodo_client',
    'WebhookLock',
    'WebhookService',
    'webhook_service',
]

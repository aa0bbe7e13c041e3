"""
Dodo Payments Webhook Service

Central dispatcher for Dodo webhook events.
Handles signature verification, deduplication, and routing to handlers.

Outcomes returned to the endpoint:
- applied / duplicate: 200, the provider stops retrying
- user not resolvable: parked as dead letter, 202
- event held by another worker: EventInProgressError (409), the provider retries
- handler failure: marked failed and re-raised, the provider retries
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from standardwebhooks.webhooks import Webhook, WebhookVerificationError

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.credits.grants import GrantManager
from credit_ledger.src.billing.domain import PaymentEvent, WebhookEventRecord, WebhookEventStatus
from credit_ledger.src.billing.domain.credit_grant import utcnow
from credit_ledger.src.billing.payments.interfaces import PaymentProviderInterface
from credit_ledger.src.billing.shared.exceptions import (
    UserResolutionFailedError,
    WebhookConfigurationError,
    WebhookError,
    WebhookEventNotFoundError,
    WebhookSignatureError,
)
from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

from .handlers import PaymentHandler, SubscriptionHandler
from .webhook_lock import WebhookLock

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ('webhook-id', 'webhook-timestamp', 'webhook-signature')


class WebhookService:
    """
    Central service for processing Dodo Payments webhooks.

    Usage:
        webhook_service = WebhookService(store, provider)
        result = await webhook_service.process_webhook(body, headers)
    """

    def __init__(
        self,
        store=None,
        provider: Optional[PaymentProviderInterface] = None,
        webhook_secret: Optional[str] = None,
        verify_signatures: Optional[bool] = None,
    ):
        self._store = store
        self._provider = provider
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.DODO_WEBHOOK_SECRET
        if verify_signatures is None:
            verify_signatures = settings.DODO_WEBHOOK_VERIFY or settings.ENVIRONMENT == 'prod'
        self.verify_signatures = verify_signatures
        self._handlers = None

    @property
    def store(self):
        if self._store is None:
            from credit_ledger.src.billing.ledger import get_ledger_store

            self._store = get_ledger_store()
        return self._store

    @property
    def provider(self) -> PaymentProviderInterface:
        if self._provider is None:
            from .client import dodo_client

            self._provider = dodo_client
        return self._provider

    @property
    def lock(self) -> WebhookLock:
        return WebhookLock(self.store)

    def _get_handlers(self):
        if self._handlers is None:
            grants = GrantManager(self.store)
            correlator = CheckoutCorrelator(self.store)
            subscriptions = SubscriptionHandler(self.store, grants, self.provider, correlator)
            payments = PaymentHandler(grants, correlator, subscriptions)
            self._handlers = (subscriptions, payments)
        return self._handlers

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def process_webhook(self, body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Process an incoming Dodo webhook.

        Args:
            body: Raw request body (signature is computed over these bytes)
            headers: Request headers

        Returns:
            Dict with processing status

        Raises:
            WebhookSignatureError: signature headers missing or invalid
            MalformedEventError: body cannot be interpreted
            EventInProgressError: another worker is processing the event
        """
        headers = {k.lower(): v for k, v in headers.items()}
        self.verify_signature(body, headers)

        event = PaymentEvent.from_body(body, headers)

        can_process, reason = await self.lock.check_and_mark_processing(event)
        if not can_process:
            logger.info(f"[WEBHOOK] Skipping event {event.id}: {reason}")
            return {'status': 'duplicate', 'event_id': event.id, 'message': reason}

        logger.info(f"[WEBHOOK] Processing event type: {event.type} (ID: {event.id})")
        return await self._apply(event)

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        if not self.verify_signatures:
            logger.warning("[WEBHOOK] Signature verification disabled")
            return

        if not self.webhook_secret:
            logger.error("[WEBHOOK] DODO_WEBHOOK_SECRET not configured")
            raise WebhookConfigurationError()

        missing = [name for name in SIGNATURE_HEADERS if not headers.get(name)]
        if missing:
            raise WebhookSignatureError(f"Missing webhook headers: {', '.join(missing)}")

        try:
            Webhook(self.webhook_secret).verify(body, {name: headers[name] for name in SIGNATURE_HEADERS})
        except WebhookVerificationError as e:
            logger.warning(f"[WEBHOOK] Invalid signature for {headers.get('webhook-id')}: {e}")
            raise WebhookSignatureError(event_id=headers.get('webhook-id'))

    async def _apply(self, event: PaymentEvent) -> Dict[str, Any]:
        try:
            await self._route_event(event)
        except UserResolutionFailedError as e:
            await self.lock.mark_dead_letter(event.id, e.message)
            return {'status': 'dead_letter', 'event_id': event.id, 'message': e.message}
        except Exception as e:
            logger.error(f"[WEBHOOK] Error processing event {event.id}: {e}", exc_info=True)
            await self.lock.mark_failed(event.id, f"{type(e).__name__}: {str(e)[:500]}")
            raise

        await self.lock.mark_completed(event.id)
        return {'status': 'success', 'event_id': event.id}

    async def _route_event(self, event: PaymentEvent) -> None:
        """Route event to the appropriate handler."""
        event_type = event.type
        subscriptions, payments = self._get_handlers()

        if event_type == 'subscription.active':
            await subscriptions.handle_subscription_active(event)

        elif event_type == 'subscription.renewed':
            await subscriptions.handle_subscription_renewed(event)

        elif event_type == 'subscription.plan_changed':
            await subscriptions.handle_plan_changed(event)

        elif event_type == 'subscription.cancelled':
            await subscriptions.handle_subscription_cancelled(event)

        elif event_type in ('subscription.expired', 'subscription.failed'):
            await subscriptions.handle_subscription_ended(event)

        elif event_type == 'subscription.on_hold':
            await subscriptions.handle_subscription_on_hold(event)

        elif event_type == 'payment.succeeded':
            await payments.handle_payment_succeeded(event)

        elif event_type in ('payment.failed', 'payment.processing', 'payment.cancelled'):
            logger.info(f"[WEBHOOK] {event_type} for payment {event.payment_id} - logged only")

        else:
            logger.debug(f"[WEBHOOK] Unhandled event type: {event_type}")

    # =========================================================================
    # DEAD LETTERS
    # =========================================================================

    async def list_dead_letters(self, limit: int = 100) -> List[WebhookEventRecord]:
        async with self.store.transaction() as tx:
            return await tx.list_webhook_events(WebhookEventStatus.DEAD_LETTER, limit=limit)

    async def replay_dead_letter(self, event_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Re-run a dead-lettered event.

        Args:
            event_id: Stored event id
            user_id: Operator-supplied user to attribute the event to

        Raises:
            WebhookEventNotFoundError: unknown event id
            WebhookError: the event is not on the dead-letter list
        """
        record = await self.lock.get_event(event_id)
        if record is None:
            raise WebhookEventNotFoundError(event_id)
        if record.status != WebhookEventStatus.DEAD_LETTER:
            raise WebhookError(
                f"Event is {record.status.value}, only dead letters can be replayed",
                code="NOT_DEAD_LETTER",
                event_id=event_id,
                event_type=record.event_type,
            )

        event = PaymentEvent.from_dict(record.payload, event_id=record.id)
        if user_id:
            event.data['metadata'] = {**event.metadata, 'userId': user_id}

        record.status = WebhookEventStatus.PROCESSING
        record.attempts += 1
        record.updated_at = utcnow()
        if user_id:
            record.payload = event.to_dict()
        async with self.store.transaction() as tx:
            await tx.save_webhook_event(record)

        logger.info(f"[WEBHOOK] Replaying dead letter {event_id} ({record.event_type}) user={user_id}")
        return await self._apply(event)


# Global instance
webhook_service = WebhookService()

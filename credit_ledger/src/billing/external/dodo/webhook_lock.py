"""
Webhook Lock and Deduplication

Tracks provider events in the ``webhook_events`` table so that each event
id is applied once, even with several workers receiving redeliveries.

Status flow:
    (new) -> processing -> completed
                        -> failed       (retried on the next delivery)
                        -> dead_letter  (user could not be resolved; admin replay)
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.domain import PaymentEvent, WebhookEventRecord, WebhookEventStatus
from credit_ledger.src.billing.domain.credit_grant import utcnow
from credit_ledger.src.billing.shared.exceptions import EventInProgressError

logger = logging.getLogger(__name__)


class WebhookLock:
    """
    Event-level lock backed by the ledger store.

    Usage:
        lock = WebhookLock(store)
        can_process, reason = await lock.check_and_mark_processing(event)
    """

    def __init__(self, store, processing_timeout: Optional[int] = None):
        self.store = store
        self.processing_timeout = processing_timeout or settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS

    async def check_and_mark_processing(
        self,
        event: PaymentEvent,
        as_of: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        """
        Claim an event for processing.

        Returns:
            (can_process, reason). Completed and dead-lettered events are not
            processed again.

        Raises:
            EventInProgressError: another worker claimed the event recently
        """
        now = as_of or utcnow()
        async with self.store.transaction() as tx:
            existing = await tx.get_webhook_event(event.id)

            if existing is not None:
                if existing.status == WebhookEventStatus.COMPLETED:
                    return False, "Event already processed"
                if existing.status == WebhookEventStatus.DEAD_LETTER:
                    return False, "Event parked on the dead-letter list"
                if existing.status == WebhookEventStatus.PROCESSING:
                    age = (now - existing.updated_at).total_seconds()
                    if age < self.processing_timeout:
                        raise EventInProgressError(event.id, event.type)
                    logger.warning(f"[WEBHOOK LOCK] Event {event.id} stuck in processing for {age:.0f}s, retrying")
                else:
                    logger.info(f"[WEBHOOK LOCK] Retrying failed event {event.id} (attempt {existing.attempts + 1})")

                existing.status = WebhookEventStatus.PROCESSING
                existing.attempts += 1
                existing.error_message = None
                existing.updated_at = now
                await tx.save_webhook_event(existing)
                return True, "Processing"

            await tx.save_webhook_event(WebhookEventRecord(
                id=event.id,
                event_type=event.type,
                status=WebhookEventStatus.PROCESSING,
                payload=event.to_dict(),
                created_at=now,
                updated_at=now,
            ))
        return True, "Processing"

    async def mark_completed(self, event_id: str) -> None:
        await self._set_status(event_id, WebhookEventStatus.COMPLETED)
        logger.debug(f"[WEBHOOK LOCK] Marked event {event_id} as completed")

    async def mark_failed(self, event_id: str, error_message: str) -> None:
        await self._set_status(event_id, WebhookEventStatus.FAILED, error_message[:1000])
        logger.warning(f"[WEBHOOK LOCK] Marked event {event_id} as failed: {error_message[:100]}")

    async def mark_dead_letter(self, event_id: str, error_message: str) -> None:
        await self._set_status(event_id, WebhookEventStatus.DEAD_LETTER, error_message[:1000])
        logger.warning(f"[WEBHOOK LOCK] Event {event_id} moved to dead letters: {error_message[:100]}")

    async def get_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        async with self.store.transaction() as tx:
            return await tx.get_webhook_event(event_id)

    async def _set_status(
        self,
        event_id: str,
        status: WebhookEventStatus,
        error_message: Optional[str] = None,
    ) -> None:
        now = utcnow()
        async with self.store.transaction() as tx:
            record = await tx.get_webhook_event(event_id)
            if record is None:
                logger.warning(f"[WEBHOOK LOCK] No record for event {event_id}, cannot mark {status.value}")
                return
            record.status = status
            record.error_message = error_message
            record.updated_at = now
            record.completed_at = now if status == WebhookEventStatus.COMPLETED else record.completed_at
            await tx.save_webhook_event(record)

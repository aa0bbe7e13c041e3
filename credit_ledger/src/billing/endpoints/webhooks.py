"""
Webhook Endpoints

Dodo Payments webhook endpoint for processing billing events.
"""

import logging

from fastapi import APIRouter, Depends, Request, Response, status

from .dependencies import get_webhook_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["billing-webhooks"])


@router.post("/webhook")
async def dodo_webhook(
    request: Request,
    response: Response,
    service=Depends(get_webhook_service),
):
    """
    Process Dodo Payments webhook events.

    Handles:
    - subscription.active / renewed / plan_changed
    - subscription.cancelled / expired / failed / on_hold
    - payment.succeeded (renewals and credit top-ups)

    Events that cannot be attributed to a user are parked and answered
    with 202 so the provider stops retrying.
    """
    body = await request.body()
    result = await service.process_webhook(body, request.headers)
    if result.get('status') == 'dead_letter':
        response.status_code = status.HTTP_202_ACCEPTED
    return result

"""
Admin Endpoints

Operator endpoints guarded by the ``X-Admin-Token`` header:
manual grants, maintenance runs and the webhook dead-letter list.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.credits import CreditLedger

from .dependencies import get_credit_ledger, get_webhook_service, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["billing-admin"], dependencies=[Depends(require_admin)])


# ============================================================================
# Request Models
# ============================================================================

class AdminGrantRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, le=settings.ADMIN_GRANT_MAX_CREDITS)
    reason: str = Field(..., min_length=1)
    idempotency_key: Optional[str] = None
    expires_at: Optional[datetime] = None


class SweepRequest(BaseModel):
    as_of: Optional[datetime] = None


class ReplayRequest(BaseModel):
    user_id: Optional[str] = None


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/credits/grant")
async def admin_grant_credits(
    request: AdminGrantRequest,
    admin: str = Depends(require_admin),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> Dict:
    logger.info(f"[ADMIN] Granting {request.amount} credits to {request.user_id}: {request.reason}")
    result = await ledger.grants.grant_admin_credits(
        user_id=request.user_id,
        credits=request.amount,
        reason=request.reason,
        granted_by=admin,
        idempotency_key=request.idempotency_key,
        expires_at=request.expires_at,
    )
    return result.to_dict()


@router.post("/sweep")
async def admin_sweep(
    request: SweepRequest,
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> Dict:
    """Run expiration, cancellation finalisation and yearly cycle allocation now."""
    result = await ledger.run_maintenance(as_of=request.as_of)
    return result.to_dict()


@router.get("/webhooks/dead-letters")
async def list_dead_letters(
    limit: int = Query(100, ge=1, le=500),
    service=Depends(get_webhook_service),
) -> Dict:
    records = await service.list_dead_letters(limit=limit)
    return {'events': [record.to_dict() for record in records]}


@router.post("/webhooks/dead-letters/{event_id}/replay")
async def replay_dead_letter(
    event_id: str,
    request: ReplayRequest,
    service=Depends(get_webhook_service),
) -> Dict:
    return await service.replay_dead_letter(event_id, user_id=request.user_id)

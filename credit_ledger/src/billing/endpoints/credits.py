"""
Credit Endpoints

Balance, history, deduction and availability checks for the signed-in user.
"""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from credit_ledger.src.billing.credits import CreditLedger
from credit_ledger.src.billing.credits.schemas import (
    BalanceBySource,
    BalanceResponse,
    CamelModel,
    CreditCheckResponse,
    DeductCreditsParams,
    DeductionResponse,
    HistoryResponse,
    TransactionResponse,
)
from credit_ledger.src.billing.shared.exceptions import LedgerStorageError

from .dependencies import get_credit_ledger, get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["billing-credits"])


# ============================================================================
# Request Models
# ============================================================================

class DeductRequest(CamelModel):
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=64)
    description: str | None = None
    idempotency_key: str | None = None


class CreditCheckRequest(CamelModel):
    amount: int = Field(..., gt=0)


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/balance", response_model=BalanceResponse, response_model_by_alias=True)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> BalanceResponse:
    """
    Current balance. A storage failure is reported as ``available: false``
    rather than a made-up number.
    """
    try:
        balance = await ledger.get_balance(user_id)
    except LedgerStorageError as e:
        logger.error(f"[CREDITS] Balance unavailable for {user_id}: {e.message}")
        return BalanceResponse(available=False)

    return BalanceResponse(
        total=balance.total,
        by_source=BalanceBySource(
            subscription_credits=balance.subscription_credits,
            permanent_credits=balance.permanent_credits,
        ),
        next_expiry=balance.next_expiry,
    )


@router.get("/history", response_model=HistoryResponse, response_model_by_alias=True)
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> HistoryResponse:
    transactions = await ledger.get_history(user_id, limit=limit, offset=offset)
    return HistoryResponse(
        transactions=[
            TransactionResponse(
                id=t.id,
                amount=t.amount,
                type=t.type.value,
                reason=t.reason,
                description=t.description,
                balance_before=t.balance_before,
                balance_after=t.balance_after,
                created_at=t.created_at,
            )
            for t in transactions
        ],
        limit=limit,
        offset=offset,
    )


@router.post("/deduct", response_model=DeductionResponse, response_model_by_alias=True)
async def deduct_credits(
    request: DeductRequest,
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> DeductionResponse:
    """Debit credits for a job. Insufficient funds answer 402."""
    result = await ledger.deduct_credits(DeductCreditsParams(
        user_id=user_id,
        amount=request.amount,
        reason=request.reason,
        description=request.description,
        idempotency_key=request.idempotency_key,
    ))
    return DeductionResponse(
        success=result.success,
        duplicate=result.duplicate,
        grant_id=result.grant_id,
        amount=result.amount,
        new_balance=result.new_balance,
    )


@router.post("/check", response_model=CreditCheckResponse, response_model_by_alias=True)
async def check_credits(
    request: CreditCheckRequest,
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> CreditCheckResponse:
    balance = await ledger.get_balance(user_id)
    return CreditCheckResponse(
        has_enough_credits=balance.total >= request.amount,
        required=request.amount,
        available=balance.total,
    )

"""
Subscription Endpoints

API endpoints for subscription management and credit top-up checkouts.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from credit_ledger.src.billing.shared.config import CREDIT_PACKAGES, list_plans

from .dependencies import get_current_user_id, get_subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["billing-subscriptions"])


# ============================================================================
# Request Models
# ============================================================================

class BillingAddress(BaseModel):
    """Billing address forwarded to the Dodo checkout."""
    country: str
    city: Optional[str] = None
    state: Optional[str] = None
    street: Optional[str] = None
    zipcode: Optional[str] = None


class CreateCheckoutRequest(BaseModel):
    """Request for a subscription checkout."""
    plan: str
    billing_period: str = 'monthly'
    email: str
    name: Optional[str] = None
    billing: BillingAddress
    return_url: Optional[str] = None


class TopUpCheckoutRequest(BaseModel):
    """Request for a one-time credit package checkout."""
    package: str
    email: str
    name: Optional[str] = None
    billing: BillingAddress
    return_url: Optional[str] = None


class ChangePlanRequest(BaseModel):
    plan: str
    billing_period: Optional[str] = None


# ============================================================================
# Endpoints
# ============================================================================

@router.get("")
async def get_subscription(
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    return await service.get_status(user_id)


@router.get("/plans")
async def get_plans() -> Dict:
    """Plan catalogue and credit packages."""
    return {
        'plans': [plan.to_dict() for plan in list_plans()],
        'credit_packages': [
            {
                'name': package.name,
                'credits': package.credits,
                'bonus': package.bonus,
                'total_credits': package.total_credits,
                'price': package.price,
                'currency': package.currency,
            }
            for package in CREDIT_PACKAGES.values()
        ],
    }


@router.post("/checkout")
async def create_checkout(
    request: CreateCheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    result = await service.register_checkout(
        user_id=user_id,
        plan=request.plan,
        billing_period=request.billing_period,
        email=request.email,
        name=request.name,
        billing=request.billing.model_dump(exclude_none=True),
        return_url=request.return_url,
    )
    return {'success': True, **result}


@router.post("/top-up")
async def create_top_up_checkout(
    request: TopUpCheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    result = await service.create_top_up_checkout(
        user_id=user_id,
        package=request.package,
        email=request.email,
        name=request.name,
        billing=request.billing.model_dump(exclude_none=True),
        return_url=request.return_url,
    )
    return {'success': True, **result}


@router.post("/cancel")
async def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """Cancel at period end; credits and plan stay usable until then."""
    return await service.cancel(user_id)


@router.post("/reactivate")
async def reactivate_subscription(
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    return await service.reactivate(user_id)


@router.post("/change-plan")
async def change_plan(
    request: ChangePlanRequest,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """Upgrade or downgrade; upgrades are prorated immediately."""
    return await service.change_plan(user_id, request.plan, request.billing_period)

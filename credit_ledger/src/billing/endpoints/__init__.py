"""
Billing Endpoints Module

API routes for the credit ledger.

Routers:
- credits: Balance, history, deductions
- subscriptions: Subscription management and top-up checkouts
- webhooks: Dodo Payments webhook processing
- admin: Operator endpoints

Usage:
    from credit_ledger.src.billing.endpoints import billing_router

    app.include_router(billing_router, prefix="/api/v1")
"""

from fastapi import APIRouter

from .admin import router as admin_router
from .credits import router as credits_router
from .dependencies import get_current_user_id, require_admin
from .subscriptions import router as subscriptions_router
from .webhooks import router as webhooks_router

# Create main billing router
billing_router = APIRouter()

# Include all sub-routers
billing_router.include_router(credits_router)
billing_router.include_router(subscriptions_router)
billing_router.include_router(webhooks_router)
billing_router.include_router(admin_router)

__all__ = [
    'billing_router',
    'admin_router',
    'credits_router',
    'subscriptions_router',
    'webhooks_router',
    'get_current_user_id',
    'require_admin',
]

"""
Endpoint Dependencies

Shared dependencies for billing API endpoints. Every service is provided
through a dependency so tests can override it.
"""

import logging
import secrets
from typing import Optional

import jwt

from fastapi import Header, HTTPException

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.credits import CreditLedger
from credit_ledger.src.billing.ledger import get_ledger_store

logger = logging.getLogger(__name__)


async def get_current_user_id(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> str:
    """
    Extract and verify the user id (``sub``) from the bearer token issued by
    the auth service.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    token = authorization[7:] if authorization.startswith("Bearer ") else authorization

    try:
        if settings.AUTH_JWT_SECRET:
            decoded = jwt.decode(
                token,
                settings.AUTH_JWT_SECRET,
                algorithms=[settings.AUTH_JWT_ALGORITHM],
                audience=settings.AUTH_JWT_AUDIENCE,
                options={'verify_aud': settings.AUTH_JWT_AUDIENCE is not None},
            )
        elif not settings.AUTH_JWT_VERIFY and settings.ENVIRONMENT == 'dev':
            logger.warning("[AUTH] Signature verification disabled, accepting unsigned token")
            decoded = jwt.decode(token, options={'verify_signature': False})
        else:
            logger.error("[AUTH] AUTH_JWT_SECRET not configured")
            raise HTTPException(status_code=500, detail="Auth not configured")
    except jwt.InvalidTokenError as e:
        logger.warning(f"[AUTH] Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = decoded.get('sub') or decoded.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return str(user_id)


async def require_admin(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")
) -> str:
    """Gate for operator endpoints; returns an identifier for audit metadata."""
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(status_code=403, detail="Invalid admin token")
    return 'admin_api'


def get_credit_ledger() -> CreditLedger:
    return CreditLedger(get_ledger_store())


def get_subscription_service():
    from credit_ledger.src.billing.subscriptions import subscription_service

    return subscription_service


def get_webhook_service():
    from credit_ledger.src.billing.external.dodo import webhook_service

    return webhook_service

"""
Paywall dependency for routes that need an active entitlement.
"""
import logging

from fastapi import Depends, HTTPException, status

from auth import get_current_user
from database_models import User
from services.access_service import evaluate_access

logger = logging.getLogger(__name__)


async def require_active_subscription(user: User = Depends(get_current_user)) -> User:
    """
    Let the request through when the user currently has access.

    Unauthenticated requests fail with 401 inside get_current_user; users
    without access get 402 with a code the frontend can route on
    (PAYMENT_REQUIRED, TRIAL_EXPIRED, FREE_ACCESS_EXPIRED, PAYMENT_FAILED).
    """
    decision = evaluate_access(user)
    if decision.has_access:
        return user

    logger.info(f"Access denied for user {user.id}: {decision.status_label} ({decision.denial_code})")
    raise HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "code": decision.denial_code or "PAYMENT_REQUIRED",
            "message": decision.message,
            "status": decision.status_label,
            "subscriptionRequired": True,
        },
    )

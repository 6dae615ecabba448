"""
Promo and account-access endpoints
"""
import logging

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from backend.utils.responses import FAILURE_STATUS, failure_code
from database import get_db
from database_models import User
from services.access_service import evaluate_access
from services.billing_service import status_payload
from services.promo_service import PromoService
from utils.paywall import require_active_subscription

logger = logging.getLogger(__name__)

promo_router = APIRouter(prefix="/api", tags=["promo"])


@promo_router.post("/apply-promo-code")
async def apply_promo_code(
    code: str = Body(default="", embed=True),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Apply a promo code. Responds with {success, message}."""
    result = await PromoService(db).apply_code(user, code)
    if result.is_error:
        return JSONResponse(
            status_code=FAILURE_STATUS.get(failure_code(result), 400),
            content={"success": False, "message": result.message},
        )

    grant = result.value
    return {
        "success": True,
        "message": grant.message,
        "kind": grant.kind.value,
        "endDate": grant.end_date.isoformat() if grant.end_date else None,
    }


@promo_router.get("/user/trial-status")
async def trial_status(user: User = Depends(get_current_user)):
    """Stored entitlement, evaluated now, without contacting Stripe."""
    return {"ok": True, **status_payload(user, decision=evaluate_access(user))}


@promo_router.get("/access-check")
async def access_check(user: User = Depends(require_active_subscription)):
    """Paywalled check: 200 when the user may use the business tools, 402 otherwise."""
    return {"ok": True, "status": "allowed", "user_id": str(user.id)}

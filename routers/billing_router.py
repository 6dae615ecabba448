"""
Billing Router - API endpoints for Stripe billing integration
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from backend.utils.responses import error_response, failure_code, failure_response
from config import settings
from crud.user import UserRepository
from database import get_db, get_session_factory
from database_models import User
from services.billing_service import BillingFailure, BillingService, status_payload
from services.checkout_poller import CheckoutPollRegistry, CheckoutVerificationPoller
from services.promo_service import GrantKind, lookup_code, MSG_INVALID_CODE

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/stripe", tags=["billing"])


def get_poll_registry(request: Request) -> CheckoutPollRegistry:
    """The app-owned registry of running checkout polls."""
    registry = getattr(request.app.state, "checkout_polls", None)
    if registry is None:
        registry = CheckoutPollRegistry()
        request.app.state.checkout_polls = registry
    return registry


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Handle Stripe webhook events with signature verification.

    Unverifiable requests are rejected with 400 and change nothing. Verified
    events are acknowledged with 200, except transient provider failures,
    which return 503 so Stripe redelivers the event.
    """
    webhook_secret = settings.stripe_webhook_secret
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET environment variable is not set")
        return error_response("webhook_not_configured", status=400, message="Webhook secret not configured")

    # Get raw request body (required for signature verification)
    payload = await request.body()

    stripe_signature = request.headers.get("stripe-signature")
    if not stripe_signature:
        logger.error("Missing Stripe-Signature header")
        return error_response("missing_signature", status=400, message="Missing signature header")

    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, webhook_secret)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Stripe webhook signature verification failed: {e}")
        return error_response("invalid_signature", status=400, message="Invalid webhook signature")
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        return error_response("invalid_payload", status=400, message="Invalid payload format")

    result = await BillingService(db).process_webhook(event)
    if result.is_error and result.error == BillingFailure.TRANSIENT:
        return JSONResponse(
            status_code=503,
            content={"ok": False, "received": True, "error": failure_code(result)},
        )

    return JSONResponse(
        status_code=200,
        content={
            "ok": not result.is_error,
            "received": True,
            "event_type": event["type"],
        }
    )


@billing_router.post("/create-checkout-session")
async def create_checkout_session(
    promo_code: Optional[str] = Body(default=None, embed=True),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a Stripe Checkout session for the current user.
    An optional discount promo code is applied to the session.
    """
    promotion_code_id = None
    if promo_code and promo_code.strip():
        definition = lookup_code(promo_code)
        if definition is None or definition.kind != GrantKind.DISCOUNT:
            return error_response("invalid_code", status=400, message=MSG_INVALID_CODE)
        promotion_code_id = definition.promotion_code_id

    result = await BillingService(db).create_checkout_session(user, promotion_code_id)
    if result.is_error:
        return failure_response(result)
    return {"ok": True, "sessionId": result.value["session_id"], "url": result.value["url"]}


@billing_router.post("/create-portal-session")
async def create_billing_portal_session(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await BillingService(db).create_billing_portal_session(user)
    if result.is_error:
        return failure_response(result)
    return {"ok": True, "url": result.value}


@billing_router.get("/subscription")
async def get_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Current subscription status. Refreshes from Stripe when the user has a
    billing account; if Stripe can't be reached the stored state is returned
    with stale=true.
    """
    snapshot = None
    stale = False
    if user.stripe_customer_id or user.stripe_subscription_id:
        result = await BillingService(db).reconcile(user)
        if result.is_error:
            stale = result.error in (
                BillingFailure.TRANSIENT,
                BillingFailure.PROVIDER_ERROR,
                BillingFailure.UNMAPPED_STATUS,
                BillingFailure.NOT_CONFIGURED,
            )
        else:
            snapshot = result.value

    return {"ok": True, "stale": stale, **status_payload(user, snapshot)}


@billing_router.post("/sync-subscription")
async def sync_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Manually pull the subscription from Stripe."""
    logger.info(f"Manually syncing subscription for user {user.email}")
    result = await BillingService(db).reconcile(user)
    if result.is_error:
        return failure_response(result, data=status_payload(user))
    return {"ok": True, "subscriptionId": result.value.subscription_id, **status_payload(user, result.value)}


@billing_router.post("/cancel-subscription")
async def cancel_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await BillingService(db).cancel_subscription(user)
    if result.is_error:
        return failure_response(result)
    return {
        **status_payload(user, result.value),
        "ok": True,
        "message": "Subscription will be cancelled at period end",
    }


@billing_router.post("/reactivate-subscription")
async def reactivate_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await BillingService(db).reactivate_subscription(user)
    if result.is_error:
        return failure_response(result)
    return {
        **status_payload(user, result.value),
        "ok": True,
        "message": "Subscription reactivated successfully",
    }


@billing_router.get("/verify-session/{session_id}")
async def verify_session(
    session_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
    registry: CheckoutPollRegistry = Depends(get_poll_registry),
):
    """
    Called by the checkout success page. Reconciles every
    CHECKOUT_POLL_INTERVAL_SECONDS, up to CHECKOUT_POLL_MAX_ATTEMPTS times,
    until Stripe reports the subscription as trialing or active.
    """
    user_id = user.id

    async def poll():
        # Own session: the poll may outlive the request that started it
        async with session_factory() as poll_db:
            poll_user = await UserRepository(poll_db).get_user_by_id(user_id)
            service = BillingService(poll_db)
            poller = CheckoutVerificationPoller(
                lambda: service.verify_checkout_session(poll_user, session_id),
                interval=settings.checkout_poll_interval_seconds,
                max_attempts=settings.checkout_poll_max_attempts,
                stop_on=(BillingFailure.SESSION_NOT_OWNED, BillingFailure.NOT_CONFIGURED),
            )
            return await poller.run()

    result = await registry.run(f"{user_id}:{session_id}", poll)

    await db.refresh(user)
    if result.is_error:
        return failure_response(result, data=status_payload(user))
    return {"ok": True, **status_payload(user, result.value)}

"""
HTTP tests for the billing, promo and paywall endpoints
"""
import hashlib
import hmac
import json
import time
from datetime import timedelta
from unittest.mock import patch

import pytest
import stripe

from config import settings
from models.subscription import utcnow
from tests.conftest import TEST_PASSWORD, auth_headers
from tests.test_billing_service import STRIPE_KEY, checkout_session, stripe_subscription


def signed_webhook(payload: dict, secret: str):
    body = json.dumps(payload)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return body, f"t={timestamp},v1={signature}"


@pytest.mark.asyncio
async def test_signup_promo_then_me(client):
    """A new owner applies CLIENT6FREE and immediately has 180 days of access."""
    signup = await client.post(
        "/api/auth/signup",
        json={"email": "new@salon.test", "password": TEST_PASSWORD, "name": "New Owner"},
    )
    assert signup.status_code == 200

    gated = await client.get("/api/access-check")
    assert gated.status_code == 402

    promo = await client.post("/api/apply-promo-code", json={"code": "client6free"})
    assert promo.status_code == 200
    assert promo.json()["success"] is True
    assert "180 days" in promo.json()["message"]

    me = await client.get("/api/auth/me")
    data = me.json()
    assert data["subscription_status"] == "free_access"
    assert data["has_access"] is True
    assert data["days_left"] == 180

    assert (await client.get("/api/access-check")).status_code == 200

    again = await client.post("/api/apply-promo-code", json={"code": "CLIENT6FREE"})
    assert again.status_code == 400
    assert again.json()["success"] is False


@pytest.mark.asyncio
async def test_reapplying_running_promo_is_a_bad_request(client, make_user):
    user = await make_user(subscription_status="free_access", subscription_end_date=utcnow() + timedelta(days=90))

    response = await client.post("/api/apply-promo-code", json={"code": "CLIENT6FREE"}, headers=auth_headers(user))

    assert response.status_code == 400
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_invalid_promo_code(client, make_user):
    user = await make_user()
    response = await client.post("/api/apply-promo-code", json={"code": "BOGUS"}, headers=auth_headers(user))
    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Invalid promo code. Please check your code and try again.",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("status, end_offset, code", [
    ("inactive", None, "PAYMENT_REQUIRED"),
    ("trial", -1, "TRIAL_EXPIRED"),
    ("free_access", None, "FREE_ACCESS_EXPIRED"),
    ("past_due", 10, "PAYMENT_FAILED"),
])
async def test_paywall_denials(client, make_user, status, end_offset, code):
    end_date = utcnow() + timedelta(days=end_offset) if end_offset is not None else None
    user = await make_user(subscription_status=status, subscription_end_date=end_date)

    response = await client.get("/api/access-check", headers=auth_headers(user))

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["code"] == code
    assert detail["subscriptionRequired"] is True
    assert detail["message"]


@pytest.mark.asyncio
async def test_paywall_requires_authentication(client):
    assert (await client.get("/api/access-check")).status_code == 401


@pytest.mark.asyncio
async def test_trial_status(client, make_user):
    user = await make_user(subscription_status="trial", subscription_end_date=utcnow() + timedelta(days=2, hours=3))

    response = await client.get("/api/user/trial-status", headers=auth_headers(user))

    data = response.json()
    assert data["hasAccess"] is True
    assert data["isTrial"] is True
    assert data["daysLeft"] == 3


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client, make_user):
    user = await make_user(stripe_customer_id="cus_123")

    with patch("stripe.Subscription.retrieve") as retrieve:
        response = await client.post(
            "/api/stripe/webhook",
            content=json.dumps({"type": "customer.subscription.updated"}),
            headers={"stripe-signature": "t=1,v1=deadbeef"},
        )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_signature"
    retrieve.assert_not_called()
    assert user.subscription_status == "inactive"


@pytest.mark.asyncio
async def test_webhook_rejects_missing_signature(client):
    response = await client.post("/api/stripe/webhook", content="{}")
    assert response.status_code == 400
    assert response.json()["error"] == "missing_signature"


@pytest.mark.asyncio
async def test_webhook_applies_subscription_update(client, make_user, test_db):
    user = await make_user(stripe_customer_id="cus_123")
    body, signature = signed_webhook({
        "id": "evt_1",
        "object": "event",
        "type": "customer.subscription.updated",
        "data": {"object": {"id": "sub_123", "object": "subscription", "customer": "cus_123", "status": "active"}},
    }, settings.stripe_webhook_secret)

    with patch("stripe.Subscription.retrieve", return_value=stripe_subscription(status="active")):
        response = await client.post("/api/stripe/webhook", content=body, headers={"stripe-signature": signature})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "received": True, "event_type": "customer.subscription.updated"}
    await test_db.refresh(user)
    assert user.subscription_status == "active"
    assert user.stripe_subscription_id == "sub_123"


@pytest.mark.asyncio
async def test_webhook_transient_failure_asks_for_redelivery(client, make_user):
    await make_user(stripe_customer_id="cus_123", stripe_subscription_id="sub_123")
    body, signature = signed_webhook({
        "id": "evt_2",
        "object": "event",
        "type": "invoice.payment_succeeded",
        "data": {"object": {"object": "invoice", "customer": "cus_123", "subscription": "sub_123"}},
    }, settings.stripe_webhook_secret)

    with patch("stripe.Subscription.retrieve", side_effect=stripe.APIConnectionError("down")):
        response = await client.post("/api/stripe/webhook", content=body, headers={"stripe-signature": signature})

    assert response.status_code == 503
    assert response.json()["received"] is True


@pytest.mark.asyncio
async def test_subscription_falls_back_to_stored_state_when_stripe_is_down(client, make_user):
    user = await make_user(
        subscription_status="trial",
        subscription_end_date=utcnow() + timedelta(days=5),
        stripe_customer_id="cus_123",
        stripe_subscription_id="sub_123",
    )

    with patch("stripe.Subscription.retrieve", side_effect=stripe.APIConnectionError("down")):
        response = await client.get("/api/stripe/subscription", headers=auth_headers(user))

    assert response.status_code == 200
    data = response.json()
    assert data["stale"] is True
    assert data["status"] == "trial"
    assert data["hasAccess"] is True


@pytest.mark.asyncio
async def test_sync_subscription(client, make_user):
    user = await make_user(stripe_customer_id="cus_123", stripe_subscription_id="sub_123")

    with patch("stripe.Subscription.retrieve", return_value=stripe_subscription(status="active")):
        response = await client.post("/api/stripe/sync-subscription", headers=auth_headers(user))

    data = response.json()
    assert data["ok"] is True
    assert data["subscriptionId"] == "sub_123"
    assert data["status"] == "active"
    assert data["amount"] == 2397


@pytest.mark.asyncio
async def test_cancel_subscription_keeps_access_until_period_end(client, make_user):
    user = await make_user(subscription_status="active", stripe_customer_id="cus_123", stripe_subscription_id="sub_123")

    with patch("stripe.Subscription.modify",
               return_value=stripe_subscription(status="active", cancel_at_period_end=True)) as modify:
        response = await client.post("/api/stripe/cancel-subscription", headers=auth_headers(user))

    assert modify.call_args.kwargs["cancel_at_period_end"] is True
    data = response.json()
    assert data["ok"] is True
    assert data["cancelAtPeriodEnd"] is True
    assert data["hasAccess"] is True
    assert data["message"] == "Subscription will be cancelled at period end"


@pytest.mark.asyncio
async def test_checkout_session_with_discount_code(client, make_user, monkeypatch):
    monkeypatch.setattr(settings, "promo_discount_codes", {"SALON20": "promo_abc"})
    monkeypatch.setattr(settings, "stripe_price_id", "price_123")
    user = await make_user(stripe_customer_id="cus_123")

    with patch("stripe.checkout.Session.create", return_value=stripe.checkout.Session.construct_from(
            {"id": "cs_1", "object": "checkout.session", "url": "https://checkout.test"}, STRIPE_KEY)) as create:
        response = await client.post(
            "/api/stripe/create-checkout-session",
            json={"promo_code": "salon20"},
            headers=auth_headers(user),
        )

    assert response.json() == {"ok": True, "sessionId": "cs_1", "url": "https://checkout.test"}
    assert create.call_args.kwargs["discounts"] == [{"promotion_code": "promo_abc"}]


@pytest.mark.asyncio
async def test_checkout_session_rejects_free_access_code(client, make_user):
    user = await make_user()
    with patch("stripe.checkout.Session.create") as create:
        response = await client.post(
            "/api/stripe/create-checkout-session",
            json={"promo_code": "CLIENT6FREE"},
            headers=auth_headers(user),
        )
    assert response.status_code == 400
    create.assert_not_called()


@pytest.mark.asyncio
async def test_verify_session_polls_until_trialing(client, make_user, monkeypatch):
    """Stripe reports the subscription on the third poll; the user ends up on trial."""
    monkeypatch.setattr(settings, "checkout_poll_interval_seconds", 0)
    user = await make_user(stripe_customer_id="cus_123")
    trial_end = int(time.time()) + 15 * 86400

    subscription = stripe_subscription(status="trialing", trial_end=trial_end)
    sessions = [
        checkout_session(user),
        checkout_session(user),
        checkout_session(user, subscription),
    ]
    with patch("stripe.checkout.Session.retrieve", side_effect=sessions) as retrieve_session, \
            patch("stripe.Subscription.retrieve", return_value=subscription):
        response = await client.get("/api/stripe/verify-session/cs_1", headers=auth_headers(user))

    assert retrieve_session.call_count == 3
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["status"] == "trial"
    assert data["isTrial"] is True
    assert data["daysLeft"] == 15


@pytest.mark.asyncio
async def test_verify_session_times_out(client, make_user, monkeypatch):
    monkeypatch.setattr(settings, "checkout_poll_interval_seconds", 0)
    monkeypatch.setattr(settings, "checkout_poll_max_attempts", 3)
    user = await make_user(stripe_customer_id="cus_123")

    with patch("stripe.checkout.Session.retrieve",
               return_value=checkout_session(user, session_id="cs_2")) as retrieve_session:
        response = await client.get("/api/stripe/verify-session/cs_2", headers=auth_headers(user))

    assert retrieve_session.call_count == 3
    assert response.status_code == 504
    body = response.json()
    assert body["error"] == "verification_timeout"
    assert "contact support" in body["message"]
    assert body["data"]["hasAccess"] is False


@pytest.mark.asyncio
async def test_verify_session_rejects_another_users_checkout(client, make_user, test_db, monkeypatch):
    """Verifying someone else's session id fails at once and leaves the caller unpaid."""
    monkeypatch.setattr(settings, "checkout_poll_interval_seconds", 0)
    victim = await make_user(email="victim@salon.test", subscription_status="active",
                             stripe_customer_id="cus_victim", stripe_subscription_id="sub_victim")
    attacker = await make_user(email="attacker@salon.test")
    session = checkout_session(victim, subscription="sub_victim", customer="cus_victim", session_id="cs_victim")

    with patch("stripe.checkout.Session.retrieve", return_value=session) as retrieve_session, \
            patch("stripe.Subscription.retrieve") as retrieve:
        response = await client.get("/api/stripe/verify-session/cs_victim", headers=auth_headers(attacker))

    assert response.status_code == 403
    assert response.json()["error"] == "session_not_owned"
    assert retrieve_session.call_count == 1
    retrieve.assert_not_called()

    await test_db.refresh(attacker)
    assert attacker.subscription_status == "inactive"
    assert attacker.stripe_customer_id is None
    assert attacker.stripe_subscription_id is None
    assert (await client.get("/api/access-check", headers=auth_headers(attacker))).status_code == 402

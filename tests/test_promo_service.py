"""
Tests for promo code resolution
"""
from datetime import timedelta

import pytest

from config import settings
from models.subscription import utcnow
from services.access_service import evaluate_access
from services.promo_service import GrantKind, PromoRejection, PromoService, lookup_code


@pytest.mark.asyncio
async def test_client6free_grants_180_days(test_db, make_user):
    user = await make_user()
    now = utcnow()

    result = await PromoService(test_db).apply_code(user, "CLIENT6FREE", now=now)

    assert not result.is_error
    assert result.value.kind == GrantKind.FREE_ACCESS
    assert "180 days" in result.value.message
    assert user.subscription_status == "free_access"
    assert user.subscription_end_date == now + timedelta(days=180)
    assert user.cancel_at_period_end is False
    assert user.promo_code == "CLIENT6FREE"

    decision = evaluate_access(user, now=now)
    assert decision.has_access is True
    assert decision.days_left == 180


@pytest.mark.asyncio
async def test_code_is_trimmed_and_case_insensitive(test_db, make_user):
    user = await make_user()
    result = await PromoService(test_db).apply_code(user, "  client6free ")
    assert not result.is_error
    assert user.subscription_status == "free_access"


@pytest.mark.asyncio
async def test_reapplying_active_code_does_not_extend(test_db, make_user):
    user = await make_user()
    now = utcnow()
    service = PromoService(test_db)

    first = await service.apply_code(user, "CLIENT6FREE", now=now)
    assert not first.is_error
    first_end = user.subscription_end_date

    second = await service.apply_code(user, "CLIENT6FREE", now=now + timedelta(days=1))
    assert second.is_error
    assert second.error == PromoRejection.ALREADY_ACTIVE
    assert user.subscription_end_date == first_end
    assert user.subscription_end_date < now + timedelta(days=360)


@pytest.mark.asyncio
async def test_code_can_be_reapplied_after_grant_lapses(test_db, make_user):
    lapsed = utcnow() - timedelta(days=1)
    user = await make_user(subscription_status="free_access", subscription_end_date=lapsed, promo_code="CLIENT6FREE")
    now = utcnow()

    result = await PromoService(test_db).apply_code(user, "CLIENT6FREE", now=now)

    assert not result.is_error
    assert user.subscription_end_date == now + timedelta(days=180)


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["", "   ", None, "NOTACODE", "CLIENT6FRE"])
async def test_invalid_codes_change_nothing(test_db, make_user, code):
    user = await make_user(subscription_status="trial", subscription_end_date=utcnow() + timedelta(days=3))
    before = (user.subscription_status, user.subscription_end_date, user.promo_code)

    result = await PromoService(test_db).apply_code(user, code)

    assert result.is_error
    assert result.error == PromoRejection.INVALID_CODE
    assert result.message
    await test_db.refresh(user)
    assert (user.subscription_status, user.subscription_end_date, user.promo_code) == before


@pytest.mark.asyncio
async def test_free_access_overrides_stripe_status_but_keeps_ids(test_db, make_user):
    user = await make_user(
        subscription_status="past_due",
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
    )

    result = await PromoService(test_db).apply_code(user, "CLIENT6FREE")

    assert not result.is_error
    assert user.subscription_status == "free_access"
    assert user.stripe_customer_id == "cus_1"
    assert user.stripe_subscription_id == "sub_1"


@pytest.mark.asyncio
async def test_discount_code_does_not_mutate_user(test_db, make_user, monkeypatch):
    monkeypatch.setattr(settings, "promo_discount_codes", {"salon20": "promo_abc"})
    user = await make_user()

    result = await PromoService(test_db).apply_code(user, "SALON20")

    assert not result.is_error
    assert result.value.kind == GrantKind.DISCOUNT
    assert result.value.promotion_code_id == "promo_abc"
    await test_db.refresh(user)
    assert user.subscription_status == "inactive"
    assert user.promo_code is None


def test_lookup_code(monkeypatch):
    monkeypatch.setattr(settings, "promo_discount_codes", {"SALON20": "promo_abc"})
    assert lookup_code("client6free").days == 180
    assert lookup_code("salon20").kind == GrantKind.DISCOUNT
    assert lookup_code("nope") is None
    assert lookup_code("") is None

"""
Promo Service for resolving promo codes into free-access grants or checkout discounts
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from crud.user import UserRepository
from database_models import User
from models.results import Err, Ok, Result
from models.subscription import SubscriptionStatus, utcnow

logger = logging.getLogger(__name__)


class GrantKind(str, Enum):
    FREE_ACCESS = "free_access"
    DISCOUNT = "discount"


class PromoRejection(str, Enum):
    INVALID_CODE = "invalid_code"
    ALREADY_ACTIVE = "already_active"


@dataclass(frozen=True)
class PromoDefinition:
    code: str
    kind: GrantKind
    days: int = 0
    promotion_code_id: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class PromoGrant:
    code: str
    kind: GrantKind
    end_date: Optional[datetime] = None
    promotion_code_id: Optional[str] = None
    message: str = ""


FREE_ACCESS_CODES: Dict[str, PromoDefinition] = {
    "CLIENT6FREE": PromoDefinition(
        code="CLIENT6FREE",
        kind=GrantKind.FREE_ACCESS,
        days=180,
        description="6 months free access",
    ),
}

MSG_INVALID_CODE = "Invalid promo code. Please check your code and try again."
MSG_EMPTY_CODE = "Please enter a valid promo code."


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def promo_table() -> Dict[str, PromoDefinition]:
    """Built-in free-access codes plus discount codes from PROMO_DISCOUNT_CODES."""
    table = dict(FREE_ACCESS_CODES)
    for code, promotion_code_id in (settings.promo_discount_codes or {}).items():
        key = normalize_code(code)
        if key and key not in table:
            table[key] = PromoDefinition(
                code=key,
                kind=GrantKind.DISCOUNT,
                promotion_code_id=promotion_code_id,
                description="checkout discount",
            )
    return table


def lookup_code(code: Optional[str]) -> Optional[PromoDefinition]:
    key = normalize_code(code)
    if not key:
        return None
    return promo_table().get(key)


class PromoService:
    """
    Applies promo codes to a user.

    Re-applying a free-access code while its grant is still running is
    rejected rather than extending the window; once it lapses the code
    grants a fresh window.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.user_repo = UserRepository(db)

    async def apply_code(self, user: User, code: Optional[str], now: Optional[datetime] = None) -> Result:
        now = now or utcnow()
        key = normalize_code(code)
        if not key:
            return Err(PromoRejection.INVALID_CODE, MSG_EMPTY_CODE)

        definition = lookup_code(key)
        if definition is None:
            logger.info(f"Invalid promo code {key!r} submitted by user {user.id}")
            return Err(PromoRejection.INVALID_CODE, MSG_INVALID_CODE)

        if definition.kind == GrantKind.DISCOUNT:
            return Ok(PromoGrant(
                code=definition.code,
                kind=GrantKind.DISCOUNT,
                promotion_code_id=definition.promotion_code_id,
                message="Code accepted. Your discount will be applied at checkout.",
            ))

        status = SubscriptionStatus.parse(user.subscription_status)
        end_date = user.subscription_end_date
        if (
            status == SubscriptionStatus.FREE_ACCESS
            and normalize_code(user.promo_code) == definition.code
            and end_date is not None
            and now <= end_date
        ):
            return Err(
                PromoRejection.ALREADY_ACTIVE,
                f"This code is already active on your account until {end_date:%d %B %Y}.",
            )

        grant_end = now + timedelta(days=definition.days)
        await self.user_repo.update_subscription(
            user,
            status=SubscriptionStatus.FREE_ACCESS,
            end_date=grant_end,
            cancel_at_period_end=False,
            promo_code=definition.code,
        )
        logger.info(
            f"{definition.code} promo code used by user {user.email} - "
            f"{definition.description} until {grant_end.isoformat()}"
        )
        return Ok(PromoGrant(
            code=definition.code,
            kind=GrantKind.FREE_ACCESS,
            end_date=grant_end,
            message=(
                f"Congratulations! You now have {definition.days} days of free access "
                "to all business tools."
            ),
        ))

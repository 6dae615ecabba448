"""
UserRepository for database operations on User model
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import User
from models.subscription import SubscriptionStatus, utcnow

logger = logging.getLogger(__name__)

_UNSET = object()


class UserRepository:
    """
    Repository class for User database operations.
    Encapsulates all database logic for the User model.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Retrieve a user by email address.

        Args:
            email: User's email address (case-insensitive search)

        Returns:
            User object if found, None otherwise
        """
        result = await self.db.execute(
            select(User).where(User.email == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_user_by_stripe_customer_id(self, customer_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.stripe_customer_id == customer_id)
        )
        return result.scalars().first()

    async def create_user(self, user_data: dict) -> User:
        """
        Create a new user in the database.

        Args:
            user_data: Dictionary containing user data. Must include:
                - email: str
                - hashed_password: str
                Optional:
                - name: str
                - business_type: str
                - is_active: bool (defaults to True)

        Returns:
            Created User object (subscription_status is always "inactive")
        """
        user = User(
            email=user_data["email"].strip().lower(),
            hashed_password=user_data["hashed_password"],
            name=user_data.get("name") or "",
            business_type=user_data.get("business_type"),
            is_active=user_data.get("is_active", True),
            subscription_status=SubscriptionStatus.INACTIVE.value,
            cancel_at_period_end=False,
        )
        self.db.add(user)
        await self.db.flush()  # Flush to get the ID without committing
        await self.db.refresh(user)  # Refresh to get the generated ID
        return user

    async def update_subscription(
        self,
        user: User,
        status: SubscriptionStatus,
        end_date: Optional[datetime],
        cancel_at_period_end: bool = False,
        stripe_customer_id=_UNSET,
        stripe_subscription_id=_UNSET,
        promo_code=_UNSET,
    ) -> User:
        """
        Write the subscription fields of a user in one UPDATE statement.

        Status, end date and the cancellation flag always change together so a
        concurrent reader never sees a new status next to a stale end date.
        Stripe ids and promo code are only touched when passed.
        """
        values = {
            "subscription_status": SubscriptionStatus(status).value,
            "subscription_end_date": end_date,
            "cancel_at_period_end": bool(cancel_at_period_end),
            "updated_at": utcnow(),
        }
        if stripe_customer_id is not _UNSET:
            values["stripe_customer_id"] = stripe_customer_id
        if stripe_subscription_id is not _UNSET:
            values["stripe_subscription_id"] = stripe_subscription_id
        if promo_code is not _UNSET:
            values["promo_code"] = promo_code

        await self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(user)

        logger.info(
            f"Subscription updated for user {user.id}: status={user.subscription_status} "
            f"end_date={user.subscription_end_date} cancel_at_period_end={user.cancel_at_period_end}"
        )
        return user

    async def update_stripe_ids(
        self,
        user: User,
        stripe_customer_id: Optional[str],
        stripe_subscription_id=_UNSET,
    ) -> User:
        """Record Stripe references without touching entitlement fields."""
        values = {"stripe_customer_id": stripe_customer_id, "updated_at": utcnow()}
        if stripe_subscription_id is not _UNSET:
            values["stripe_subscription_id"] = stripe_subscription_id

        await self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(user)
        return user

    async def expire_lapsed_grants(self, now: datetime) -> int:
        """
        Flip lapsed local grants to inactive and return how many rows changed.

        free_access rows lapse when their end date has passed or is missing.
        trial rows lapse the same way, but only when no Stripe subscription
        backs them; those are left for the provider to settle.
        """
        lapsed_or_missing = or_(
            User.subscription_end_date.is_(None),
            User.subscription_end_date < now,
        )
        result = await self.db.execute(
            update(User)
            .where(
                or_(
                    and_(
                        User.subscription_status == SubscriptionStatus.FREE_ACCESS.value,
                        lapsed_or_missing,
                    ),
                    and_(
                        User.subscription_status == SubscriptionStatus.TRIAL.value,
                        User.stripe_subscription_id.is_(None),
                        lapsed_or_missing,
                    ),
                )
            )
            .values(
                subscription_status=SubscriptionStatus.INACTIVE.value,
                cancel_at_period_end=False,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0

"""
Access evaluation: decides from a user row alone whether paid features are unlocked.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from models.subscription import AccessDecision, SubscriptionStatus, utcnow

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)

MSG_ACTIVE = "Active subscription"
MSG_SUBSCRIBE = "Subscribe to access your business tools."
MSG_TRIAL_EXPIRED = "Your free trial has ended. Subscribe to keep using your business tools."
MSG_FREE_ACCESS_EXPIRED = "Your free access period has ended. Subscribe to continue."
MSG_FREE_ACCESS_INVALID = "We couldn't confirm your free access. Please contact support."
MSG_PAYMENT_FAILED = "Your last payment failed. Update your payment method to restore access."
MSG_CANCELLED = "Your subscription has been cancelled. Subscribe again to restore access."
MSG_CANCELLED_AT_PERIOD_END = "Your subscription ended at the close of the billing period. Subscribe again to restore access."


def days_left_until(end_date: datetime, now: datetime) -> int:
    """Whole days remaining, rounded up and never negative (2d3h -> 3)."""
    remaining = (end_date - now) / ONE_DAY
    return max(0, math.ceil(remaining))


def evaluate_access(user, now: Optional[datetime] = None) -> AccessDecision:
    """
    Combine status, end date and cancellation flag into an access decision.

    Rules, in order:
      - active: access. A past end date does not deny access unless the user
        asked to cancel at period end, in which case access stops at the end date.
      - free_access: access until the end date inclusive; no end date means no access.
      - trial: access until the end date inclusive, flagged as trial.
      - anything else: no access.

    Never writes to the user; lapsed rows are flipped by the expiry sweep.
    """
    now = now or utcnow()
    status = SubscriptionStatus.parse(getattr(user, "subscription_status", None))
    end_date = getattr(user, "subscription_end_date", None)
    cancel_at_period_end = bool(getattr(user, "cancel_at_period_end", False))

    if status == SubscriptionStatus.ACTIVE:
        if cancel_at_period_end and end_date is not None:
            if now <= end_date:
                return AccessDecision(
                    has_access=True,
                    days_left=days_left_until(end_date, now),
                    status_label=status.value,
                    end_date=end_date,
                    cancel_at_period_end=True,
                    message=f"Your subscription is set to cancel on {end_date:%d %B %Y}.",
                )
            return AccessDecision(
                has_access=False,
                days_left=0,
                status_label="expired",
                end_date=end_date,
                cancel_at_period_end=True,
                message=MSG_CANCELLED_AT_PERIOD_END,
                denial_code="PAYMENT_REQUIRED",
            )
        return AccessDecision(
            has_access=True,
            status_label=status.value,
            end_date=end_date,
            cancel_at_period_end=cancel_at_period_end,
            message=MSG_ACTIVE,
        )

    if status == SubscriptionStatus.FREE_ACCESS:
        if end_date is None:
            logger.warning(
                f"User {getattr(user, 'id', None)} has free_access with no end date; denying access"
            )
            return AccessDecision(
                has_access=False,
                status_label=status.value,
                message=MSG_FREE_ACCESS_INVALID,
                denial_code="FREE_ACCESS_EXPIRED",
            )
        if now <= end_date:
            days = days_left_until(end_date, now)
            return AccessDecision(
                has_access=True,
                days_left=days,
                status_label=status.value,
                end_date=end_date,
                message=f"{days} days of free access remaining",
            )
        return AccessDecision(
            has_access=False,
            days_left=0,
            status_label="expired",
            end_date=end_date,
            message=MSG_FREE_ACCESS_EXPIRED,
            denial_code="FREE_ACCESS_EXPIRED",
        )

    if status == SubscriptionStatus.TRIAL:
        if end_date is not None and now <= end_date:
            days = days_left_until(end_date, now)
            return AccessDecision(
                has_access=True,
                is_trial=True,
                days_left=days,
                status_label=status.value,
                end_date=end_date,
                cancel_at_period_end=cancel_at_period_end,
                message=f"{days} days left in your free trial",
            )
        return AccessDecision(
            has_access=False,
            is_trial=True,
            days_left=0,
            status_label="expired",
            end_date=end_date,
            cancel_at_period_end=cancel_at_period_end,
            message=MSG_TRIAL_EXPIRED,
            denial_code="TRIAL_EXPIRED",
        )

    if status == SubscriptionStatus.PAST_DUE:
        return AccessDecision(
            has_access=False,
            status_label=status.value,
            end_date=end_date,
            cancel_at_period_end=cancel_at_period_end,
            message=MSG_PAYMENT_FAILED,
            denial_code="PAYMENT_FAILED",
        )

    if status == SubscriptionStatus.CANCELLED:
        return AccessDecision(
            has_access=False,
            status_label=status.value,
            end_date=end_date,
            cancel_at_period_end=cancel_at_period_end,
            message=MSG_CANCELLED,
            denial_code="PAYMENT_REQUIRED",
        )

    return AccessDecision(
        has_access=False,
        status_label=status.value,
        end_date=end_date,
        message=MSG_SUBSCRIBE,
        denial_code="PAYMENT_REQUIRED",
    )

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    TRIAL = "trial"
    ACTIVE = "active"
    FREE_ACCESS = "free_access"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionStatus":
        """
        Read a stored status. Older rows carry provider spellings or an
        'expired' marker; anything unrecognized reads as INACTIVE.
        """
        raw = (value or "").strip().lower()
        if not raw:
            return cls.INACTIVE
        try:
            return cls(raw)
        except ValueError:
            pass
        if raw in _LEGACY_STATUS_ALIASES:
            return _LEGACY_STATUS_ALIASES[raw]
        logger.warning(f"Unrecognized subscription status {value!r}; treating as inactive")
        return cls.INACTIVE


_LEGACY_STATUS_ALIASES = {
    "trialing": SubscriptionStatus.TRIAL,
    "canceled": SubscriptionStatus.CANCELLED,
    "expired": SubscriptionStatus.INACTIVE,
    "incomplete": SubscriptionStatus.INACTIVE,
}


class ProviderStatus(str, Enum):
    """Stripe subscription statuses, with UNKNOWN for anything Stripe adds later."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ProviderStatus":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


PROVIDER_STATUS_MAP = {
    ProviderStatus.TRIALING: SubscriptionStatus.TRIAL,
    ProviderStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    ProviderStatus.PAST_DUE: SubscriptionStatus.PAST_DUE,
    ProviderStatus.CANCELED: SubscriptionStatus.CANCELLED,
    ProviderStatus.UNPAID: SubscriptionStatus.CANCELLED,
    ProviderStatus.INCOMPLETE_EXPIRED: SubscriptionStatus.INACTIVE,
    ProviderStatus.INCOMPLETE: SubscriptionStatus.INACTIVE,
    ProviderStatus.PAUSED: SubscriptionStatus.INACTIVE,
}


def map_provider_status(status: ProviderStatus) -> Optional[SubscriptionStatus]:
    """Local status for a provider status, or None when it has no mapping."""
    return PROVIDER_STATUS_MAP.get(status)


def stripe_field(obj: Any, key: str) -> Any:
    """
    Read a field from a Stripe object or its dict form, None when absent.

    Recent stripe-python objects are not dicts, so .get() is unavailable and
    attribute access collides with names like `items`; subscript works for both.
    """
    if obj is None or isinstance(obj, str):
        return None
    try:
        return obj[key]
    except KeyError:
        return None
    except TypeError:
        return getattr(obj, key, None)


def _from_unix(ts: Any) -> Optional[datetime]:
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The parts of a Stripe subscription the reconciler acts on."""
    subscription_id: Optional[str]
    customer_id: Optional[str]
    provider_status: ProviderStatus
    raw_status: Optional[str]
    period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    amount: Optional[int] = None
    currency: Optional[str] = None

    @property
    def local_status(self) -> Optional[SubscriptionStatus]:
        return map_provider_status(self.provider_status)

    @classmethod
    def from_stripe(cls, subscription: Any) -> "SubscriptionSnapshot":
        """
        Build a snapshot from a Stripe Subscription (or its dict form).

        Trialing subscriptions end at trial_end. Newer API versions moved
        current_period_end onto the subscription items, so fall back to the
        first item when the top-level field is absent.
        """
        raw_status = stripe_field(subscription, "status")
        provider_status = ProviderStatus.parse(raw_status)

        items = stripe_field(stripe_field(subscription, "items"), "data") or []
        first_item = items[0] if items else None
        price = stripe_field(first_item, "price")

        period_end_ts = stripe_field(subscription, "current_period_end")
        if period_end_ts is None:
            period_end_ts = stripe_field(first_item, "current_period_end")
        if provider_status == ProviderStatus.TRIALING and stripe_field(subscription, "trial_end"):
            period_end_ts = stripe_field(subscription, "trial_end")

        customer = stripe_field(subscription, "customer")
        if customer is not None and not isinstance(customer, str):
            customer = stripe_field(customer, "id")

        return cls(
            subscription_id=stripe_field(subscription, "id"),
            customer_id=customer,
            provider_status=provider_status,
            raw_status=raw_status,
            period_end=_from_unix(period_end_ts),
            cancel_at_period_end=bool(stripe_field(subscription, "cancel_at_period_end")),
            amount=stripe_field(price, "unit_amount"),
            currency=stripe_field(price, "currency"),
        )


class AccessDecision(BaseModel):
    has_access: bool
    is_trial: bool = False
    days_left: Optional[int] = None
    status_label: str
    end_date: Optional[datetime] = None
    cancel_at_period_end: bool = False
    message: str = ""
    denial_code: Optional[str] = None

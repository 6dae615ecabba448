"""
Billing Service - Stripe subscription reconciliation, checkout and webhook handling
"""

import logging
from enum import Enum
from typing import Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from crud.user import UserRepository
from database_models import User
from models.results import Err, Ok, Result
from models.subscription import SubscriptionSnapshot, SubscriptionStatus, stripe_field, utcnow
from services.access_service import evaluate_access

logger = logging.getLogger(__name__)

# Initialize Stripe client
if settings.stripe_secret_key:
    stripe.api_key = settings.stripe_secret_key
else:
    logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)

HANDLED_WEBHOOK_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)


class BillingFailure(str, Enum):
    NOT_CONFIGURED = "not_configured"
    NO_CUSTOMER = "no_customer"
    NO_SUBSCRIPTION = "no_subscription"
    TRANSIENT = "transient"
    PROVIDER_ERROR = "provider_error"
    UNMAPPED_STATUS = "unmapped_status"
    ALREADY_SUBSCRIBED = "already_subscribed"
    HAS_FREE_ACCESS = "has_free_access"
    USER_NOT_FOUND = "user_not_found"
    SESSION_NOT_OWNED = "session_not_owned"


def _stripe_failure(exc: stripe.StripeError, action: str) -> Err:
    if isinstance(exc, TRANSIENT_STRIPE_ERRORS):
        logger.warning(f"Transient Stripe failure while trying to {action}: {exc}")
        return Err(
            BillingFailure.TRANSIENT,
            "We couldn't reach the payment provider. Please try again shortly.",
            str(exc),
        )
    logger.error(f"Stripe error while trying to {action}: {exc}")
    return Err(
        BillingFailure.PROVIDER_ERROR,
        "The payment provider rejected the request. Please contact support if this continues.",
        str(exc),
    )


def _stripe_id(value) -> Optional[str]:
    """Id of a Stripe reference that is either a plain id or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return stripe_field(value, "id")


def _not_configured(action: str) -> Err:
    logger.error(f"STRIPE_SECRET_KEY is not set. Cannot {action}.")
    return Err(BillingFailure.NOT_CONFIGURED, "Billing is not configured. Please contact support.")


class BillingService:
    """
    Keeps a user's local subscription fields in step with Stripe and wraps the
    Stripe calls the billing endpoints need.

    Provider failures never change local state: every write goes through
    UserRepository.update_subscription after a snapshot has been fetched.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.user_repo = UserRepository(db)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, user: User) -> Result:
        """
        Fetch the authoritative subscription from Stripe and apply it to the user.

        Returns Ok(snapshot) once applied, or Err(BillingFailure) with the user
        left untouched.
        """
        if not settings.stripe_secret_key:
            return _not_configured("reconcile subscription")

        if user.stripe_subscription_id:
            try:
                subscription = stripe.Subscription.retrieve(
                    user.stripe_subscription_id,
                    expand=["items.data.price"],
                )
            except stripe.StripeError as e:
                return _stripe_failure(e, f"retrieve subscription for user {user.id}")
            return await self.apply_snapshot(user, SubscriptionSnapshot.from_stripe(subscription))

        if not user.stripe_customer_id:
            return Err(BillingFailure.NO_CUSTOMER, "No billing account found. Start a subscription first.")

        try:
            subscriptions = stripe.Subscription.list(
                customer=user.stripe_customer_id,
                status="all",
                limit=10,
                expand=["data.items.data.price"],
            )
        except stripe.StripeError as e:
            return _stripe_failure(e, f"list subscriptions for user {user.id}")

        data = list(stripe_field(subscriptions, "data") or [])
        if not data:
            return Err(BillingFailure.NO_SUBSCRIPTION, "No subscription found for this account.")

        # Prefer a live subscription; Stripe lists newest first otherwise
        chosen = next((s for s in data if stripe_field(s, "status") in ("active", "trialing")), data[0])
        return await self.apply_snapshot(user, SubscriptionSnapshot.from_stripe(chosen))

    async def apply_snapshot(self, user: User, snapshot: SubscriptionSnapshot) -> Result:
        """
        Map a provider snapshot onto the user in a single write.

        An unexpired free_access grant is only replaced when the provider
        reports a paid-up (active) subscription.
        """
        local_status = snapshot.local_status
        if local_status is None:
            logger.warning(
                f"Unmapped Stripe status {snapshot.raw_status!r} for subscription "
                f"{snapshot.subscription_id}; leaving user {user.id} unchanged"
            )
            return Err(
                BillingFailure.UNMAPPED_STATUS,
                "Your subscription is in a state we don't recognise yet. Please contact support.",
                snapshot.raw_status,
            )

        customer_id = snapshot.customer_id or user.stripe_customer_id
        subscription_id = snapshot.subscription_id or user.stripe_subscription_id

        current = SubscriptionStatus.parse(user.subscription_status)
        holds_free_access = (
            current == SubscriptionStatus.FREE_ACCESS
            and user.subscription_end_date is not None
            and utcnow() <= user.subscription_end_date
        )
        if holds_free_access and local_status != SubscriptionStatus.ACTIVE:
            logger.info(
                f"User {user.id} holds free access; recording subscription "
                f"{subscription_id} ({snapshot.raw_status}) without changing status"
            )
            await self.user_repo.update_stripe_ids(user, customer_id, subscription_id)
            return Ok(snapshot)

        previous = user.subscription_status
        await self.user_repo.update_subscription(
            user,
            status=local_status,
            end_date=snapshot.period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription_id,
        )
        if previous != local_status.value:
            logger.info(
                f"User {user.id} subscription {previous} -> {local_status.value} "
                f"(stripe status {snapshot.raw_status})"
            )
        return Ok(snapshot)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def _get_or_create_price_id(self) -> str:
        """Configured STRIPE_PRICE_ID, otherwise find or create the product and monthly price."""
        if settings.stripe_price_id:
            return settings.stripe_price_id

        products = stripe.Product.list(limit=100)
        product = next(
            (p for p in stripe_field(products, "data") or [] if stripe_field(p, "name") == settings.stripe_product_name),
            None,
        )
        if product is None:
            product = stripe.Product.create(
                name=settings.stripe_product_name,
                description="Complete business management tools for salon professionals",
            )

        price = stripe.Price.create(
            product=product["id"],
            unit_amount=settings.subscription_amount,
            currency=settings.subscription_currency,
            recurring={"interval": "month"},
        )
        logger.info(f"Created Stripe price {price['id']}; set STRIPE_PRICE_ID to reuse it")
        return price["id"]

    async def create_checkout_session(self, user: User, promotion_code_id: Optional[str] = None) -> Result:
        """
        Create a subscription-mode Checkout session with the configured trial.

        Returns Ok({"session_id", "url"}).
        """
        if not settings.stripe_secret_key:
            return _not_configured("create checkout session")

        status = SubscriptionStatus.parse(user.subscription_status)
        if status == SubscriptionStatus.ACTIVE and user.stripe_subscription_id:
            return Err(BillingFailure.ALREADY_SUBSCRIBED, "You already have an active subscription.")
        if (
            status == SubscriptionStatus.FREE_ACCESS
            and user.subscription_end_date is not None
            and utcnow() <= user.subscription_end_date
        ):
            return Err(BillingFailure.HAS_FREE_ACCESS, "You have free access, no subscription needed.")

        try:
            customer_id = user.stripe_customer_id
            if not customer_id:
                customer = stripe.Customer.create(
                    email=user.email,
                    name=user.name or None,
                    metadata={"user_id": str(user.id), "business_type": user.business_type or ""},
                )
                customer_id = customer["id"]
                await self.user_repo.update_stripe_ids(user, customer_id)

            frontend_url = settings.frontend_url or "http://localhost:5173"
            params = dict(
                customer=customer_id,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": self._get_or_create_price_id(), "quantity": 1}],
                subscription_data={
                    "trial_period_days": settings.stripe_trial_days,
                    "metadata": {"user_id": str(user.id)},
                },
                success_url=f"{frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{frontend_url}/subscription",
                client_reference_id=str(user.id),
                customer_update={"address": "auto"},
            )
            # Stripe rejects discounts and allow_promotion_codes together
            if promotion_code_id:
                params["discounts"] = [{"promotion_code": promotion_code_id}]
            else:
                params["allow_promotion_codes"] = True

            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            return _stripe_failure(e, f"create checkout session for user {user.id}")

        logger.info(f"Checkout session {session['id']} created for user {user.id}")
        return Ok({"session_id": session["id"], "url": session["url"]})

    async def verify_checkout_session(self, user: User, session_id: str) -> Result:
        """
        Attach the subscription created by a Checkout session to the user, then reconcile.

        Called repeatedly by the post-checkout poller until the subscription settles.
        The session must have been created for this user (client_reference_id)
        and, when the user already has a Stripe customer, for that customer;
        anything else is SESSION_NOT_OWNED and nothing is written.
        """
        if not settings.stripe_secret_key:
            return _not_configured("verify checkout session")

        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["subscription"])
        except stripe.StripeError as e:
            return _stripe_failure(e, f"retrieve checkout session {session_id}")

        customer_id = _stripe_id(stripe_field(session, "customer"))
        reference = stripe_field(session, "client_reference_id")
        if reference != str(user.id) or (
            user.stripe_customer_id and customer_id and customer_id != user.stripe_customer_id
        ):
            logger.warning(
                f"User {user.id} tried to verify checkout session {session_id} "
                f"belonging to reference {reference!r} / customer {customer_id}"
            )
            return Err(BillingFailure.SESSION_NOT_OWNED, "This checkout session does not belong to your account.")

        subscription_id = _stripe_id(stripe_field(session, "subscription"))
        if not subscription_id:
            # Checkout completed but Stripe has not created the subscription yet
            return Err(BillingFailure.NO_SUBSCRIPTION, "Your subscription is still being set up.")

        # Only fill in missing references; a recorded live subscription is kept
        current = SubscriptionStatus.parse(user.subscription_status)
        replace_subscription = (
            not user.stripe_subscription_id
            or current not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL)
        )
        if (not user.stripe_customer_id and customer_id) or (
            replace_subscription and user.stripe_subscription_id != subscription_id
        ):
            await self.user_repo.update_stripe_ids(
                user,
                user.stripe_customer_id or customer_id,
                subscription_id if replace_subscription else user.stripe_subscription_id,
            )

        return await self.reconcile(user)

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------

    async def create_billing_portal_session(self, user: User) -> Result:
        if not settings.stripe_secret_key:
            return _not_configured("create billing portal session")
        if not user.stripe_customer_id:
            return Err(BillingFailure.NO_CUSTOMER, "No billing account found for this user.")

        try:
            frontend_url = settings.frontend_url or "http://localhost:5173"
            portal_session = stripe.billing_portal.Session.create(
                customer=user.stripe_customer_id,
                return_url=f"{frontend_url}/subscription",
            )
        except stripe.StripeError as e:
            return _stripe_failure(e, f"create billing portal session for user {user.id}")
        return Ok(portal_session["url"])

    async def _set_cancel_at_period_end(self, user: User, cancel: bool) -> Result:
        if not settings.stripe_secret_key:
            return _not_configured("update subscription")
        if not user.stripe_subscription_id:
            return Err(BillingFailure.NO_SUBSCRIPTION, "No subscription found for this account.")

        try:
            subscription = stripe.Subscription.modify(
                user.stripe_subscription_id,
                cancel_at_period_end=cancel,
            )
        except stripe.StripeError as e:
            return _stripe_failure(e, f"update cancel_at_period_end for user {user.id}")
        return await self.apply_snapshot(user, SubscriptionSnapshot.from_stripe(subscription))

    async def cancel_subscription(self, user: User) -> Result:
        """Cancel at period end; access is kept until the current period closes."""
        return await self._set_cancel_at_period_end(user, True)

    async def reactivate_subscription(self, user: User) -> Result:
        return await self._set_cancel_at_period_end(user, False)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def _find_user_for_customer(self, customer_id: Optional[str]) -> Optional[User]:
        if not customer_id:
            return None
        user = await self.user_repo.get_user_by_stripe_customer_id(customer_id)
        if user:
            return user

        # Customers created outside our checkout flow are matched on email
        customer = stripe.Customer.retrieve(customer_id)
        email = stripe_field(customer, "email")
        if stripe_field(customer, "deleted") or not email:
            return None
        user = await self.user_repo.get_user_by_email(email)
        if user and not user.stripe_customer_id:
            await self.user_repo.update_stripe_ids(user, customer_id)
        return user

    async def process_webhook(self, event) -> Result:
        """
        Process a verified Stripe webhook event.

        The payload only tells us which customer changed; the subscription is
        re-fetched so webhook deliveries and manual syncs converge on the same
        provider snapshot regardless of order.
        """
        event_type = event["type"]
        if event_type not in HANDLED_WEBHOOK_EVENTS:
            logger.info(f"Unhandled Stripe event type {event_type}")
            return Ok(None)

        obj = event["data"]["object"]
        customer_id = _stripe_id(stripe_field(obj, "customer"))

        if event_type.startswith("customer.subscription."):
            subscription_id = stripe_field(obj, "id")
        else:
            subscription_id = stripe_field(obj, "subscription")
            if subscription_id is None:
                # Newer API versions nest the subscription under parent.subscription_details
                details = stripe_field(stripe_field(obj, "parent"), "subscription_details")
                subscription_id = stripe_field(details, "subscription")
            subscription_id = _stripe_id(subscription_id)

        logger.info(f"Processing Stripe webhook {event_type} for customer {customer_id}")

        try:
            user = await self._find_user_for_customer(customer_id)
        except stripe.StripeError as e:
            return _stripe_failure(e, f"look up customer {customer_id}")
        if user is None:
            logger.warning(f"No user found for Stripe customer {customer_id} ({event_type})")
            return Err(BillingFailure.USER_NOT_FOUND, "No matching user")

        if subscription_id and user.stripe_subscription_id != subscription_id:
            # A newer subscription replaces the recorded one unless the recorded one is still live
            current = SubscriptionStatus.parse(user.subscription_status)
            if not user.stripe_subscription_id or current not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
                await self.user_repo.update_stripe_ids(user, customer_id, subscription_id)

        return await self.reconcile(user)


def status_payload(user: User, snapshot: Optional[SubscriptionSnapshot] = None, decision=None) -> dict:
    """
    Status fields shared by the subscription endpoints:
    {status, hasAccess, isTrial, daysLeft, endDate, cancelAtPeriodEnd, amount, currency, message}
    """
    decision = decision or evaluate_access(user)
    return {
        "status": decision.status_label,
        "hasAccess": decision.has_access,
        "isTrial": decision.is_trial,
        "daysLeft": decision.days_left,
        "endDate": decision.end_date.isoformat() if decision.end_date else None,
        "cancelAtPeriodEnd": decision.cancel_at_period_end,
        "amount": snapshot.amount if snapshot else None,
        "currency": snapshot.currency if snapshot else None,
        "message": decision.message,
    }

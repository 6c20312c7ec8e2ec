from __future__ import annotations

import json
import logging
from typing import Any

import stripe
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.pricing_plan import PaymentType, PricingPlan
from app.models.user import User
from app.services.billing_errors import (
    MalformedWebhookError,
    ProviderObjectNotFoundError,
    ProviderUnavailableError,
    StripeServiceError,
    WebhookConfigurationError,
    WebhookSignatureError,
)
from app.services.stripe_events import VerifiedEvent, classify

logger = logging.getLogger(__name__)


def as_plain(obj: Any) -> Any:
    """Convert a Stripe SDK object (or anything dict-like) into plain dicts/lists."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict):
        return {k: as_plain(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [as_plain(v) for v in obj]
    for attr in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return as_plain(converter())
    return obj


def object_id(value: Any) -> str | None:
    """Return the id of a field that may be either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


class StripeService:
    """
    Stripe integration facade. All direct Stripe SDK calls live here.

    Responsibilities:
    - Verify webhook signatures and turn payloads into ``VerifiedEvent`` objects
    - Fetch authoritative provider objects, mapping SDK failures to typed errors
    - Manage customers tied to application users
    - Create checkout and customer-portal sessions
    """

    def __init__(self, db: Session, stripe_client: Any | None = None):
        self.db = db
        self.currency = settings.STRIPE_DEFAULT_CURRENCY or "usd"
        self.stripe = stripe_client or stripe
        if settings.STRIPE_SECRET_KEY:
            self.stripe.api_key = settings.STRIPE_SECRET_KEY
        if hasattr(self.stripe, "max_network_retries"):
            self.stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES

    # ------------------------------------------------------------------
    # Customers and sessions
    # ------------------------------------------------------------------
    def ensure_customer(self, user: User) -> str:
        """
        Create or reuse the Stripe customer id stored on the user.

        The link is written with a guarded UPDATE so two concurrent first checkouts
        cannot both attach a customer; the loser adopts the winner's id.
        """
        self._require_secret_key()

        db_user = self.db.get(User, user.id)
        if not db_user:
            raise StripeServiceError("User not found in session")

        if db_user.stripe_customer_id:
            return db_user.stripe_customer_id

        customer = self._call(
            "create customer",
            self.stripe.Customer.create,
            email=db_user.email,
            name=db_user.name,
            metadata={"user_id": str(db_user.id)},
        )
        customer_id = object_id(customer)
        if not customer_id:
            raise StripeServiceError("Stripe did not return a customer id")

        result = self.db.execute(
            update(User)
            .where(User.id == db_user.id, User.stripe_customer_id.is_(None))
            .values(stripe_customer_id=customer_id)
        )
        self.db.commit()
        self.db.refresh(db_user)
        if result.rowcount == 0:
            logger.warning(
                "User %s already linked to Stripe customer %s; discarding %s",
                db_user.id,
                db_user.stripe_customer_id,
                customer_id,
            )
            return db_user.stripe_customer_id
        logger.info("Linked user %s to Stripe customer %s", db_user.id, customer_id)
        return customer_id

    def get_active_plan(self, price_id: str) -> PricingPlan | None:
        return (
            self.db.query(PricingPlan)
            .filter(PricingPlan.stripe_price_id == price_id, PricingPlan.is_active.is_(True))
            .first()
        )

    def create_checkout_session(
        self,
        user: User,
        *,
        price_id: str,
        success_url: str,
        cancel_url: str,
        coupon_code: str | None = None,
        referral: str | None = None,
    ) -> dict[str, Any]:
        """Create a Stripe Checkout Session for a pricing plan."""
        plan = self.get_active_plan(price_id)
        if not plan:
            raise StripeServiceError(f"Unknown or inactive price: {price_id}")

        is_subscription = plan.payment_type == PaymentType.RECURRING.value
        customer_id = self.ensure_customer(user)
        logger.info(
            "Creating Stripe checkout session: user=%s customer=%s plan=%s mode=%s",
            user.id,
            customer_id,
            plan.id,
            "subscription" if is_subscription else "payment",
        )

        metadata = {
            "user_id": str(user.id),
            "plan_id": str(plan.id),
            "plan_name": plan.card_title,
            "price_id": price_id,
        }
        params: dict[str, Any] = {
            "mode": "subscription" if is_subscription else "payment",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if referral:
            params["client_reference_id"] = referral
            params["metadata"] = {**metadata, "referral": referral}
        if coupon_code:
            params["discounts"] = [{"coupon": coupon_code}]
        else:
            params["allow_promotion_codes"] = True

        if is_subscription:
            subscription_data: dict[str, Any] = {"metadata": metadata}
            if plan.trial_period_days:
                subscription_data["trial_period_days"] = plan.trial_period_days
            params["subscription_data"] = subscription_data
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        session = self._call("create checkout session", self.stripe.checkout.Session.create, **params)
        return as_plain(session)

    def create_portal_session(self, user: User, *, return_url: str) -> dict[str, Any]:
        self._require_secret_key()
        db_user = self.db.get(User, user.id)
        if not db_user or not db_user.stripe_customer_id:
            raise StripeServiceError("User has no Stripe customer")
        session = self._call(
            "create portal session",
            self.stripe.billing_portal.Session.create,
            customer=db_user.stripe_customer_id,
            return_url=return_url,
        )
        return as_plain(session)

    # ------------------------------------------------------------------
    # Webhook verification
    # ------------------------------------------------------------------
    def parse_event(self, payload: bytes, signature: str | None) -> VerifiedEvent:
        """Validate the webhook signature and deserialize the event."""
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise WebhookConfigurationError("Stripe webhook secret is not configured")
        if not signature:
            raise WebhookConfigurationError("Missing Stripe-Signature header")
        try:
            self.stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=settings.STRIPE_WEBHOOK_SECRET,
            )
        except self.stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(f"Invalid Stripe signature: {exc}") from exc
        except ValueError as exc:
            raise MalformedWebhookError(f"Invalid Stripe payload: {exc}") from exc

        return build_verified_event(parse_raw_payload(payload))

    # ------------------------------------------------------------------
    # Provider reads
    # ------------------------------------------------------------------
    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return as_plain(
            self._call("retrieve subscription", self.stripe.Subscription.retrieve, subscription_id)
        )

    def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        return as_plain(self._call("retrieve invoice", self.stripe.Invoice.retrieve, invoice_id))

    def retrieve_charge(self, charge_id: str) -> dict[str, Any]:
        return as_plain(self._call("retrieve charge", self.stripe.Charge.retrieve, charge_id))

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return as_plain(
            self._call("retrieve checkout session", self.stripe.checkout.Session.retrieve, session_id)
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_secret_key(self) -> None:
        if not settings.STRIPE_SECRET_KEY:
            raise StripeServiceError("Stripe secret key is not configured")

    def _call(self, action: str, fn, *args, **kwargs):
        """Invoke an SDK call and translate transport/lookup failures into typed errors."""
        sdk = self.stripe
        try:
            return fn(*args, **kwargs)
        except (sdk.APIConnectionError, sdk.RateLimitError) as exc:
            logger.warning("Stripe unavailable during %s: %s", action, exc)
            raise ProviderUnavailableError(f"Stripe unavailable during {action}") from exc
        except sdk.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                raise ProviderObjectNotFoundError(f"Stripe object not found during {action}") from exc
            raise StripeServiceError(f"Stripe rejected {action}: {exc}") from exc
        except sdk.StripeError as exc:
            http_status = getattr(exc, "http_status", None) or 0
            if http_status >= 500:
                logger.warning("Stripe server error during %s: %s", action, exc)
                raise ProviderUnavailableError(f"Stripe unavailable during {action}") from exc
            raise StripeServiceError(f"Stripe error during {action}: {exc}") from exc


def parse_raw_payload(payload: bytes) -> dict[str, Any]:
    """Deserialize the raw webhook payload as JSON."""
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedWebhookError(f"Unable to parse Stripe payload: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedWebhookError("Stripe payload is not an object")
    return data


def build_verified_event(raw: dict[str, Any]) -> VerifiedEvent:
    event_id = raw.get("id")
    event_type = raw.get("type")
    data_object = (raw.get("data") or {}).get("object") if isinstance(raw.get("data"), dict) else None
    if not event_id or not event_type or not isinstance(data_object, dict):
        raise MalformedWebhookError("Stripe event missing id/type/data.object")
    try:
        created = int(raw.get("created") or 0)
    except (TypeError, ValueError) as exc:
        raise MalformedWebhookError("Stripe event has an invalid created timestamp") from exc
    return VerifiedEvent(
        id=event_id,
        type=event_type,
        kind=classify(event_type),
        created=created,
        data_object=data_object,
        livemode=bool(raw.get("livemode", False)),
        payload=raw,
    )

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from app.models.order import Order, OrderStatus, OrderType
from app.models.pricing_plan import PricingPlan
from app.models.subscription import Subscription
from app.services import billing_state
from app.services.billing_errors import (
    OwnerMismatchError,
    PaymentReferenceError,
    ProviderObjectNotFoundError,
)
from app.services.reconciliation import PAID_CHECKOUT_STATUSES, ReconciliationService
from app.services.stripe import StripeService, object_id

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"
PENDING = "pending"
PENDING_MESSAGE = "Payment received. Your purchase is still being processed; refresh shortly."


@dataclass
class ReconciledStatus:
    status: str
    mode: str
    message: str
    session_id: str
    subscription_id: str | None = None
    subscription_status: str | None = None
    order_id: int | None = None
    order_status: str | None = None
    plan_id: int | None = None
    plan_name: str | None = None


class PaymentVerificationService:
    """
    Fallback for the success page: confirm a checkout the user just finished even if
    its webhooks have not been processed yet.

    The provider is asked directly, and if local state has not converged the same
    idempotent reconciliation the webhooks use is run. Whichever path gets there first
    writes; the other one finds the work done.
    """

    def __init__(self, db: Session, stripe_service: StripeService):
        self.db = db
        self.stripe_service = stripe_service

    def verify_and_sync(self, session_id: str | None, user_id: int) -> ReconciledStatus:
        normalized = (session_id or "").strip()
        if not normalized:
            raise PaymentReferenceError("Missing checkout session id")

        try:
            session = self.stripe_service.retrieve_checkout_session(normalized)
        except ProviderObjectNotFoundError as exc:
            raise PaymentReferenceError(f"Unknown checkout session {normalized}") from exc

        metadata = session.get("metadata") or {}
        owner = str(metadata.get("user_id") or "")
        if owner != str(user_id):
            logger.warning(
                "Checkout session %s belongs to user %s but was verified by user %s",
                normalized,
                owner or "<none>",
                user_id,
            )
            raise OwnerMismatchError("Checkout session does not belong to the current user")

        if session.get("status") != "complete":
            raise PaymentReferenceError(f"Checkout session {normalized} is not complete")

        mode = session.get("mode")
        if mode == "subscription":
            return self._verify_subscription(session, user_id)
        if mode == "payment":
            return self._verify_payment(session, user_id)
        raise PaymentReferenceError(f"Unsupported checkout mode: {mode}")

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------
    def _verify_subscription(self, session: dict[str, Any], user_id: int) -> ReconciledStatus:
        subscription_id = object_id(session.get("subscription"))
        if not subscription_id:
            raise PaymentReferenceError(f"Checkout session {session.get('id')} has no subscription")

        subscription = self._local_subscription(subscription_id, user_id)
        if subscription is None or not subscription.is_entitled:
            service = ReconciliationService(self.db, self.stripe_service)
            self._in_transaction(
                lambda: service.sync_subscription(subscription_id, fallback_metadata=session.get("metadata") or {})
            )
            subscription = self._local_subscription(subscription_id, user_id)

        confirmed = subscription is not None and subscription.is_entitled
        plan = self._plan(subscription.plan_id if subscription else None, session)
        return ReconciledStatus(
            status=CONFIRMED if confirmed else PENDING,
            mode="subscription",
            message="Subscription active." if confirmed else PENDING_MESSAGE,
            session_id=session.get("id"),
            subscription_id=subscription_id,
            subscription_status=subscription.status if subscription else None,
            plan_id=plan.id if plan else None,
            plan_name=plan.card_title if plan else None,
        )

    def _verify_payment(self, session: dict[str, Any], user_id: int) -> ReconciledStatus:
        if session.get("payment_status") not in PAID_CHECKOUT_STATUSES:
            raise PaymentReferenceError(f"Checkout session {session.get('id')} is not paid")
        payment_intent_id = object_id(session.get("payment_intent"))
        if not payment_intent_id:
            raise PaymentReferenceError(f"Checkout session {session.get('id')} has no payment intent")

        order = self._local_order(payment_intent_id, user_id)
        if order is None or order.status != OrderStatus.SUCCEEDED.value:
            service = ReconciliationService(self.db, self.stripe_service)
            self._in_transaction(lambda: service.handle_checkout_completed(session))
            order = self._local_order(payment_intent_id, user_id)

        confirmed = order is not None and order.status == OrderStatus.SUCCEEDED.value
        plan = self._plan(order.plan_id if order else None, session)
        return ReconciledStatus(
            status=CONFIRMED if confirmed else PENDING,
            mode="payment",
            message="Payment confirmed." if confirmed else PENDING_MESSAGE,
            session_id=session.get("id"),
            order_id=order.id if order else None,
            order_status=order.status if order else None,
            plan_id=plan.id if plan else None,
            plan_name=plan.card_title if plan else None,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _in_transaction(self, fn) -> None:
        try:
            fn()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _local_subscription(self, subscription_id: str, user_id: int) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.stripe_subscription_id == subscription_id,
                Subscription.user_id == user_id,
            )
            .first()
        )

    def _local_order(self, payment_intent_id: str, user_id: int) -> Order | None:
        order = billing_state.find_order(self.db, payment_intent_id, OrderType.ONE_TIME_PURCHASE.value)
        if order is not None and order.user_id != user_id:
            return None
        return order

    def _plan(self, plan_id: int | None, session: dict[str, Any]) -> PricingPlan | None:
        if not plan_id:
            raw = (session.get("metadata") or {}).get("plan_id")
            try:
                plan_id = int(raw) if raw else None
            except ValueError:
                plan_id = None
        return self.db.get(PricingPlan, plan_id) if plan_id else None

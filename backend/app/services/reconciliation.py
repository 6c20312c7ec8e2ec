from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.credit import CreditEntryType, CreditLedger
from app.models.order import Order, OrderStatus, OrderType
from app.models.pricing_plan import PricingPlan
from app.models.subscription import ENTITLED_STATUSES, Subscription, SubscriptionStatus
from app.models.user import User
from app.services import billing_state
from app.services.billing_errors import NotYetVisibleError, OwnerMismatchError, PaymentReferenceError
from app.services.billing_state import SubscriptionSnapshot, as_utc, from_timestamp
from app.services.credits import CreditsService
from app.services.notifications import fire_and_forget
from app.services.stripe import StripeService, object_id
from app.tasks.notifications import send_invoice_payment_failed_email

logger = logging.getLogger(__name__)

PAID_CHECKOUT_STATUSES = {"paid", "no_payment_required"}
GRANT_ENTRY_TYPES = (CreditEntryType.SUBSCRIPTION_GRANT.value, CreditEntryType.YEARLY_ALLOCATION.value)


def now_epoch() -> int:
    return int(time.time())


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _metadata(obj: dict[str, Any]) -> dict[str, str]:
    raw = obj.get("metadata") or {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    # Newer API versions moved the link under parent.subscription_details.
    direct = object_id(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


def _invoice_subscription_metadata(invoice: dict[str, Any]) -> dict[str, str]:
    details = invoice.get("subscription_details") or (invoice.get("parent") or {}).get("subscription_details") or {}
    return _metadata(details)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _invoice_price_id(invoice: dict[str, Any]) -> str | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    line = lines[0]
    price = object_id(line.get("price"))
    if price:
        return price
    pricing = (line.get("pricing") or {}).get("price_details") or {}
    return object_id(pricing.get("price"))


def _months_elapsed(start: datetime, now: datetime) -> int:
    months = (now.year - start.year) * 12 + (now.month - start.month)
    if (now.day, now.time()) < (start.day, start.time()):
        months -= 1
    return max(months, 0)


class ReconciliationService:
    """
    Turns provider objects into local subscription, order and ledger state.

    Handlers never commit. They return ``True`` when local state changed and ``False``
    for a no-op, and raise ``ReconciliationError`` subclasses on failure; the caller
    owns the transaction. Side effects that must only happen once the state is durable
    (emails) are queued on ``pending_side_effects`` for the caller to run after commit.
    """

    def __init__(self, db: Session, stripe_service: StripeService):
        self.db = db
        self.stripe_service = stripe_service
        self.credits = CreditsService(db)
        self.pending_side_effects: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def _user_from_metadata(self, metadata: dict[str, str]) -> User | None:
        raw = metadata.get("user_id")
        if not raw:
            return None
        try:
            return self.db.get(User, int(raw))
        except ValueError:
            logger.warning("Ignoring malformed user_id metadata %r", raw)
            return None

    def _resolve_owner(self, subscription: dict[str, Any], fallback_metadata: dict[str, str] | None) -> int | None:
        """metadata.user_id, then the customer link, then an existing local row."""
        for metadata in (_metadata(subscription), fallback_metadata or {}):
            user = self._user_from_metadata(metadata)
            if user:
                return user.id

        customer_id = object_id(subscription.get("customer"))
        if customer_id:
            user = self.db.query(User).filter(User.stripe_customer_id == customer_id).first()
            if user:
                return user.id

        existing = (
            self.db.query(Subscription)
            .filter(Subscription.stripe_subscription_id == subscription.get("id"))
            .first()
        )
        return existing.user_id if existing else None

    def _resolve_plan(self, price_id: str | None, metadata: dict[str, str]) -> PricingPlan | None:
        if price_id:
            plan = self.db.query(PricingPlan).filter(PricingPlan.stripe_price_id == price_id).first()
            if plan:
                return plan
        plan_id = _int(metadata.get("plan_id"), default=0)
        if plan_id:
            return self.db.get(PricingPlan, plan_id)
        return None

    def _snapshot(
        self,
        subscription: dict[str, Any],
        *,
        version: int,
        fallback_metadata: dict[str, str] | None = None,
        status: str | None = None,
    ) -> SubscriptionSnapshot:
        subscription_id = subscription.get("id")
        user_id = self._resolve_owner(subscription, fallback_metadata)
        if user_id is None:
            raise NotYetVisibleError(f"Owner of subscription {subscription_id} is not resolvable yet")

        item = _first_item(subscription)
        price_id = object_id(item.get("price"))
        metadata = {**(fallback_metadata or {}), **_metadata(subscription)}
        plan = self._resolve_plan(price_id, metadata)

        # Period bounds live on the item in newer API versions.
        period_start = subscription.get("current_period_start") or item.get("current_period_start")
        period_end = subscription.get("current_period_end") or item.get("current_period_end")

        return SubscriptionSnapshot(
            stripe_subscription_id=subscription_id,
            user_id=user_id,
            status=status or subscription.get("status") or SubscriptionStatus.INCOMPLETE.value,
            version=version,
            plan_id=plan.id if plan else None,
            stripe_customer_id=object_id(subscription.get("customer")),
            price_id=price_id,
            current_period_start=from_timestamp(period_start),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            canceled_at=from_timestamp(subscription.get("canceled_at")),
            ended_at=from_timestamp(subscription.get("ended_at")),
            trial_start=from_timestamp(subscription.get("trial_start")),
            trial_end=from_timestamp(subscription.get("trial_end")),
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def sync_subscription(
        self,
        subscription_id: str,
        fallback_metadata: dict[str, str] | None = None,
    ) -> tuple[Subscription, bool]:
        """Re-fetch the authoritative subscription and merge it, versioned by fetch time."""
        subscription = self.stripe_service.retrieve_subscription(subscription_id)
        version = now_epoch()
        snapshot = self._snapshot(subscription, version=version, fallback_metadata=fallback_metadata)
        return billing_state.upsert_subscription(self.db, snapshot, authoritative=True)

    def handle_subscription_changed(self, subscription: dict[str, Any], event_created: int) -> bool:
        subscription_id = subscription.get("id")
        if not subscription_id:
            raise PaymentReferenceError("Subscription payload has no id")

        if not subscription.get("status") or not object_id(_first_item(subscription).get("price")):
            logger.info("Subscription %s payload incomplete; fetching from Stripe", subscription_id)
            _, changed = self.sync_subscription(subscription_id)
            return changed

        snapshot = self._snapshot(subscription, version=event_created)
        _, changed = billing_state.upsert_subscription(self.db, snapshot)
        return changed

    def handle_subscription_deleted(self, subscription: dict[str, Any], event_created: int) -> bool:
        subscription_id = subscription.get("id")
        if not subscription_id:
            raise PaymentReferenceError("Subscription payload has no id")

        snapshot = self._snapshot(
            subscription,
            version=event_created,
            status=SubscriptionStatus.CANCELED.value,
        )
        if snapshot.ended_at is None:
            snapshot.ended_at = from_timestamp(event_created)
        row, changed = billing_state.upsert_subscription(self.db, snapshot, force=True)

        if settings.REVOKE_SUBSCRIPTION_CREDITS_ON_CANCEL and row.status == SubscriptionStatus.CANCELED.value:
            changed = self._revoke_last_period_grant(row) or changed
        return changed

    def _revoke_last_period_grant(self, subscription: Subscription) -> bool:
        last_grant = (
            self.db.query(CreditLedger)
            .filter(
                CreditLedger.stripe_subscription_id == subscription.stripe_subscription_id,
                CreditLedger.entry_type.in_(GRANT_ENTRY_TYPES),
                CreditLedger.amount > 0,
            )
            .order_by(CreditLedger.id.desc())
            .first()
        )
        if not last_grant:
            return False
        entry, created = self.credits.revoke_up_to_balance(
            subscription.user_id,
            amount=last_grant.amount,
            source="stripe",
            idempotency_key=f"subscription:{subscription.stripe_subscription_id}:cancel_revoke",
            entry_type=CreditEntryType.CANCEL_REVOKE.value,
            description=f"Unused credits revoked on cancellation of {subscription.stripe_subscription_id}",
            stripe_subscription_id=subscription.stripe_subscription_id,
        )
        if created:
            logger.info(
                "Revoked %s credits from user %s on cancellation of %s",
                -entry.amount,
                subscription.user_id,
                subscription.stripe_subscription_id,
            )
        return created

    # ------------------------------------------------------------------
    # One-time checkout
    # ------------------------------------------------------------------
    def handle_checkout_completed(self, session: dict[str, Any]) -> bool:
        if session.get("mode") != "payment":
            return False
        session_id = session.get("id")
        if session.get("payment_status") not in PAID_CHECKOUT_STATUSES:
            logger.info(
                "Checkout session %s not paid (status=%s); skipping",
                session_id,
                session.get("payment_status"),
            )
            return False

        metadata = _metadata(session)
        user_id = _int(metadata.get("user_id"), default=0)
        plan_id = _int(metadata.get("plan_id"), default=0)
        if not user_id or not plan_id:
            raise PaymentReferenceError(f"Checkout session {session_id} missing user_id/plan_id metadata")

        payment_intent_id = object_id(session.get("payment_intent"))
        if not payment_intent_id:
            raise PaymentReferenceError(f"Checkout session {session_id} has no payment intent")

        user = self.db.get(User, user_id)
        if not user:
            raise PaymentReferenceError(f"User {user_id} from checkout session {session_id} does not exist")
        customer_id = object_id(session.get("customer"))
        if user.stripe_customer_id and customer_id and user.stripe_customer_id != customer_id:
            raise OwnerMismatchError(
                f"Stripe customer mismatch for user {user.id}: {customer_id} != {user.stripe_customer_id}"
            )

        plan = self.db.get(PricingPlan, plan_id)
        if not plan:
            raise PaymentReferenceError(f"Plan {plan_id} from checkout session {session_id} does not exist")

        totals = session.get("total_details") or {}
        fields = {
            "plan_id": plan.id,
            "price_id": metadata.get("price_id") or plan.stripe_price_id,
            "product_id": plan.stripe_product_id,
            "stripe_payment_intent_id": payment_intent_id,
            "amount_subtotal": _int(session.get("amount_subtotal")),
            "amount_discount": _int(totals.get("amount_discount")),
            "amount_tax": _int(totals.get("amount_tax")),
            "amount_total": _int(session.get("amount_total")),
            "currency": (session.get("currency") or self.stripe_service.currency).lower(),
            "metadata_": {**metadata, "checkout_session_id": session_id},
        }
        order, created = billing_state.claim_order(
            self.db,
            user_id=user.id,
            provider_order_id=payment_intent_id,
            order_type=OrderType.ONE_TIME_PURCHASE.value,
            status=OrderStatus.SUCCEEDED.value,
            **fields,
        )
        if not created:
            if order.status in (OrderStatus.SUCCEEDED.value, OrderStatus.REFUNDED.value):
                logger.info("Order for payment intent %s already %s", payment_intent_id, order.status)
                return False
            for name, value in fields.items():
                setattr(order, name, value)
            order.status = OrderStatus.SUCCEEDED.value
            self.db.flush()

        credits = plan.one_time_credits
        if credits > 0:
            self.credits.apply_ledger_entry(
                user.id,
                amount=credits,
                source="stripe",
                idempotency_key=f"order:{order.id}:one_time_grant",
                entry_type=CreditEntryType.ONE_TIME_PURCHASE.value,
                source_ref=session_id,
                description=f"{plan.card_title} purchase",
                related_order_id=order.id,
                commit=False,
            )
        logger.info("Recorded one-time order %s for user %s (%s credits)", order.id, user.id, credits)
        return True

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    def handle_invoice_paid(self, invoice: dict[str, Any], event_created: int) -> bool:
        invoice_id = invoice.get("id")
        if invoice.get("status") != "paid":
            logger.info("Invoice %s not paid (status=%s); skipping", invoice_id, invoice.get("status"))
            return False
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("Invoice %s is not tied to a subscription; skipping", invoice_id)
            return False

        subscription, changed = self.sync_subscription(
            subscription_id,
            fallback_metadata=_invoice_subscription_metadata(invoice),
        )

        order_type = (
            OrderType.SUBSCRIPTION_INITIAL.value
            if invoice.get("billing_reason") == "subscription_create"
            else OrderType.SUBSCRIPTION_RENEWAL.value
        )
        discounts = invoice.get("total_discount_amounts") or []
        order, order_created = billing_state.claim_order(
            self.db,
            user_id=subscription.user_id,
            provider_order_id=invoice_id,
            order_type=order_type,
            status=OrderStatus.SUCCEEDED.value,
            plan_id=subscription.plan_id,
            price_id=_invoice_price_id(invoice) or subscription.price_id,
            product_id=subscription.plan.stripe_product_id if subscription.plan else None,
            subscription_provider_id=subscription_id,
            stripe_invoice_id=invoice_id,
            stripe_payment_intent_id=object_id(invoice.get("payment_intent")),
            stripe_charge_id=object_id(invoice.get("charge")),
            amount_subtotal=_int(invoice.get("subtotal")),
            amount_discount=sum(_int(d.get("amount")) for d in discounts),
            amount_tax=_int(invoice.get("tax")),
            amount_total=_int(invoice.get("amount_paid")),
            currency=(invoice.get("currency") or self.stripe_service.currency).lower(),
            metadata_={"billing_reason": invoice.get("billing_reason"), "event_created": event_created},
        )
        changed = changed or order_created

        plan = subscription.plan
        if plan and plan.monthly_credits > 0:
            _, granted = self.credits.apply_ledger_entry(
                subscription.user_id,
                amount=plan.monthly_credits,
                source="stripe",
                idempotency_key=f"subscription:{subscription_id}:invoice:{invoice_id}",
                entry_type=CreditEntryType.SUBSCRIPTION_GRANT.value,
                source_ref=invoice_id,
                description=f"{plan.card_title} credits",
                related_order_id=order.id,
                stripe_subscription_id=subscription_id,
                stripe_invoice_id=invoice_id,
                commit=False,
            )
            changed = changed or granted
        return changed

    def handle_invoice_payment_failed(self, invoice: dict[str, Any], event_created: int) -> bool:
        invoice_id = invoice.get("id")
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("Failed invoice %s is not tied to a subscription; skipping", invoice_id)
            return False

        row, changed = billing_state.mark_subscription_past_due(self.db, subscription_id, version=event_created)
        if row is None:
            raise NotYetVisibleError(f"Subscription {subscription_id} for failed invoice {invoice_id} not stored yet")

        if changed:
            self._queue_payment_failed_email(row, invoice)
        return changed

    def _queue_payment_failed_email(self, subscription: Subscription, invoice: dict[str, Any]) -> None:
        kwargs = {
            "user_id": subscription.user_id,
            "invoice_id": invoice.get("id"),
            "subscription_id": subscription.stripe_subscription_id,
            "plan_name": subscription.plan.card_title if subscription.plan else None,
            "amount_due": _int(invoice.get("amount_due")),
            "currency": (invoice.get("currency") or self.stripe_service.currency).lower(),
            "next_payment_attempt": invoice.get("next_payment_attempt"),
            "hosted_invoice_url": invoice.get("hosted_invoice_url"),
        }
        self.pending_side_effects.append(lambda: fire_and_forget(send_invoice_payment_failed_email, **kwargs))

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------
    def _find_original_order(self, charge: dict[str, Any]) -> Order | None:
        payment_intent_id = object_id(charge.get("payment_intent"))
        if payment_intent_id:
            order = billing_state.find_order(self.db, payment_intent_id, OrderType.ONE_TIME_PURCHASE.value)
            if order:
                return order
        invoice_id = object_id(charge.get("invoice"))
        if invoice_id:
            for order_type in (OrderType.SUBSCRIPTION_INITIAL.value, OrderType.SUBSCRIPTION_RENEWAL.value):
                order = billing_state.find_order(self.db, invoice_id, order_type)
                if order:
                    return order
        return None

    def handle_charge_refunded(self, charge: dict[str, Any]) -> bool:
        charge_id = charge.get("id")
        if not charge_id:
            raise PaymentReferenceError("Charge payload has no id")

        original = self._find_original_order(charge)
        if original is None:
            if object_id(charge.get("invoice")):
                logger.info("Refunded charge %s belongs to an invoice with no local order; skipping", charge_id)
                return False
            raise NotYetVisibleError(f"Original order for refunded charge {charge_id} not stored yet")

        amount = _int(charge.get("amount"))
        amount_refunded = _int(charge.get("amount_refunded"))
        full_refund = bool(charge.get("refunded")) or (amount > 0 and amount_refunded >= amount)

        refund_order, changed = billing_state.claim_order(
            self.db,
            user_id=original.user_id,
            provider_order_id=charge_id,
            order_type=OrderType.REFUND.value,
            status=OrderStatus.SUCCEEDED.value,
            plan_id=original.plan_id,
            price_id=original.price_id,
            product_id=original.product_id,
            subscription_provider_id=original.subscription_provider_id,
            stripe_payment_intent_id=original.stripe_payment_intent_id,
            stripe_invoice_id=original.stripe_invoice_id,
            stripe_charge_id=charge_id,
            amount_total=amount_refunded,
            amount_refunded=amount_refunded,
            currency=(charge.get("currency") or original.currency).lower(),
            metadata_={"original_order_id": original.id, "full_refund": full_refund},
        )
        if not changed and amount_refunded > (refund_order.amount_refunded or 0):
            refund_order.amount_total = amount_refunded
            refund_order.amount_refunded = amount_refunded
            refund_order.metadata_ = {**(refund_order.metadata_ or {}), "full_refund": full_refund}
            changed = True

        if amount_refunded > (original.amount_refunded or 0):
            original.amount_refunded = amount_refunded
            changed = True

        if not full_refund:
            self.db.flush()
            logger.info("Partial refund of %s on order %s recorded", amount_refunded, original.id)
            return changed

        if original.status != OrderStatus.REFUNDED.value:
            original.status = OrderStatus.REFUNDED.value
            changed = True
        self.db.flush()

        if original.order_type == OrderType.ONE_TIME_PURCHASE.value:
            grant = self.credits.find_entry(f"order:{original.id}:one_time_grant")
            if grant and grant.amount > 0:
                _, revoked = self.credits.apply_ledger_entry(
                    original.user_id,
                    amount=-grant.amount,
                    source="stripe",
                    idempotency_key=f"order:{original.id}:refund_revoke",
                    entry_type=CreditEntryType.REFUND_REVOKE.value,
                    source_ref=charge_id,
                    description=f"Refund of order {original.id}",
                    related_order_id=original.id,
                    commit=False,
                )
                changed = changed or revoked
        return changed

    # ------------------------------------------------------------------
    # Yearly allocation
    # ------------------------------------------------------------------
    def allocate_yearly_credits(self, subscription: Subscription, now: datetime | None = None) -> int:
        """
        Grant the monthly slices of a yearly plan that have come due.

        Month 0 is granted by ``invoice.paid`` under the invoice key; months 1..N-1
        use ``<invoice key>:month:<k>``. Returns the number of entries written.
        """
        plan = subscription.plan
        if not plan or not plan.is_yearly or plan.monthly_credits <= 0:
            return 0
        if subscription.status not in ENTITLED_STATUSES:
            return 0
        period_start = as_utc(subscription.current_period_start)
        if period_start is None:
            return 0

        latest_invoice_order = (
            self.db.query(Order)
            .filter(
                Order.subscription_provider_id == subscription.stripe_subscription_id,
                Order.order_type.in_(
                    [OrderType.SUBSCRIPTION_INITIAL.value, OrderType.SUBSCRIPTION_RENEWAL.value]
                ),
                Order.status == OrderStatus.SUCCEEDED.value,
            )
            .order_by(Order.id.desc())
            .first()
        )
        if not latest_invoice_order:
            return 0

        now = as_utc(now) or datetime.now(timezone.utc)
        due = min(_months_elapsed(period_start, now), plan.total_months - 1)
        base_key = f"subscription:{subscription.stripe_subscription_id}:invoice:{latest_invoice_order.provider_order_id}"
        written = 0
        for month in range(1, due + 1):
            _, created = self.credits.apply_ledger_entry(
                subscription.user_id,
                amount=plan.monthly_credits,
                source="stripe",
                idempotency_key=f"{base_key}:month:{month}",
                entry_type=CreditEntryType.YEARLY_ALLOCATION.value,
                source_ref=latest_invoice_order.provider_order_id,
                description=f"{plan.card_title} credits (month {month + 1})",
                related_order_id=latest_invoice_order.id,
                stripe_subscription_id=subscription.stripe_subscription_id,
                stripe_invoice_id=latest_invoice_order.provider_order_id,
                commit=False,
            )
            written += int(created)
        return written

"""
Idempotent writes for provider-derived state.

Webhooks arrive at-least-once and out of order, and the fallback verifier can race
them. Everything that turns provider data into rows goes through here:

- subscriptions are merged by ``stripe_subscription_id`` under a row lock and a
  recency check on ``source_version``;
- orders are claimed by ``(provider, provider_order_id, order_type)``;
- ledger entries are claimed by ``idempotency_key`` (see ``CreditsService``).

Inserts run in a SAVEPOINT. Losing a unique-index race costs the savepoint only; the
caller then re-reads the winner's row and continues down the update path.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.order import Order
from app.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "stripe"

# Fields copied verbatim from a snapshot onto the row.
_SUBSCRIPTION_FIELDS = (
    "stripe_customer_id",
    "price_id",
    "status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
    "ended_at",
    "trial_start",
    "trial_end",
)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC (some backends hand back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value: Any) -> datetime | None:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass
class SubscriptionSnapshot:
    """Provider subscription state as of ``version`` (epoch seconds)."""

    stripe_subscription_id: str
    user_id: int
    status: str
    version: int
    plan_id: int | None = None
    stripe_customer_id: str | None = None
    price_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _lock_subscription(db: Session, stripe_subscription_id: str) -> Subscription | None:
    return (
        db.query(Subscription)
        .filter(Subscription.stripe_subscription_id == stripe_subscription_id)
        .with_for_update()
        .first()
    )


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value)
    return value


def upsert_subscription(
    db: Session,
    snapshot: SubscriptionSnapshot,
    *,
    force: bool = False,
    authoritative: bool = False,
) -> tuple[Subscription, bool]:
    """
    Merge ``snapshot`` into the local subscription row.

    Returns ``(row, changed)``. A snapshot that is not newer than the stored
    ``source_version`` is discarded, as is any attempt to move a ``canceled`` row to
    another status. ``authoritative`` snapshots (fresh fetches from Stripe) still
    apply on a same-second tie. ``force`` skips the recency check; deletions use it
    because cancellation is final whatever order the events arrive in.
    """
    row = _lock_subscription(db, snapshot.stripe_subscription_id)
    if row is None:
        row = Subscription(
            stripe_subscription_id=snapshot.stripe_subscription_id,
            user_id=snapshot.user_id,
            plan_id=snapshot.plan_id,
            metadata_=dict(snapshot.metadata) or None,
            source_version=snapshot.version,
            **{name: getattr(snapshot, name) for name in _SUBSCRIPTION_FIELDS},
        )
        try:
            with db.begin_nested():
                db.add(row)
                db.flush()
            logger.info(
                "Created subscription %s for user %s (status=%s)",
                snapshot.stripe_subscription_id,
                snapshot.user_id,
                snapshot.status,
            )
            return row, True
        except IntegrityError:
            row = _lock_subscription(db, snapshot.stripe_subscription_id)
            if row is None:
                raise

    stored_version = int(row.source_version or 0)
    stale = snapshot.version < stored_version or (snapshot.version == stored_version and not authoritative)
    if not force and stale:
        logger.info(
            "Discarding stale snapshot for subscription %s (version %s, stored %s)",
            snapshot.stripe_subscription_id,
            snapshot.version,
            row.source_version,
        )
        return row, False

    if row.status == SubscriptionStatus.CANCELED.value and snapshot.status != SubscriptionStatus.CANCELED.value:
        logger.info(
            "Subscription %s is canceled; ignoring transition to %s",
            snapshot.stripe_subscription_id,
            snapshot.status,
        )
        return row, False

    if row.user_id != snapshot.user_id:
        logger.warning(
            "Subscription %s owner differs between row (%s) and snapshot (%s); keeping row owner",
            snapshot.stripe_subscription_id,
            row.user_id,
            snapshot.user_id,
        )

    changed = False
    for name in _SUBSCRIPTION_FIELDS:
        incoming = getattr(snapshot, name)
        if name in ("stripe_customer_id", "price_id") and incoming is None:
            continue
        if _normalize(getattr(row, name)) != _normalize(incoming):
            setattr(row, name, incoming)
            changed = True

    if snapshot.plan_id is not None and row.plan_id != snapshot.plan_id:
        row.plan_id = snapshot.plan_id
        changed = True

    if snapshot.metadata:
        merged = {**(row.metadata_ or {}), **snapshot.metadata}
        if merged != (row.metadata_ or {}):
            row.metadata_ = merged
            changed = True

    row.source_version = max(int(row.source_version or 0), int(snapshot.version))
    db.flush()
    return row, changed


def mark_subscription_past_due(db: Session, stripe_subscription_id: str, *, version: int) -> tuple[Subscription | None, bool]:
    """
    Move an existing subscription to ``past_due`` unless newer state is already stored.

    Returns ``(None, False)`` when the subscription is not known locally.
    """
    row = _lock_subscription(db, stripe_subscription_id)
    if row is None:
        return None, False
    if version <= (row.source_version or 0):
        return row, False
    if row.status in (SubscriptionStatus.CANCELED.value, SubscriptionStatus.PAST_DUE.value):
        return row, False
    row.status = SubscriptionStatus.PAST_DUE.value
    row.source_version = max(int(row.source_version or 0), int(version))
    db.flush()
    return row, True


def _find_order(db: Session, provider: str, provider_order_id: str, order_type: str) -> Order | None:
    return (
        db.query(Order)
        .filter(
            Order.provider == provider,
            Order.provider_order_id == provider_order_id,
            Order.order_type == order_type,
        )
        .with_for_update()
        .first()
    )


def claim_order(
    db: Session,
    *,
    user_id: int,
    provider_order_id: str,
    order_type: str,
    status: str,
    provider: str = DEFAULT_PROVIDER,
    **fields: Any,
) -> tuple[Order, bool]:
    """
    Insert the order unless one with the same natural key exists.

    Returns ``(order, created)``. An existing order is returned untouched (and locked);
    deciding whether it needs an update is the caller's business.
    """
    existing = _find_order(db, provider, provider_order_id, order_type)
    if existing is not None:
        return existing, False

    order = Order(
        user_id=user_id,
        provider=provider,
        provider_order_id=provider_order_id,
        order_type=order_type,
        status=status,
        **fields,
    )
    try:
        with db.begin_nested():
            db.add(order)
            db.flush()
    except IntegrityError:
        existing = _find_order(db, provider, provider_order_id, order_type)
        if existing is None:
            raise
        return existing, False
    return order, True


def find_order(db: Session, provider_order_id: str, order_type: str, provider: str = DEFAULT_PROVIDER) -> Order | None:
    return _find_order(db, provider, provider_order_id, order_type)

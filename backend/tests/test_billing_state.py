from __future__ import annotations

from datetime import datetime, timezone

from app.models.order import Order, OrderStatus, OrderType
from app.services import billing_state
from app.services.billing_state import SubscriptionSnapshot, as_utc, from_timestamp


def _snapshot(user_id: int, *, status: str = "active", version: int = 100, **extra) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        stripe_subscription_id="sub_1",
        user_id=user_id,
        status=status,
        version=version,
        price_id="price_monthly",
        current_period_end=datetime(2026, 11, 1, tzinfo=timezone.utc),
        **extra,
    )


def test_upsert_creates_then_merges(db_session, users):
    user, _ = users

    row, created = billing_state.upsert_subscription(db_session, _snapshot(user.id, metadata={"user_id": str(user.id)}))
    db_session.commit()
    assert created is True
    assert row.source_version == 100
    assert row.metadata_ == {"user_id": str(user.id)}

    same, changed = billing_state.upsert_subscription(db_session, _snapshot(user.id, version=150))
    db_session.commit()
    assert same.id == row.id
    assert changed is False
    assert same.source_version == 150

    _, changed = billing_state.upsert_subscription(
        db_session, _snapshot(user.id, version=160, cancel_at_period_end=True, metadata={"referral": "x"})
    )
    db_session.commit()
    assert changed is True
    assert row.cancel_at_period_end is True
    assert row.metadata_ == {"user_id": str(user.id), "referral": "x"}


def test_upsert_discards_older_snapshot_unless_forced(db_session, users):
    user, _ = users
    billing_state.upsert_subscription(db_session, _snapshot(user.id, version=200))

    row, changed = billing_state.upsert_subscription(db_session, _snapshot(user.id, status="past_due", version=199))
    assert changed is False
    assert row.status == "active"

    row, changed = billing_state.upsert_subscription(
        db_session, _snapshot(user.id, status="canceled", version=150), force=True
    )
    assert changed is True
    assert row.status == "canceled"
    assert row.source_version == 200


def test_upsert_discards_same_second_event_unless_authoritative(db_session, users):
    user, _ = users
    billing_state.upsert_subscription(db_session, _snapshot(user.id, version=200))

    row, changed = billing_state.upsert_subscription(db_session, _snapshot(user.id, status="incomplete", version=200))
    assert changed is False
    assert row.status == "active"

    row, changed = billing_state.upsert_subscription(
        db_session, _snapshot(user.id, status="past_due", version=200), authoritative=True
    )
    assert changed is True
    assert row.status == "past_due"


def test_upsert_keeps_known_price_when_snapshot_lacks_it(db_session, users):
    user, _ = users
    billing_state.upsert_subscription(db_session, _snapshot(user.id))

    snapshot = _snapshot(user.id, version=101)
    snapshot.price_id = None
    row, _ = billing_state.upsert_subscription(db_session, snapshot)

    assert row.price_id == "price_monthly"


def test_upsert_keeps_row_owner(db_session, users):
    user_a, user_b = users
    billing_state.upsert_subscription(db_session, _snapshot(user_a.id))

    row, _ = billing_state.upsert_subscription(db_session, _snapshot(user_b.id, version=101))

    assert row.user_id == user_a.id


def test_mark_past_due(db_session, users):
    user, _ = users
    assert billing_state.mark_subscription_past_due(db_session, "sub_1", version=10) == (None, False)

    billing_state.upsert_subscription(db_session, _snapshot(user.id, version=100))
    row, changed = billing_state.mark_subscription_past_due(db_session, "sub_1", version=50)
    assert changed is False
    assert row.status == "active"

    row, changed = billing_state.mark_subscription_past_due(db_session, "sub_1", version=100)
    assert changed is False
    assert row.status == "active"

    row, changed = billing_state.mark_subscription_past_due(db_session, "sub_1", version=120)
    assert changed is True
    assert row.status == "past_due"
    assert row.source_version == 120

    _, changed = billing_state.mark_subscription_past_due(db_session, "sub_1", version=130)
    assert changed is False


def test_claim_order_is_unique_per_natural_key(db_session, users):
    user, _ = users

    order, created = billing_state.claim_order(
        db_session,
        user_id=user.id,
        provider_order_id="pi_1",
        order_type=OrderType.ONE_TIME_PURCHASE.value,
        status=OrderStatus.SUCCEEDED.value,
        amount_total=1000,
    )
    again, created_again = billing_state.claim_order(
        db_session,
        user_id=user.id,
        provider_order_id="pi_1",
        order_type=OrderType.ONE_TIME_PURCHASE.value,
        status=OrderStatus.FAILED.value,
        amount_total=5,
    )
    # Same provider id, different order type: a separate order.
    refund, refund_created = billing_state.claim_order(
        db_session,
        user_id=user.id,
        provider_order_id="pi_1",
        order_type=OrderType.REFUND.value,
        status=OrderStatus.SUCCEEDED.value,
    )
    db_session.commit()

    assert created is True
    assert created_again is False
    assert again.id == order.id
    assert again.amount_total == 1000
    assert again.status == OrderStatus.SUCCEEDED.value
    assert refund_created is True
    assert refund.id != order.id
    assert db_session.query(Order).count() == 2
    assert billing_state.find_order(db_session, "pi_1", OrderType.REFUND.value).id == refund.id


def test_timestamp_helpers():
    assert from_timestamp(None) is None
    assert from_timestamp(0) is None
    assert from_timestamp("nope") is None
    assert from_timestamp(1_760_000_000) == datetime(2025, 10, 9, 8, 53, 20, tzinfo=timezone.utc)
    assert as_utc(datetime(2026, 1, 1)).tzinfo is timezone.utc

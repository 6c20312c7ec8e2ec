from __future__ import annotations

import json

import pytest
from sqlalchemy import update

from app.core import config as app_config
from app.models.user import User
from app.services.billing_errors import (
    MalformedWebhookError,
    ProviderObjectNotFoundError,
    ProviderUnavailableError,
    StripeServiceError,
    WebhookConfigurationError,
    WebhookSignatureError,
)
from app.services.stripe import StripeService, as_plain, object_id
from app.services.stripe_events import StripeEventKind

from stripe_payloads import event_bytes, subscription_obj


def test_ensure_customer_creates_once(db_session, users, fake_stripe):
    user, _ = users
    service = StripeService(db_session, fake_stripe)

    first = service.ensure_customer(user)
    second = service.ensure_customer(user)

    assert first == "cus_1"
    assert second == "cus_1"
    assert len(fake_stripe.created_customers) == 1
    assert fake_stripe.created_customers[0]["metadata"] == {"user_id": str(user.id)}
    db_session.refresh(user)
    assert user.stripe_customer_id == "cus_1"


def test_ensure_customer_keeps_existing_link_when_racing(db_session, users, fake_stripe, monkeypatch):
    user, _ = users
    service = StripeService(db_session, fake_stripe)
    original_create = fake_stripe.Customer.create

    def _create_after_competitor(**kwargs):
        # Another request links the user between our read and our write.
        db_session.execute(_link_customer(user.id, "cus_winner"))
        return original_create(**kwargs)

    monkeypatch.setattr(fake_stripe.Customer, "create", _create_after_competitor)

    assert service.ensure_customer(user) == "cus_winner"


def _link_customer(user_id: int, customer_id: str):
    return update(User).where(User.id == user_id).values(stripe_customer_id=customer_id)


def test_ensure_customer_requires_secret_key(db_session, users, fake_stripe):
    user, _ = users
    app_config.settings.STRIPE_SECRET_KEY = None
    service = StripeService(db_session, fake_stripe)

    with pytest.raises(StripeServiceError):
        service.ensure_customer(user)
    assert fake_stripe.created_customers == []


def test_checkout_session_for_one_time_plan(db_session, users, plans, fake_stripe):
    user, _ = users
    service = StripeService(db_session, fake_stripe)

    session = service.create_checkout_session(
        user,
        price_id="price_pack",
        success_url="https://app.example.test/payment/success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://app.example.test/pricing",
    )

    assert session["id"] == "cs_test_1"
    params = fake_stripe.checkout_sessions[0]
    assert params["mode"] == "payment"
    assert params["customer"] == "cus_1"
    assert params["line_items"] == [{"price": "price_pack", "quantity": 1}]
    assert params["metadata"]["user_id"] == str(user.id)
    assert params["metadata"]["plan_id"] == str(plans["pack"].id)
    assert params["payment_intent_data"]["metadata"] == params["metadata"]
    assert params["allow_promotion_codes"] is True
    assert "subscription_data" not in params


def test_checkout_session_for_subscription_with_coupon_and_referral(db_session, users, plans, fake_stripe):
    user, _ = users
    plans["monthly"].trial_period_days = 7
    db_session.commit()
    service = StripeService(db_session, fake_stripe)

    service.create_checkout_session(
        user,
        price_id="price_monthly",
        success_url="https://app.example.test/ok",
        cancel_url="https://app.example.test/cancel",
        coupon_code="LAUNCH",
        referral="friend-42",
    )

    params = fake_stripe.checkout_sessions[0]
    assert params["mode"] == "subscription"
    assert params["discounts"] == [{"coupon": "LAUNCH"}]
    assert "allow_promotion_codes" not in params
    assert params["client_reference_id"] == "friend-42"
    assert params["subscription_data"]["trial_period_days"] == 7
    assert params["subscription_data"]["metadata"]["user_id"] == str(user.id)
    assert "payment_intent_data" not in params


def test_checkout_session_rejects_inactive_price(db_session, users, plans, fake_stripe):
    user, _ = users
    service = StripeService(db_session, fake_stripe)

    with pytest.raises(StripeServiceError):
        service.create_checkout_session(
            user,
            price_id="price_legacy",
            success_url="https://app.example.test/ok",
            cancel_url="https://app.example.test/cancel",
        )
    assert fake_stripe.checkout_sessions == []


def test_portal_session_requires_customer(db_session, users, fake_stripe):
    user, _ = users
    service = StripeService(db_session, fake_stripe)

    with pytest.raises(StripeServiceError):
        service.create_portal_session(user, return_url="https://app.example.test/settings/billing")

    service.ensure_customer(user)
    session = service.create_portal_session(user, return_url="https://app.example.test/settings/billing")
    assert session["url"].startswith("https://portal.example.test")
    assert fake_stripe.portal_sessions[0]["customer"] == "cus_1"


def test_parse_event_verifies_and_classifies(db_session, fake_stripe):
    service = StripeService(db_session, fake_stripe)
    payload = event_bytes("evt_1", "customer.subscription.updated", subscription_obj(), created=1_700_000_123)

    event = service.parse_event(payload, "valid")

    assert event.id == "evt_1"
    assert event.kind is StripeEventKind.SUBSCRIPTION_UPDATED
    assert event.created == 1_700_000_123
    assert event.data_object["id"] == "sub_1"
    assert event.is_relevant


def test_parse_event_keeps_unknown_types_unclassified(db_session, fake_stripe):
    service = StripeService(db_session, fake_stripe)

    event = service.parse_event(event_bytes("evt_2", "customer.created", {"id": "cus_9"}), "valid")

    assert event.kind is None
    assert not event.is_relevant


def test_parse_event_rejects_missing_configuration(db_session, fake_stripe):
    service = StripeService(db_session, fake_stripe)
    payload = event_bytes("evt_1", "invoice.paid", {"id": "in_1"})

    with pytest.raises(WebhookConfigurationError):
        service.parse_event(payload, None)

    app_config.settings.STRIPE_WEBHOOK_SECRET = None
    with pytest.raises(WebhookConfigurationError):
        service.parse_event(payload, "valid")


def test_parse_event_rejects_bad_signature(db_session, fake_stripe):
    service = StripeService(db_session, fake_stripe)

    with pytest.raises(WebhookSignatureError):
        service.parse_event(event_bytes("evt_1", "invoice.paid", {"id": "in_1"}), "forged")


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        json.dumps(["a", "list"]).encode(),
        json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode(),
        json.dumps({"id": "evt_1", "type": "invoice.paid", "created": "soon", "data": {"object": {}}}).encode(),
    ],
)
def test_parse_event_rejects_malformed_payloads(db_session, fake_stripe, payload):
    service = StripeService(db_session, fake_stripe)

    with pytest.raises(MalformedWebhookError):
        service.parse_event(payload, "valid")


def test_retrieve_maps_sdk_failures(db_session, fake_stripe):
    service = StripeService(db_session, fake_stripe)
    fake_stripe.subscriptions["sub_1"] = subscription_obj()

    assert service.retrieve_subscription("sub_1")["status"] == "active"

    with pytest.raises(ProviderObjectNotFoundError):
        service.retrieve_subscription("sub_missing")

    fake_stripe.fail_next["Subscription.retrieve"] = fake_stripe.APIConnectionError("boom")
    with pytest.raises(ProviderUnavailableError) as excinfo:
        service.retrieve_subscription("sub_1")
    assert excinfo.value.retryable is True

    fake_stripe.fail_next["Subscription.retrieve"] = fake_stripe.StripeError("upstream", http_status=502)
    with pytest.raises(ProviderUnavailableError):
        service.retrieve_subscription("sub_1")

    fake_stripe.fail_next["Subscription.retrieve"] = fake_stripe.InvalidRequestError("bad", code="parameter_invalid")
    with pytest.raises(StripeServiceError) as excinfo:
        service.retrieve_subscription("sub_1")
    assert not isinstance(excinfo.value, ProviderUnavailableError)


def test_as_plain_and_object_id_helpers():
    class _SdkObject:
        id = "sub_9"

        def to_dict_recursive(self):
            return {"id": "sub_9", "items": {"data": [{"price": {"id": "price_x"}}]}}

    assert as_plain(_SdkObject()) == {"id": "sub_9", "items": {"data": [{"price": {"id": "price_x"}}]}}
    assert object_id("cus_1") == "cus_1"
    assert object_id({"id": "cus_2"}) == "cus_2"
    assert object_id(_SdkObject()) == "sub_9"
    assert object_id("") is None
    assert object_id(None) is None

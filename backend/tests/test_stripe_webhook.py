from __future__ import annotations

from app.core import config as app_config
from app.models.stripe_event import StripeEvent, StripeEventStatus
from app.services.credits import CreditsService

from stripe_payloads import charge_obj, checkout_session_obj, event_bytes, invoice_obj, subscription_obj

WEBHOOK_URL = "/billing/stripe/webhook"


def _post(client, payload: bytes, signature: str | None = "valid"):
    headers = {"stripe-signature": signature} if signature else {}
    return client.post(WEBHOOK_URL, content=payload, headers=headers)


def test_webhook_is_public_and_processes_checkout(anonymous_client, db_session, users, plans):
    user, _ = users
    payload = event_bytes("evt_1", "checkout.session.completed", checkout_session_obj(user_id=user.id, plan_id=plans["pack"].id))

    resp = _post(anonymous_client, payload)

    assert resp.status_code == 200, resp.text
    assert resp.json() == {"received": True, "status": "processed"}
    assert CreditsService(db_session).get_balance(user.id) == 100


def test_webhook_duplicate_delivery(anonymous_client, db_session, users, plans):
    user, _ = users
    payload = event_bytes("evt_1", "checkout.session.completed", checkout_session_obj(user_id=user.id, plan_id=plans["pack"].id))

    _post(anonymous_client, payload)
    resp = _post(anonymous_client, payload)

    assert resp.status_code == 200
    assert resp.json()["status"] == "duplicate"
    assert CreditsService(db_session).get_balance(user.id) == 100


def test_webhook_rejects_bad_signature(anonymous_client, db_session):
    payload = event_bytes("evt_1", "invoice.paid", invoice_obj())

    assert _post(anonymous_client, payload, signature="forged").status_code == 400
    assert _post(anonymous_client, payload, signature=None).status_code == 400
    assert db_session.query(StripeEvent).count() == 0


def test_webhook_rejects_malformed_payload(anonymous_client):
    resp = _post(anonymous_client, b"{not json")

    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_ERROR"


def test_webhook_without_secret_is_rejected(anonymous_client):
    app_config.settings.STRIPE_WEBHOOK_SECRET = None

    resp = _post(anonymous_client, event_bytes("evt_1", "invoice.paid", invoice_obj()))

    assert resp.status_code == 400


def test_webhook_ignores_unsupported_types(anonymous_client, db_session):
    resp = _post(anonymous_client, event_bytes("evt_1", "customer.created", {"id": "cus_1"}))

    assert resp.status_code == 200
    assert resp.json()["status"] == "ignored"
    assert db_session.query(StripeEvent).count() == 0


def test_webhook_failure_returns_500_for_redelivery(anonymous_client, db_session, users, plans):
    user, _ = users
    refund = event_bytes("evt_refund", "charge.refunded", charge_obj())

    resp = _post(anonymous_client, refund)

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "INTERNAL_ERROR"
    assert body["details"] == {"event_id": "evt_refund", "retryable": True}

    # Stripe redelivers after the order shows up.
    _post(
        anonymous_client,
        event_bytes("evt_checkout", "checkout.session.completed", checkout_session_obj(user_id=user.id, plan_id=plans["pack"].id)),
    )
    resp = _post(anonymous_client, refund)
    assert resp.status_code == 200
    assert resp.json()["status"] == "processed"
    assert CreditsService(db_session).get_balance(user.id) == 0


def test_webhook_out_of_order_subscription_events(anonymous_client, db_session, users, plans):
    user, _ = users
    newer = event_bytes("evt_2", "customer.subscription.updated", subscription_obj(user_id=user.id, status="past_due"), created=200)
    older = event_bytes("evt_1", "customer.subscription.created", subscription_obj(user_id=user.id, status="active"), created=100)

    assert _post(anonymous_client, newer).json()["status"] == "processed"
    assert _post(anonymous_client, older).json()["status"] == "skipped"

    record = db_session.query(StripeEvent).filter(StripeEvent.stripe_event_id == "evt_1").one()
    assert record.status == StripeEventStatus.SKIPPED.value


def test_webhook_async_mode_defers_processing(anonymous_client, db_session, users, plans, task_session, fake_stripe, monkeypatch):
    user, _ = users
    app_config.settings.STRIPE_WEBHOOK_ASYNC_PROCESSING = True
    # The inline task builds its own StripeService; point it at the fake SDK.
    monkeypatch.setattr("app.services.stripe.stripe", fake_stripe)
    payload = event_bytes("evt_1", "checkout.session.completed", checkout_session_obj(user_id=user.id, plan_id=plans["pack"].id))

    resp = _post(anonymous_client, payload)

    assert resp.status_code == 200
    assert resp.json()["status"] == "deferred"
    # Without a broker the task runs inline.
    db_session.expire_all()
    record = db_session.query(StripeEvent).filter(StripeEvent.stripe_event_id == "evt_1").one()
    assert record.status == StripeEventStatus.PROCESSED.value
    assert CreditsService(db_session).get_balance(user.id) == 100

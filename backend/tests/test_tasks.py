from __future__ import annotations

import pytest

from app.core import config as app_config
from app.models.stripe_event import StripeEvent, StripeEventStatus
from app.services import resend_email
from app.services.credits import CreditsService
from app.services.reconciliation import ReconciliationService
from app.services.stripe import StripeService
from app.tasks import notifications as notification_tasks
from app.tasks import stripe_events as stripe_event_tasks

from stripe_payloads import PERIOD_START, charge_obj, checkout_session_obj, event_dict, invoice_obj, subscription_obj


@pytest.fixture()
def sdk(fake_stripe, monkeypatch):
    # Tasks build their own StripeService from the module-level SDK.
    monkeypatch.setattr("app.services.stripe.stripe", fake_stripe)
    return fake_stripe


def _store_event(db_session, event_id: str, event_type: str, obj: dict, status: str = StripeEventStatus.PENDING.value):
    db_session.add(
        StripeEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=event_dict(event_id, event_type, obj),
            status=status,
        )
    )
    db_session.commit()


def test_process_stripe_event_task(task_session, users, plans, sdk):
    user, _ = users
    _store_event(
        task_session,
        "evt_1",
        "checkout.session.completed",
        checkout_session_obj(user_id=user.id, plan_id=plans["pack"].id),
    )

    assert stripe_event_tasks.process_stripe_event.run("evt_1") == "processed"
    assert stripe_event_tasks.process_stripe_event.run("evt_1") == "duplicate"
    assert CreditsService(task_session).get_balance(user.id) == 100


def test_replay_task_processes_failed_events(task_session, users, plans, sdk):
    user, _ = users
    ReconciliationService(task_session, StripeService(task_session)).handle_checkout_completed(
        checkout_session_obj(user_id=user.id, plan_id=plans["pack"].id)
    )
    task_session.commit()
    _store_event(task_session, "evt_refund", "charge.refunded", charge_obj(), status=StripeEventStatus.FAILED.value)

    assert stripe_event_tasks.replay_stripe_events.run(limit=10) == 1
    assert CreditsService(task_session).get_balance(user.id) == 0


def test_yearly_allocation_task(task_session, users, plans, sdk, monkeypatch):
    user, _ = users
    sdk.subscriptions["sub_y"] = subscription_obj(
        "sub_y",
        user_id=user.id,
        price_id="price_yearly",
        period_start=PERIOD_START - 200 * 24 * 3600,
    )
    ReconciliationService(task_session, StripeService(task_session)).handle_invoice_paid(
        invoice_obj("in_y", sub_id="sub_y", price_id="price_yearly"), PERIOD_START
    )
    task_session.commit()
    assert CreditsService(task_session).get_balance(user.id) == 40

    written = stripe_event_tasks.grant_due_yearly_allocations.run()

    assert written >= 6
    assert stripe_event_tasks.grant_due_yearly_allocations.run() == 0
    assert CreditsService(task_session).get_balance(user.id) == 40 * (written + 1)


def test_payment_failed_email_disabled(task_session, users):
    user, _ = users

    assert notification_tasks.send_invoice_payment_failed_email.run(user_id=user.id, invoice_id="in_1") is False


def test_payment_failed_email_sends_via_resend(task_session, users, monkeypatch):
    user, _ = users
    app_config.settings.EMAIL_ENABLED = True
    app_config.settings.RESEND_API_KEY = "re_test"
    app_config.settings.RESEND_FROM_EMAIL = "billing@example.com"
    sent = []
    monkeypatch.setattr(resend_email.resend.Emails, "send", lambda payload: sent.append(payload))

    ok = notification_tasks.send_invoice_payment_failed_email.run(
        user_id=user.id,
        invoice_id="in_1",
        plan_name="Pro Monthly",
        amount_due=1500,
        currency="usd",
        hosted_invoice_url="https://invoice.example.test/in_1",
    )

    assert ok is True
    assert sent[0]["to"] == [user.email]
    assert "15.00 USD" in sent[0]["text"]
    assert "https://invoice.example.test/in_1" in sent[0]["html"]


def test_payment_failed_email_missing_config_is_logged(task_session, users):
    user, _ = users
    app_config.settings.EMAIL_ENABLED = True
    app_config.settings.RESEND_API_KEY = ""

    assert notification_tasks.send_invoice_payment_failed_email.run(user_id=user.id, invoice_id="in_1") is False


def test_payment_failed_email_unknown_user(task_session):
    app_config.settings.EMAIL_ENABLED = True

    assert notification_tasks.send_invoice_payment_failed_email.run(user_id=424242, invoice_id="in_1") is False


def test_format_amount():
    assert resend_email.format_amount(1999, "eur") == "19.99 EUR"

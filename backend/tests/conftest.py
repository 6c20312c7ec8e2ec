import os

# Ensure JWT_SECRET exists before importing app.main (it calls require_jwt_secret() at import time).
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import json
from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.base import Base
from app.core import config as app_config

# Import models so they register with SQLAlchemy metadata.
from app.models.user import User  # noqa: F401
from app.models.pricing_plan import PricingPlan  # noqa: F401
from app.models.subscription import Subscription  # noqa: F401
from app.models.order import Order  # noqa: F401
from app.models.credit import CreditLedger  # noqa: F401
from app.models.stripe_event import StripeEvent  # noqa: F401

from app.core.database import get_db
from app.dependencies.auth import get_current_user
from app.dependencies.stripe import get_stripe_client


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite starts transactions lazily, which breaks SAVEPOINT nesting. Let
    # SQLAlchemy emit BEGIN itself so begin_nested() behaves like it does on Postgres.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # Important: because we use an in-memory SQLite DB with StaticPool, the DB
    # persists across tests. Reset schema per test to avoid cross-test coupling.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests sometimes tweak global settings (app_config.settings.*). Because that object is
    process-global, we must restore values after each test to avoid cross-test coupling.
    """
    keys = [
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_WEBHOOK_ASYNC_PROCESSING",
        "STRIPE_EVENT_CLAIM_TIMEOUT_SECONDS",
        "REVOKE_SUBSCRIPTION_CREDITS_ON_CANCEL",
        "EMAIL_ENABLED",
        "RESEND_API_KEY",
        "RESEND_FROM_EMAIL",
        "FRONTEND_BASE_URL",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    app_config.settings.STRIPE_SECRET_KEY = "sk_test"
    app_config.settings.STRIPE_WEBHOOK_SECRET = "whsec_test"
    app_config.settings.STRIPE_WEBHOOK_ASYNC_PROCESSING = False
    app_config.settings.EMAIL_ENABLED = False
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


# ----------------------------------------------------------------------
# Fake Stripe SDK
# ----------------------------------------------------------------------
class FakeStripeError(Exception):
    def __init__(self, message: str = "", *, code: str | None = None, http_status: int | None = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class FakeStripe:
    """
    Stands in for the ``stripe`` module: same attribute surface, in-memory objects.

    Provider objects are plain dicts keyed by id in ``subscriptions``, ``invoices``,
    ``charges`` and ``sessions``. ``fail_next[name] = exc`` makes the next call to
    ``name`` (e.g. "Subscription.retrieve") raise ``exc``.
    """

    StripeError = FakeStripeError

    class APIConnectionError(FakeStripeError):
        pass

    class RateLimitError(FakeStripeError):
        pass

    class InvalidRequestError(FakeStripeError):
        pass

    class SignatureVerificationError(FakeStripeError):
        pass

    def __init__(self):
        self.api_key = None
        self.max_network_retries = 0
        self.created_customers: list[dict] = []
        self.checkout_sessions: list[dict] = []
        self.portal_sessions: list[dict] = []
        self.subscriptions: dict[str, dict] = {}
        self.invoices: dict[str, dict] = {}
        self.charges: dict[str, dict] = {}
        self.sessions: dict[str, dict] = {}
        self.calls: list[str] = []
        self.fail_next: dict[str, Exception] = {}

        fake = self

        def _tracked(name, fn):
            def _call(*args, **kwargs):
                fake.calls.append(name)
                exc = fake.fail_next.pop(name, None)
                if exc is not None:
                    raise exc
                return fn(*args, **kwargs)

            return _call

        def _lookup(store: dict, kind: str):
            def _retrieve(object_id, **kwargs):  # noqa: ARG001
                if object_id not in store:
                    raise fake.InvalidRequestError(f"No such {kind}: {object_id}", code="resource_missing")
                return json.loads(json.dumps(store[object_id]))

            return _retrieve

        def _create_customer(**kwargs):
            cid = f"cus_{len(fake.created_customers) + 1}"
            fake.created_customers.append(kwargs | {"id": cid})
            return {"id": cid}

        def _create_checkout(**kwargs):
            sid = f"cs_test_{len(fake.checkout_sessions) + 1}"
            session = {"id": sid, "url": f"https://checkout.example.test/{sid}", **kwargs}
            fake.checkout_sessions.append(session)
            return session

        def _create_portal(**kwargs):
            session = {"id": f"bps_{len(fake.portal_sessions) + 1}", "url": "https://portal.example.test/session", **kwargs}
            fake.portal_sessions.append(session)
            return session

        def _construct_event(payload, sig_header, secret):
            if sig_header != "valid" or secret != app_config.settings.STRIPE_WEBHOOK_SECRET:
                raise fake.SignatureVerificationError("No signatures found matching the expected signature")
            return json.loads(payload)

        self.Customer = SimpleNamespace(create=_tracked("Customer.create", _create_customer))
        self.checkout = SimpleNamespace(
            Session=SimpleNamespace(
                create=_tracked("checkout.Session.create", _create_checkout),
                retrieve=_tracked("checkout.Session.retrieve", _lookup(self.sessions, "checkout session")),
            )
        )
        self.billing_portal = SimpleNamespace(
            Session=SimpleNamespace(create=_tracked("billing_portal.Session.create", _create_portal))
        )
        self.Subscription = SimpleNamespace(
            retrieve=_tracked("Subscription.retrieve", _lookup(self.subscriptions, "subscription"))
        )
        self.Invoice = SimpleNamespace(retrieve=_tracked("Invoice.retrieve", _lookup(self.invoices, "invoice")))
        self.Charge = SimpleNamespace(retrieve=_tracked("Charge.retrieve", _lookup(self.charges, "charge")))
        self.Webhook = SimpleNamespace(construct_event=_construct_event)


@pytest.fixture()
def fake_stripe():
    return FakeStripe()


# ----------------------------------------------------------------------
# Data
# ----------------------------------------------------------------------
@pytest.fixture()
def users(db_session):
    """
    Two distinct active users for ownership / isolation tests.
    """
    user_a = User(email="test@example.com", name="Test User", is_active=True)
    user_b = User(email="other@example.com", name="Other User", is_active=True)
    db_session.add_all([user_a, user_b])
    db_session.commit()
    db_session.refresh(user_a)
    db_session.refresh(user_b)
    return user_a, user_b


@pytest.fixture()
def plans(db_session):
    """One-time credit pack, monthly and yearly subscriptions."""
    pack = PricingPlan(
        card_title="Credit Pack",
        stripe_price_id="price_pack",
        stripe_product_id="prod_pack",
        payment_type="one_time",
        benefits={"one_time_credits": 100},
        display_order=1,
        is_active=True,
    )
    monthly = PricingPlan(
        card_title="Pro Monthly",
        stripe_price_id="price_monthly",
        stripe_product_id="prod_pro",
        payment_type="recurring",
        recurring_interval="month",
        benefits={"monthly_credits": 50},
        display_order=2,
        is_active=True,
    )
    yearly = PricingPlan(
        card_title="Pro Yearly",
        stripe_price_id="price_yearly",
        stripe_product_id="prod_pro",
        payment_type="recurring",
        recurring_interval="year",
        benefits={"monthly_credits": 40, "total_months": 12},
        display_order=3,
        is_active=True,
    )
    retired = PricingPlan(
        card_title="Legacy",
        stripe_price_id="price_legacy",
        payment_type="one_time",
        benefits={"one_time_credits": 10},
        is_active=False,
    )
    db_session.add_all([pack, monthly, yearly, retired])
    db_session.commit()
    return {"pack": pack, "monthly": monthly, "yearly": yearly, "retired": retired}


@pytest.fixture()
def task_session(db_session, monkeypatch):
    """Run Celery tasks against the test session instead of SessionLocal."""
    from app.tasks import notifications as notification_tasks
    from app.tasks import stripe_events as stripe_event_tasks

    monkeypatch.setattr(stripe_event_tasks, "_with_db_session", lambda: db_session)
    monkeypatch.setattr(notification_tasks, "_with_db_session", lambda: db_session)
    # Tasks close their session when done; keep the shared test session usable.
    monkeypatch.setattr(db_session, "close", lambda: None)
    return db_session


# ----------------------------------------------------------------------
# App / clients
# ----------------------------------------------------------------------
@pytest.fixture()
def app(db_session, fake_stripe):
    # Ensure settings has a JWT secret even if imported earlier.
    app_config.settings.JWT_SECRET = app_config.settings.JWT_SECRET or "test_jwt_secret"

    from app.main import app as fastapi_app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_stripe_client] = lambda: fake_stripe
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app, users):
    """
    Default client authenticated as user_a.
    """
    user_a, _ = users
    app.dependency_overrides[get_current_user] = lambda: user_a
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture()
def anonymous_client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def client_for(app):
    """
    Context manager to create a client authenticated as an arbitrary user.

    Usage:
        with client_for(user) as c:
            ...
    """

    @contextmanager
    def _client_for(user: User):
        app.dependency_overrides[get_current_user] = lambda: user
        with TestClient(app) as c:
            yield c
        app.dependency_overrides.pop(get_current_user, None)

    return _client_for

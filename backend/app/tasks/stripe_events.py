from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.celery_app import celery_app
from app.core.database import SessionLocal
from app.models.pricing_plan import PricingPlan, RecurringInterval
from app.models.subscription import ENTITLED_STATUSES, Subscription
from app.services.reconciliation import ReconciliationService
from app.services.stripe import StripeService
from app.services.webhook_dispatcher import WebhookDispatcher


logger = logging.getLogger(__name__)


def _with_db_session() -> Session:
    return SessionLocal()


@celery_app.task(name="billing.process_stripe_event")
def process_stripe_event(stripe_event_id: str) -> str | None:
    db = _with_db_session()
    try:
        dispatcher = WebhookDispatcher(db, StripeService(db))
        result = dispatcher.process_stored_event(stripe_event_id)
        return result.outcome.value
    except Exception:  # pylint: disable=broad-except
        logger.exception("Failed to process Stripe event %s", stripe_event_id)
        return None
    finally:
        db.close()


@celery_app.task(name="billing.replay_stripe_events")
def replay_stripe_events(limit: int = 50) -> int:
    db = _with_db_session()
    try:
        dispatcher = WebhookDispatcher(db, StripeService(db))
        return len(dispatcher.replay_pending(limit=limit))
    except Exception:  # pylint: disable=broad-except
        logger.exception("Failed to replay Stripe events")
        return 0
    finally:
        db.close()


@celery_app.task(name="billing.grant_due_yearly_allocations")
def grant_due_yearly_allocations() -> int:
    db = _with_db_session()
    written = 0
    try:
        now = datetime.now(timezone.utc)
        subscription_ids = [
            row.id
            for row in (
                db.query(Subscription.id)
                .join(PricingPlan, Subscription.plan_id == PricingPlan.id)
                .filter(
                    Subscription.status.in_(sorted(ENTITLED_STATUSES)),
                    PricingPlan.recurring_interval == RecurringInterval.YEAR.value,
                )
                .all()
            )
        ]
        service = ReconciliationService(db, StripeService(db))
        for subscription_id in subscription_ids:
            subscription = db.get(Subscription, subscription_id)
            try:
                written += service.allocate_yearly_credits(subscription, now=now)
                db.commit()
            except Exception:  # pylint: disable=broad-except
                db.rollback()
                logger.exception("Yearly allocation failed for subscription %s", subscription_id)
        if written:
            logger.info("Granted %s yearly allocation entries", written)
        return written
    finally:
        db.close()

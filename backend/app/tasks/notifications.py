from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.celery_app import celery_app
from app.core.config import settings
from app.core.database import SessionLocal
from app.models.user import User
from app.services import resend_email


logger = logging.getLogger(__name__)


def _with_db_session() -> Session:
    return SessionLocal()


@celery_app.task(name="billing.send_invoice_payment_failed_email")
def send_invoice_payment_failed_email(
    *,
    user_id: int,
    invoice_id: str,
    subscription_id: str | None = None,
    plan_name: str | None = None,
    amount_due: int = 0,
    currency: str = "usd",
    next_payment_attempt: int | None = None,
    hosted_invoice_url: str | None = None,
) -> bool:
    if not settings.EMAIL_ENABLED:
        logger.info("Email disabled; not sending payment failed email for invoice %s", invoice_id)
        return False

    db = _with_db_session()
    try:
        user = db.get(User, user_id)
        if not user or not user.email:
            logger.warning("No recipient for payment failed email (user %s, invoice %s)", user_id, invoice_id)
            return False
        to_email, name = user.email, user.name
    finally:
        db.close()

    try:
        resend_email.send_invoice_payment_failed_email(
            to_email=to_email,
            name=name,
            plan_name=plan_name,
            amount_due=amount_due,
            currency=currency,
            invoice_id=invoice_id,
            next_payment_attempt=next_payment_attempt,
            hosted_invoice_url=hosted_invoice_url,
        )
        return True
    except (resend_email.ResendConfigurationError, resend_email.ResendSendError) as exc:
        logger.error(
            "Payment failed email for invoice %s (subscription %s) not delivered: %s",
            invoice_id,
            subscription_id,
            exc,
        )
        return False

from __future__ import annotations

import logging
from datetime import datetime, timezone
from html import escape as html_escape
from typing import Any

import resend

from app.core.config import settings

logger = logging.getLogger(__name__)


class ResendConfigurationError(RuntimeError):
    """Raised when Resend is not configured properly."""


class ResendSendError(RuntimeError):
    """Raised when Resend fails to deliver an email."""


def _require_config() -> None:
    if not settings.RESEND_API_KEY:
        raise ResendConfigurationError("RESEND_API_KEY is not configured")
    if not settings.RESEND_FROM_EMAIL:
        raise ResendConfigurationError("RESEND_FROM_EMAIL is not configured")


def format_amount(amount_minor: int, currency: str) -> str:
    return f"{amount_minor / 100:.2f} {currency.upper()}"


def _format_attempt(next_payment_attempt: int | None) -> str | None:
    if not next_payment_attempt:
        return None
    return datetime.fromtimestamp(int(next_payment_attempt), tz=timezone.utc).strftime("%B %d, %Y")


def send_invoice_payment_failed_email(
    *,
    to_email: str,
    name: str | None,
    plan_name: str | None,
    amount_due: int,
    currency: str,
    invoice_id: str,
    next_payment_attempt: int | None = None,
    hosted_invoice_url: str | None = None,
) -> None:
    """
    Tell a customer their renewal payment failed and how to fix it.

    The link goes to the hosted invoice when Stripe provides one, otherwise to the
    subscription page where the customer portal is reachable.
    """

    _require_config()

    resend.api_key = settings.RESEND_API_KEY

    site = settings.SITE_NAME
    subject = f"Action required: payment failed for your {site} subscription"
    greeting = f"Hi {name}," if name else "Hi,"
    plan = plan_name or "your subscription"
    amount = format_amount(amount_due, currency)
    retry = _format_attempt(next_payment_attempt)
    action_url = hosted_invoice_url or f"{settings.FRONTEND_BASE_URL}{settings.STRIPE_CUSTOMER_PORTAL_PATH}"
    retry_line = f"We will retry the payment on {retry}." if retry else "We will not retry the payment automatically."
    support_line = f"Questions? Contact us at {settings.SUPPORT_URL}." if settings.SUPPORT_URL else ""

    html_body = f"""
    <html>
      <body style="font-family: Arial, sans-serif; padding: 24px;">
        <div style="max-width: 520px; margin: 0 auto;">
          <h2 style="margin-top: 0;">Payment failed</h2>
          <p>{html_escape(greeting)}</p>
          <p>We could not collect {html_escape(amount)} for {html_escape(plan)} (invoice {html_escape(invoice_id)}).
          {html_escape(retry_line)}</p>
          <p><a href="{html_escape(action_url)}">Update your payment method</a></p>
          <p style="color: #64748b;">{html_escape(support_line)}</p>
        </div>
      </body>
    </html>
    """.strip()

    text_body = f"""
{greeting}

We could not collect {amount} for {plan} (invoice {invoice_id}).
{retry_line}

Update your payment method: {action_url}
{support_line}
""".strip()

    try:
        payload: dict[str, Any] = {
            "from": settings.RESEND_FROM_EMAIL,
            "to": [to_email],
            "subject": subject,
            "html": html_body,
            "text": text_body,
        }
        resend.Emails.send(payload)
        logger.info("Sent payment failed email via Resend to %s for invoice %s", to_email, invoice_id)
    except Exception as exc:  # pragma: no cover - resend lib raises runtime-specific errors
        logger.exception("Resend email send failure: %s", exc)
        raise ResendSendError("Unable to send payment failed email right now.") from exc

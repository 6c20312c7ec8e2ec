from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.dependencies.auth import get_current_user
from app.dependencies.stripe import get_stripe_client
from app.models.user import User
from app.schemas.billing import (
    ReconciledStatusOut,
    StripeCheckoutCreate,
    StripeCheckoutOut,
    StripePortalOut,
    StripeWebhookOut,
)
from app.services.billing_errors import (
    OwnerMismatchError,
    PaymentReferenceError,
    ProviderUnavailableError,
    ReconciliationError,
    StripeServiceError,
    StripeWebhookError,
)
from app.services.payment_verification import PaymentVerificationService
from app.services.stripe import StripeService
from app.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/stripe", tags=["billing"])
verification_router = APIRouter(prefix="/billing/payment", tags=["billing"])


def _frontend_base() -> str:
    return (settings.FRONTEND_BASE_URL or "http://localhost:3000").rstrip("/")


def _require_stripe_configured() -> None:
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments are not configured",
        )


@router.post("/checkout", response_model=StripeCheckoutOut)
def create_checkout_session(
    payload: StripeCheckoutCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    stripe_client: Any = Depends(get_stripe_client),
) -> StripeCheckoutOut:
    _require_stripe_configured()
    service = StripeService(db, stripe_client)
    frontend_base = _frontend_base()
    success_url = f"{frontend_base}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = f"{frontend_base}{settings.PRICING_PATH}"
    try:
        session = service.create_checkout_session(
            user,
            price_id=payload.price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            coupon_code=payload.coupon_code,
            referral=payload.referral,
        )
    except ProviderUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return StripeCheckoutOut(
        checkout_session_id=session.get("id"),
        checkout_url=session.get("url"),
    )


@router.post("/portal", response_model=StripePortalOut)
def create_portal_session(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    stripe_client: Any = Depends(get_stripe_client),
) -> StripePortalOut:
    _require_stripe_configured()
    service = StripeService(db, stripe_client)
    return_url = f"{_frontend_base()}{settings.STRIPE_CUSTOMER_PORTAL_PATH}"
    try:
        session = service.create_portal_session(user, return_url=return_url)
    except ProviderUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return StripePortalOut(portal_url=session.get("url"))


@router.post("/webhook", status_code=status.HTTP_200_OK, response_model=StripeWebhookOut)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_client: Any = Depends(get_stripe_client),
) -> StripeWebhookOut:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    service = StripeService(db, stripe_client)
    try:
        event = service.parse_event(payload, signature)
    except StripeWebhookError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    dispatcher = WebhookDispatcher(db, service)
    try:
        if settings.STRIPE_WEBHOOK_ASYNC_PROCESSING:
            result = dispatcher.defer(event)
        else:
            result = dispatcher.dispatch(event)
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    if result.failed:
        # Non-2xx makes Stripe redeliver; the event row is already marked failed.
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": "Webhook processing failed",
                "details": {
                    "event_id": result.event_id,
                    "retryable": bool(result.error and result.error.retryable),
                },
            },
        )

    return StripeWebhookOut(received=True, status=result.outcome.value)


@verification_router.get("/verify-success", response_model=ReconciledStatusOut)
def verify_payment_success(
    session_id: str | None = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    stripe_client: Any = Depends(get_stripe_client),
) -> ReconciledStatusOut:
    service = PaymentVerificationService(db, StripeService(db, stripe_client))
    try:
        reconciled = service.verify_and_sync(session_id, user.id)
    except PaymentReferenceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except OwnerMismatchError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ReconciliationError as exc:
        logger.warning("Payment verification for session %s failed: %s", session_id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to verify payment right now",
        ) from exc
    except StripeServiceError as exc:
        logger.exception("Payment verification for session %s failed", session_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to verify payment right now",
        ) from exc

    return ReconciledStatusOut(**reconciled.__dict__)

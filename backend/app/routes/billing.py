from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.dependencies.auth import get_current_user
from app.models.pricing_plan import PricingPlan
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.billing import (
    BillingMeOut,
    CreditLedgerEntryOut,
    CreditsBalanceOut,
    PricingPlanOut,
    SpendCreditsIn,
    SubscriptionBenefitsOut,
)
from app.services.billing_state import as_utc
from app.services.credits import CreditsService

router = APIRouter(prefix="/billing", tags=["billing"])

INACTIVE_PERIOD_ENDED = "inactive_period_ended"


def _plan_out(plan: PricingPlan) -> PricingPlanOut:
    return PricingPlanOut(
        id=plan.id,
        card_title=plan.card_title,
        stripe_price_id=plan.stripe_price_id,
        payment_type=plan.payment_type,
        recurring_interval=plan.recurring_interval,
        trial_period_days=plan.trial_period_days,
        one_time_credits=plan.one_time_credits,
        monthly_credits=plan.monthly_credits,
        total_months=plan.total_months,
    )


def _subscription_benefits(db: Session, user_id: int) -> SubscriptionBenefitsOut | None:
    subscription = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .order_by(Subscription.updated_at.desc(), Subscription.id.desc())
        .first()
    )
    if not subscription:
        return None

    period_end = as_utc(subscription.current_period_end)
    status_value = subscription.status
    if period_end and period_end < datetime.now(timezone.utc):
        status_value = INACTIVE_PERIOD_ENDED

    plan = subscription.plan
    return SubscriptionBenefitsOut(
        stripe_subscription_id=subscription.stripe_subscription_id,
        plan_id=subscription.plan_id,
        plan_name=plan.card_title if plan else None,
        status=status_value,
        monthly_credits=plan.monthly_credits if plan else 0,
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
    )


@router.get("/plans", response_model=list[PricingPlanOut])
def list_pricing_plans(db: Session = Depends(get_db)) -> list[PricingPlanOut]:
    plans = (
        db.query(PricingPlan)
        .filter(PricingPlan.is_active.is_(True))
        .order_by(PricingPlan.display_order.asc(), PricingPlan.id.asc())
        .all()
    )
    return [_plan_out(plan) for plan in plans]


@router.get("/credits/balance", response_model=CreditsBalanceOut)
def get_credit_balance(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> CreditsBalanceOut:
    service = CreditsService(db)
    summary = service.get_balance_summary(user.id)
    return CreditsBalanceOut(
        balance=summary.balance,
        lifetime_granted=summary.total_granted,
        lifetime_spent=summary.total_spent,
        as_of=datetime.now(timezone.utc),
    )


@router.get("/credits/ledger", response_model=list[CreditLedgerEntryOut])
def get_credit_ledger(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[CreditLedgerEntryOut]:
    service = CreditsService(db)
    entries = service.list_ledger(user.id, limit=limit, offset=offset)
    return [CreditLedgerEntryOut.model_validate(entry) for entry in entries]


@router.get("/me", response_model=BillingMeOut)
def get_billing_overview(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BillingMeOut:
    service = CreditsService(db)
    ledger = service.list_ledger(user.id, limit=10, offset=0)
    return BillingMeOut(
        balance=service.get_balance(user.id),
        stripe_customer_id=user.stripe_customer_id,
        subscription=_subscription_benefits(db, user.id),
        ledger=[CreditLedgerEntryOut.model_validate(entry) for entry in ledger],
    )


@router.post("/credits/spend", response_model=CreditLedgerEntryOut)
def spend_credits(
    payload: SpendCreditsIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> CreditLedgerEntryOut:
    service = CreditsService(db)
    try:
        entry = service.require_credits(
            user_id=user.id,
            amount=payload.amount,
            reason=payload.reason,
            idempotency_key=payload.idempotency_key,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return CreditLedgerEntryOut.model_validate(entry)

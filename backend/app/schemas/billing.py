from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator


class CreditsBalanceOut(BaseModel):
    balance: int
    lifetime_granted: int
    lifetime_spent: int
    as_of: datetime


class CreditLedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: int
    entry_type: str
    source: str
    description: str | None = None
    created_at: datetime
    source_ref: str | None = None
    idempotency_key: str
    related_order_id: int | None = None
    stripe_subscription_id: str | None = None
    stripe_invoice_id: str | None = None


class PricingPlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    card_title: str
    stripe_price_id: str | None = None
    payment_type: str
    recurring_interval: str | None = None
    trial_period_days: int | None = None
    one_time_credits: int
    monthly_credits: int
    total_months: int


class SubscriptionBenefitsOut(BaseModel):
    stripe_subscription_id: str
    plan_id: int | None = None
    plan_name: str | None = None
    # Provider status, or "inactive_period_ended" once the paid period is over.
    status: str
    monthly_credits: int = 0
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False


class BillingMeOut(BaseModel):
    balance: int
    stripe_customer_id: str | None
    subscription: SubscriptionBenefitsOut | None = None
    ledger: list[CreditLedgerEntryOut]


class SpendCreditsIn(BaseModel):
    amount: int
    reason: str
    idempotency_key: str

    @field_validator("amount")
    @staticmethod
    def _validate_amount(value: int) -> int:
        if value <= 0:
            raise ValueError("amount must be positive")
        return value

    @field_validator("idempotency_key")
    @staticmethod
    def _validate_key(value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("idempotency_key is required")
        return normalized


class StripeCheckoutCreate(BaseModel):
    price_id: str
    coupon_code: str | None = None
    referral: str | None = None

    @field_validator("price_id")
    @staticmethod
    def _validate_price_id(value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("price_id is required")
        return normalized

    @field_validator("coupon_code", "referral")
    @staticmethod
    def _blank_to_none(value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class StripeCheckoutOut(BaseModel):
    checkout_session_id: str
    checkout_url: str | None = None


class StripePortalOut(BaseModel):
    portal_url: str


class StripeWebhookOut(BaseModel):
    received: bool = True
    status: str


class ReconciledStatusOut(BaseModel):
    status: str
    mode: str
    message: str
    session_id: str
    subscription_id: str | None = None
    subscription_status: str | None = None
    order_id: int | None = None
    order_status: str | None = None
    plan_id: int | None = None
    plan_name: str | None = None

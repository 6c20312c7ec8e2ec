from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, func

from app.core.base import Base


class PaymentType(str, Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class RecurringInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class PricingPlan(Base):
    __tablename__ = "pricing_plans"

    id = Column(Integer, primary_key=True, index=True)
    card_title = Column(String(255), nullable=False)
    stripe_price_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_product_id = Column(String(255), nullable=True)
    payment_type = Column(String(20), nullable=False, server_default=PaymentType.ONE_TIME.value)
    recurring_interval = Column(String(20), nullable=True)
    trial_period_days = Column(Integer, nullable=True)
    # {"one_time_credits": int, "monthly_credits": int, "total_months": int}
    benefits = Column(JSON, nullable=True)
    display_order = Column(Integer, nullable=False, server_default="0", default=0)
    is_active = Column(Boolean, nullable=False, server_default="true", default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def benefit(self, key: str) -> int:
        raw = (self.benefits or {}).get(key)
        try:
            value = int(raw or 0)
        except (TypeError, ValueError):
            return 0
        return max(value, 0)

    @property
    def one_time_credits(self) -> int:
        return self.benefit("one_time_credits")

    @property
    def monthly_credits(self) -> int:
        return self.benefit("monthly_credits")

    @property
    def total_months(self) -> int:
        months = self.benefit("total_months")
        if months:
            return months
        return 12 if self.recurring_interval == RecurringInterval.YEAR.value else 1

    @property
    def is_yearly(self) -> bool:
        return (
            self.payment_type == PaymentType.RECURRING.value
            and self.recurring_interval == RecurringInterval.YEAR.value
        )

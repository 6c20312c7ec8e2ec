from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from app.core.base import Base


class OrderType(str, Enum):
    ONE_TIME_PURCHASE = "one_time_purchase"
    SUBSCRIPTION_INITIAL = "subscription_initial"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    REFUND = "refund"


class OrderStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"
    FAILED = "failed"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider = Column(String(20), nullable=False, server_default="stripe")
    # payment intent id (one-time), invoice id (subscription) or charge id (refund)
    provider_order_id = Column(String(255), nullable=False)
    order_type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False)
    plan_id = Column(Integer, ForeignKey("pricing_plans.id", ondelete="SET NULL"), nullable=True)
    price_id = Column(String(255), nullable=True)
    product_id = Column(String(255), nullable=True)
    subscription_provider_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    stripe_invoice_id = Column(String(255), nullable=True, index=True)
    stripe_charge_id = Column(String(255), nullable=True)
    amount_subtotal = Column(Integer, nullable=True)
    amount_discount = Column(Integer, nullable=False, server_default="0", default=0)
    amount_tax = Column(Integer, nullable=False, server_default="0", default=0)
    amount_total = Column(Integer, nullable=False, server_default="0", default=0)
    amount_refunded = Column(Integer, nullable=False, server_default="0", default=0)
    currency = Column(String(10), nullable=False, server_default="usd")
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    user = relationship("User", backref="orders")
    plan = relationship("PricingPlan")

    __table_args__ = (
        UniqueConstraint(
            "provider",
            "provider_order_id",
            "order_type",
            name="uq_orders_provider_order_type",
        ),
    )

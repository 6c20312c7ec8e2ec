from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.base import Base


class CreditEntryType(str, Enum):
    ONE_TIME_PURCHASE = "one_time_purchase"
    SUBSCRIPTION_GRANT = "subscription_grant"
    YEARLY_ALLOCATION = "yearly_allocation"
    REFUND_REVOKE = "refund_revoke"
    CANCEL_REVOKE = "cancel_revoke"
    USAGE = "usage"
    ADJUSTMENT = "adjustment"


class CreditLedger(Base):
    __tablename__ = "credit_ledger"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Signed credit delta. Grants are positive, revokes and usage negative.
    amount = Column(Integer, nullable=False)
    entry_type = Column(String(50), nullable=False)
    source = Column(String(50), nullable=False)
    source_ref = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    idempotency_key = Column(String(255), nullable=False)
    related_order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_invoice_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    user = relationship("User", backref="credit_ledger_entries")

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_credit_ledger_idempotency_key"),
    )

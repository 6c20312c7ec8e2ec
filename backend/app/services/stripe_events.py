from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StripeEventKind(str, Enum):
    """Event types the reconciliation pipeline acts on. Everything else is ignored."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"


_KIND_BY_TYPE = {kind.value: kind for kind in StripeEventKind}


def classify(event_type: str | None) -> StripeEventKind | None:
    if not event_type:
        return None
    return _KIND_BY_TYPE.get(event_type)


@dataclass(frozen=True)
class VerifiedEvent:
    """A webhook event whose signature has been checked."""

    id: str
    type: str
    kind: StripeEventKind | None
    # Provider creation time, epoch seconds. Used as the recency signal.
    created: int
    data_object: dict[str, Any]
    livemode: bool = False
    payload: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_relevant(self) -> bool:
        return self.kind is not None

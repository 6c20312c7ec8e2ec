# app/dependencies/stripe.py
from __future__ import annotations

from typing import Any

import stripe


def get_stripe_client() -> Any:
    """The Stripe SDK module. Tests override this with a fake exposing the same attributes."""
    return stripe

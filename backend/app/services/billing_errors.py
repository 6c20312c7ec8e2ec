from __future__ import annotations


class StripeServiceError(Exception):
    """Base error for Stripe service operations."""


# ----------------------------------------------------------------------
# Verification
# ----------------------------------------------------------------------
class StripeWebhookError(StripeServiceError):
    """Raised when a webhook payload cannot be verified."""


class WebhookConfigurationError(StripeWebhookError):
    """Webhook secret is not configured or the signature header is missing."""


class WebhookSignatureError(StripeWebhookError):
    """Signature does not match the payload."""


class MalformedWebhookError(StripeWebhookError):
    """Payload verified but is not a usable event."""


# ----------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------
class ReconciliationError(StripeServiceError):
    """
    A verified event (or a fallback lookup) could not be turned into local state.

    ``retryable`` tells the caller whether processing the same input again later can
    succeed. Retryable failures leave the event in ``failed`` so redelivery or the
    replay task picks it up.
    """

    retryable = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class NotYetVisibleError(ReconciliationError):
    """A record this event depends on has not been written locally yet."""

    retryable = True


class OwnerMismatchError(ReconciliationError):
    """The referenced payment belongs to a different user."""


class ProviderUnavailableError(ReconciliationError):
    """The payment provider could not be reached or rate-limited us."""

    retryable = True


class ProviderObjectNotFoundError(ReconciliationError):
    """The provider does not know the referenced object."""


class PaymentReferenceError(ReconciliationError):
    """The payment reference is missing, unknown or not in a completed state."""


class UnhandledReconciliationError(ReconciliationError):
    """Unexpected failure inside a handler (storage errors, bugs)."""

    retryable = True

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.stripe_event import StripeEvent, StripeEventStatus
from app.services.billing_errors import (
    ReconciliationError,
    StripeServiceError,
    UnhandledReconciliationError,
)
from app.services.notifications import fire_and_forget
from app.services.reconciliation import ReconciliationService
from app.services.stripe import StripeService, build_verified_event
from app.services.stripe_events import StripeEventKind, VerifiedEvent

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500
# Replay gives up on an event after this many attempts; it stays ``failed`` for inspection.
MAX_REPLAY_ATTEMPTS = 8


class DispatchOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass
class DispatchResult:
    event_id: str
    event_type: str
    outcome: DispatchOutcome
    error: ReconciliationError | None = None

    @property
    def failed(self) -> bool:
        return self.outcome == DispatchOutcome.FAILED


Handler = Callable[[ReconciliationService, VerifiedEvent], bool]


def _on_checkout_completed(service: ReconciliationService, event: VerifiedEvent) -> bool:
    # Subscription checkouts are reconciled from invoice.paid and subscription events.
    if event.data_object.get("mode") != "payment":
        return False
    return service.handle_checkout_completed(event.data_object)


def _on_subscription_changed(service: ReconciliationService, event: VerifiedEvent) -> bool:
    return service.handle_subscription_changed(event.data_object, event.created)


def _on_subscription_deleted(service: ReconciliationService, event: VerifiedEvent) -> bool:
    return service.handle_subscription_deleted(event.data_object, event.created)


def _on_invoice_paid(service: ReconciliationService, event: VerifiedEvent) -> bool:
    return service.handle_invoice_paid(event.data_object, event.created)


def _on_invoice_payment_failed(service: ReconciliationService, event: VerifiedEvent) -> bool:
    return service.handle_invoice_payment_failed(event.data_object, event.created)


def _on_charge_refunded(service: ReconciliationService, event: VerifiedEvent) -> bool:
    return service.handle_charge_refunded(event.data_object)


HANDLERS: dict[StripeEventKind, Handler] = {
    StripeEventKind.CHECKOUT_SESSION_COMPLETED: _on_checkout_completed,
    StripeEventKind.SUBSCRIPTION_CREATED: _on_subscription_changed,
    StripeEventKind.SUBSCRIPTION_UPDATED: _on_subscription_changed,
    StripeEventKind.SUBSCRIPTION_DELETED: _on_subscription_deleted,
    StripeEventKind.INVOICE_PAID: _on_invoice_paid,
    StripeEventKind.INVOICE_PAYMENT_FAILED: _on_invoice_payment_failed,
    StripeEventKind.CHARGE_REFUNDED: _on_charge_refunded,
}

_unrouted = set(StripeEventKind) - set(HANDLERS)
if _unrouted:  # pragma: no cover - import-time guard
    raise RuntimeError(f"Stripe event kinds without a handler: {sorted(k.value for k in _unrouted)}")


class WebhookDispatcher:
    """
    Runs verified events through the reconciliation handlers exactly once.

    Each event id is claimed through its ``stripe_events`` row before any handler
    runs. A duplicate delivery can only reclaim the row when the previous attempt
    failed or was abandoned (pending for longer than the claim timeout). All handler
    writes for one event are committed together with the ``processed``/``skipped``
    status; on failure they are rolled back and the row is marked ``failed``.
    """

    def __init__(self, db: Session, stripe_service: StripeService):
        self.db = db
        self.stripe_service = stripe_service

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def dispatch(self, event: VerifiedEvent) -> DispatchResult:
        if event.kind is None:
            logger.info("Ignoring unsupported Stripe event type: %s", event.type)
            return DispatchResult(event.id, event.type, DispatchOutcome.IGNORED)

        if not self._claim_new(event, claim=True):
            logger.info("Stripe event %s already claimed; skipping", event.id)
            return DispatchResult(event.id, event.type, DispatchOutcome.DUPLICATE)

        return self._run(event)

    def defer(self, event: VerifiedEvent) -> DispatchResult:
        """Persist the event as queued and hand processing to a background task."""
        from app.tasks.stripe_events import process_stripe_event

        if event.kind is None:
            logger.info("Ignoring unsupported Stripe event type: %s", event.type)
            return DispatchResult(event.id, event.type, DispatchOutcome.IGNORED)

        if not self._claim_new(event, claim=False):
            record = self._get_record(event.id)
            if record is None or record.status != StripeEventStatus.FAILED.value:
                return DispatchResult(event.id, event.type, DispatchOutcome.DUPLICATE)

        # An enqueue failure leaves the row queued; the replay task picks it up.
        fire_and_forget(process_stripe_event, event.id)
        return DispatchResult(event.id, event.type, DispatchOutcome.DEFERRED)

    def process_stored_event(self, stripe_event_id: str) -> DispatchResult:
        record = self._get_record(stripe_event_id)
        if record is None:
            logger.warning("Stripe event %s not found for processing", stripe_event_id)
            return DispatchResult(stripe_event_id, "", DispatchOutcome.IGNORED)

        event_type = record.event_type
        payload = record.payload
        if record.status in (StripeEventStatus.PROCESSED.value, StripeEventStatus.SKIPPED.value):
            return DispatchResult(stripe_event_id, event_type, DispatchOutcome.DUPLICATE)

        if not self._reclaim(stripe_event_id):
            logger.info("Stripe event %s is being processed elsewhere; skipping", stripe_event_id)
            return DispatchResult(stripe_event_id, event_type, DispatchOutcome.DUPLICATE)

        try:
            event = build_verified_event(payload or {})
        except StripeServiceError as exc:
            error = UnhandledReconciliationError(f"Stored payload unusable: {exc}", retryable=False)
            self._mark_event_failed(stripe_event_id, error)
            return DispatchResult(stripe_event_id, event_type, DispatchOutcome.FAILED, error)

        return self._run(event)

    def replay_pending(self, limit: int = 50) -> list[DispatchResult]:
        """Reprocess failed events and pending ones whose claim has gone stale."""
        stale_before = self._now() - self._claim_timeout()
        event_ids = [
            row.stripe_event_id
            for row in (
                self.db.query(StripeEvent.stripe_event_id)
                .filter(
                    StripeEvent.attempts < MAX_REPLAY_ATTEMPTS,
                    or_(
                        StripeEvent.status == StripeEventStatus.FAILED.value,
                        and_(
                            StripeEvent.status == StripeEventStatus.PENDING.value,
                            StripeEvent.claimed_at.is_(None),
                            StripeEvent.received_at < stale_before,
                        ),
                        and_(
                            StripeEvent.status == StripeEventStatus.PENDING.value,
                            StripeEvent.claimed_at < stale_before,
                        ),
                    )
                )
                .order_by(StripeEvent.received_at.asc(), StripeEvent.id.asc())
                .limit(max(1, int(limit)))
                .all()
            )
        ]
        self.db.rollback()
        results = [self.process_stored_event(event_id) for event_id in event_ids]
        if results:
            logger.info(
                "Replayed %s Stripe events (%s failed)",
                len(results),
                sum(1 for r in results if r.failed),
            )
        return results

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    def _run(self, event: VerifiedEvent) -> DispatchResult:
        handler = HANDLERS[event.kind]
        service = ReconciliationService(self.db, self.stripe_service)
        error: ReconciliationError | None = None
        try:
            changed = handler(service, event)
            status = StripeEventStatus.PROCESSED if changed else StripeEventStatus.SKIPPED
            self._update_event_status(event.id, status)
            self.db.commit()
        except ReconciliationError as exc:
            self.db.rollback()
            error = exc
            logger.warning(
                "Stripe event %s (%s) failed: %s (retryable=%s)",
                event.id,
                event.type,
                exc,
                exc.retryable,
            )
        except Exception as exc:  # pylint: disable=broad-except
            self.db.rollback()
            error = UnhandledReconciliationError(str(exc) or exc.__class__.__name__)
            error.__cause__ = exc
            logger.exception("Stripe event %s (%s) failed", event.id, event.type)

        if error is not None:
            self._mark_event_failed(event.id, error)
            return DispatchResult(event.id, event.type, DispatchOutcome.FAILED, error)

        for side_effect in service.pending_side_effects:
            side_effect()
        outcome = DispatchOutcome.PROCESSED if status == StripeEventStatus.PROCESSED else DispatchOutcome.SKIPPED
        logger.info("Stripe event %s (%s) %s", event.id, event.type, outcome.value)
        return DispatchResult(event.id, event.type, outcome)

    # ------------------------------------------------------------------
    # Event records
    # ------------------------------------------------------------------
    def _get_record(self, stripe_event_id: str) -> StripeEvent | None:
        return (
            self.db.query(StripeEvent)
            .filter(StripeEvent.stripe_event_id == stripe_event_id)
            .first()
        )

    def _claim_new(self, event: VerifiedEvent, *, claim: bool) -> bool:
        """
        Insert the event row. With ``claim`` the row is owned by this caller right away;
        without it the row is only queued. A duplicate id falls back to ``_reclaim``
        when claiming, and reports False when only queueing.
        """
        now = self._now()
        record = StripeEvent(
            stripe_event_id=event.id,
            event_type=event.type,
            payload=event.payload,
            status=StripeEventStatus.PENDING.value,
            attempts=1 if claim else 0,
            claimed_at=now if claim else None,
        )
        try:
            with self.db.begin_nested():
                self.db.add(record)
                self.db.flush()
            self.db.commit()
            return True
        except IntegrityError as exc:
            self.db.rollback()
            if not self._is_unique_violation(exc):
                raise
        if not claim:
            return False
        return self._reclaim(event.id)

    def _reclaim(self, stripe_event_id: str) -> bool:
        """Take over a failed, queued or abandoned row with a single guarded UPDATE."""
        now = self._now()
        stale_before = now - self._claim_timeout()
        result = self.db.execute(
            update(StripeEvent)
            .where(
                StripeEvent.stripe_event_id == stripe_event_id,
                or_(
                    StripeEvent.status == StripeEventStatus.FAILED.value,
                    and_(
                        StripeEvent.status == StripeEventStatus.PENDING.value,
                        or_(StripeEvent.claimed_at.is_(None), StripeEvent.claimed_at < stale_before),
                    ),
                ),
            )
            .values(
                status=StripeEventStatus.PENDING.value,
                claimed_at=now,
                attempts=StripeEvent.attempts + 1,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def _update_event_status(self, stripe_event_id: str, status: StripeEventStatus) -> None:
        record = (
            self.db.query(StripeEvent)
            .filter(StripeEvent.stripe_event_id == stripe_event_id)
            .with_for_update()
            .first()
        )
        if not record:
            return
        record.status = status.value
        record.error_message = None
        record.processed_at = self._now()

    def _mark_event_failed(self, stripe_event_id: str, exc: Exception) -> None:
        message = f"{exc.__class__.__name__}: {exc}"
        record = (
            self.db.query(StripeEvent)
            .filter(StripeEvent.stripe_event_id == stripe_event_id)
            .with_for_update()
            .first()
        )
        if not record:
            return
        record.status = StripeEventStatus.FAILED.value
        record.error_message = message[:MAX_ERROR_MESSAGE_LENGTH]
        record.processed_at = self._now()
        self.db.commit()

    def _is_unique_violation(self, exc: IntegrityError) -> bool:
        orig = getattr(exc, "orig", None)
        pgcode = getattr(orig, "pgcode", None)
        if pgcode == "23505":
            return True
        message = str(orig or exc)
        return "stripe_events_stripe_event_id_key" in message or "UNIQUE constraint failed: stripe_events.stripe_event_id" in message

    def _claim_timeout(self) -> timedelta:
        return timedelta(seconds=max(0, settings.STRIPE_EVENT_CLAIM_TIMEOUT_SECONDS))

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

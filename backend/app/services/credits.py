from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.credit import CreditEntryType, CreditLedger
from app.models.user import User


class InsufficientCreditsError(Exception):
    pass


@dataclass
class BalanceSummary:
    balance: int
    total_granted: int
    total_spent: int


class CreditsService:
    """
    Helpers around the credit ledger. Entries are append-only integer credit deltas;
    the balance is always derived from the ledger, never stored.

    Every write is keyed by a globally unique ``idempotency_key`` so a grant or revoke
    derived from a provider event lands at most once however often the event arrives.
    """

    MAX_PAGE_SIZE = 200

    def __init__(self, db: Session):
        self.db = db

    def get_balance(self, user_id: int) -> int:
        return self.get_balance_summary(user_id).balance

    def get_balance_summary(self, user_id: int) -> BalanceSummary:
        granted = (
            self.db.query(func.coalesce(func.sum(CreditLedger.amount), 0))
            .filter(CreditLedger.user_id == user_id, CreditLedger.amount > 0)
            .scalar()
        )
        spent = (
            self.db.query(func.coalesce(func.sum(CreditLedger.amount), 0))
            .filter(CreditLedger.user_id == user_id, CreditLedger.amount < 0)
            .scalar()
        )
        return BalanceSummary(
            balance=int((granted or 0) + (spent or 0)),
            total_granted=int(granted or 0),
            total_spent=int(abs(spent or 0)),
        )

    def list_ledger(self, user_id: int, *, limit: int = 50, offset: int = 0) -> list[CreditLedger]:
        normalized_limit = max(1, min(int(limit or 50), self.MAX_PAGE_SIZE))
        normalized_offset = max(0, int(offset or 0))
        return (
            self.db.query(CreditLedger)
            .filter(CreditLedger.user_id == user_id)
            .order_by(CreditLedger.created_at.desc(), CreditLedger.id.desc())
            .offset(normalized_offset)
            .limit(normalized_limit)
            .all()
        )

    def _lock_user(self, user_id: int) -> User:
        user = (
            self.db.execute(select(User).where(User.id == user_id).with_for_update())
            .scalars()
            .first()
        )
        if not user:
            raise ValueError("User not found")
        return user

    def find_entry(self, idempotency_key: str) -> CreditLedger | None:
        return (
            self.db.query(CreditLedger)
            .filter(CreditLedger.idempotency_key == idempotency_key)
            .first()
        )

    def apply_ledger_entry(
        self,
        user_id: int,
        *,
        amount: int,
        source: str,
        idempotency_key: str,
        entry_type: str = CreditEntryType.ADJUSTMENT.value,
        source_ref: str | None = None,
        description: str | None = None,
        related_order_id: int | None = None,
        stripe_subscription_id: str | None = None,
        stripe_invoice_id: str | None = None,
        commit: bool = True,
    ) -> tuple[CreditLedger, bool]:
        """
        Insert the entry unless one with the same key exists.

        Returns ``(entry, created)``. The insert runs in a SAVEPOINT so a concurrent
        writer that wins the unique index only costs us the savepoint, not the
        caller's transaction.
        """
        normalized_source = (source or "").strip().lower()
        if not normalized_source:
            raise ValueError("source is required")
        normalized_ref = source_ref.strip() if isinstance(source_ref, str) and source_ref.strip() else None
        normalized_description = description.strip() if isinstance(description, str) and description.strip() else None
        normalized_idempotency = (idempotency_key or "").strip()
        if not normalized_idempotency:
            raise ValueError("idempotency_key is required")

        existing = self.find_entry(normalized_idempotency)
        if existing:
            return existing, False

        entry = CreditLedger(
            user_id=user_id,
            amount=int(amount),
            source=normalized_source,
            source_ref=normalized_ref,
            description=normalized_description,
            idempotency_key=normalized_idempotency,
            entry_type=entry_type,
            related_order_id=related_order_id,
            stripe_subscription_id=stripe_subscription_id or None,
            stripe_invoice_id=stripe_invoice_id or None,
        )
        try:
            with self.db.begin_nested():
                self.db.add(entry)
                self.db.flush()
        except IntegrityError:
            existing = self.find_entry(normalized_idempotency)
            if existing is None:
                raise
            return existing, False

        if commit:
            self.db.commit()
            self.db.refresh(entry)
        return entry, True

    def revoke_up_to_balance(
        self,
        user_id: int,
        *,
        amount: int,
        source: str,
        idempotency_key: str,
        entry_type: str,
        **kwargs,
    ) -> tuple[CreditLedger | None, bool]:
        """Append a negative entry of at most ``amount``, clamped so the balance stays >= 0."""
        existing = self.find_entry(idempotency_key)
        if existing:
            return existing, False
        self._lock_user(user_id)
        clamped = min(int(amount), max(self.get_balance(user_id), 0))
        if clamped <= 0:
            return None, False
        return self.apply_ledger_entry(
            user_id,
            amount=-clamped,
            source=source,
            idempotency_key=idempotency_key,
            entry_type=entry_type,
            commit=False,
            **kwargs,
        )

    def spend_credits(
        self,
        *,
        user_id: int,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> CreditLedger:
        if amount <= 0:
            raise ValueError("amount must be positive")

        normalized_key = (idempotency_key or "").strip()
        if not normalized_key:
            raise ValueError("idempotency_key is required")

        existing = self.find_entry(normalized_key)
        if existing:
            if existing.user_id != user_id:
                raise ValueError("idempotency_key already used")
            return existing

        self._lock_user(user_id)
        balance = self.get_balance(user_id)
        if balance < amount:
            raise InsufficientCreditsError("Insufficient credits")

        entry, _ = self.apply_ledger_entry(
            user_id,
            amount=-amount,
            source="usage",
            description=reason,
            idempotency_key=normalized_key,
            entry_type=CreditEntryType.USAGE.value,
            commit=False,
        )
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def require_credits(
        self,
        *,
        user_id: int,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> CreditLedger:
        try:
            return self.spend_credits(
                user_id=user_id,
                amount=amount,
                reason=reason,
                idempotency_key=idempotency_key,
            )
        except InsufficientCreditsError as exc:
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail="Insufficient credits",
            ) from exc

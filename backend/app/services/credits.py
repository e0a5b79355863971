from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.user_credits import UserCredits

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class InsufficientCreditsError(Exception):
    def __init__(self, balance: float, required: float):
        super().__init__(
            f"Insufficient credits: {required:.2f} required, {balance:.2f} available"
        )
        self.balance = balance
        self.required = required


def _to_decimal(amount: float | Decimal) -> Decimal:
    return Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)


class CreditLedger:
    """
    Per-user credit balance.

    Debits and credits lock the balance row, so they serialise with any other
    transaction touching the same user. Nothing here commits; callers commit
    together with the work being paid for.
    """

    def __init__(self, db: Session):
        self.db = db

    def _row(self, user_id: str, *, for_update: bool = False) -> UserCredits | None:
        query = self.db.query(UserCredits).filter(UserCredits.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _row_for_update(self, user_id: str) -> UserCredits:
        row = self._row(user_id, for_update=True)
        if row is not None:
            return row
        try:
            with self.db.begin_nested():
                row = UserCredits(user_id=user_id, credits=Decimal("0.00"))
                self.db.add(row)
                self.db.flush()
        except IntegrityError:
            row = self._row(user_id, for_update=True)
            if row is None:
                raise
        return row

    def balance(self, user_id: str) -> float:
        row = self._row(user_id)
        if row is None:
            return 0.0
        return float(_to_decimal(row.credits))

    def debit(self, user_id: str, amount: float) -> float:
        """Take ``amount`` off the balance or raise without changing it."""
        cost = _to_decimal(amount)
        row = self._row_for_update(user_id)
        current = _to_decimal(row.credits or 0)
        if current < cost:
            raise InsufficientCreditsError(balance=float(current), required=float(cost))

        row.credits = current - cost
        row.updated_at = datetime.utcnow()
        self.db.flush()
        logger.info(
            "Debited credits",
            extra={"user_id": user_id, "step": "credits_debit", "status": f"{float(row.credits):.2f}"},
        )
        return float(row.credits)

    def credit(self, user_id: str, amount: float) -> float:
        value = _to_decimal(amount)
        if value <= 0:
            raise ValueError("Credit amount must be positive")
        row = self._row_for_update(user_id)
        row.credits = _to_decimal(row.credits or 0) + value
        row.updated_at = datetime.utcnow()
        self.db.flush()
        logger.info(
            "Credited credits",
            extra={"user_id": user_id, "step": "credits_credit", "status": f"{float(row.credits):.2f}"},
        )
        return float(row.credits)

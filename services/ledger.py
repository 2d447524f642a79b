"""
Ledger - balance and escrow balance mutations
All writes are guarded UPDATE statements on the caller's session; the ledger never commits
"""

import logging
from decimal import Decimal

from sqlalchemy import exists, func, select, update
from sqlalchemy.orm import Session

from models import User
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_errors import InsufficientFunds, InvalidArgument, NotFound

logger = logging.getLogger(__name__)


class Ledger:
    """
    Applies balance deltas for one atomic unit.

    Every debit-like movement carries its own non-negativity guard in the WHERE
    clause, so the balance check and the write are a single statement and two
    concurrent units can never both spend the same funds.
    """

    def __init__(self, session: Session):
        self.session = session

    def _require_positive(self, amount: Decimal) -> Decimal:
        amount = MonetaryDecimal.to_decimal(amount)
        if amount <= 0:
            raise InvalidArgument(f"Ledger movement must be positive, got {amount}", error_code="invalid_amount")
        return amount

    def _apply(self, operation: str, user_id: str, amount: Decimal, guard, values: dict) -> None:
        stmt = update(User).where(User.id == user_id)
        if guard is not None:
            stmt = stmt.where(guard)
        result = self.session.execute(stmt.values(**values).execution_options(synchronize_session=False))

        if result.rowcount == 1:
            logger.debug(f"💰 LEDGER_{operation.upper()}: {amount} for user {user_id}")
            return

        user_exists = self.session.execute(select(exists().where(User.id == user_id))).scalar()
        if not user_exists:
            raise NotFound(f"User {user_id} not found")

        logger.info(f"🚫 LEDGER_{operation.upper()}_REJECTED: insufficient funds for {amount} (user {user_id})")
        raise InsufficientFunds(f"Insufficient funds for {operation} of {MonetaryDecimal.format(amount)}")

    def debit(self, user_id: str, amount: Decimal) -> None:
        """Remove amount from the spendable balance"""
        amount = self._require_positive(amount)
        self._apply(
            "debit", user_id, amount,
            guard=User.balance >= amount,
            values={"balance": func.round(User.balance - amount, 2)},
        )

    def credit(self, user_id: str, amount: Decimal) -> None:
        """Add amount to the spendable balance"""
        amount = self._require_positive(amount)
        self._apply(
            "credit", user_id, amount,
            guard=None,
            values={"balance": func.round(User.balance + amount, 2)},
        )

    def move_to_escrow(self, user_id: str, amount: Decimal) -> None:
        """balance -> escrow_balance, the funding leg of a new transaction"""
        amount = self._require_positive(amount)
        self._apply(
            "move_to_escrow", user_id, amount,
            guard=User.balance >= amount,
            values={
                "balance": func.round(User.balance - amount, 2),
                "escrow_balance": func.round(User.escrow_balance + amount, 2),
            },
        )

    def release_from_escrow(self, user_id: str, amount: Decimal) -> None:
        """escrow_balance -> balance, the refund leg of a cancellation"""
        amount = self._require_positive(amount)
        self._apply(
            "release_from_escrow", user_id, amount,
            guard=User.escrow_balance >= amount,
            values={
                "balance": func.round(User.balance + amount, 2),
                "escrow_balance": func.round(User.escrow_balance - amount, 2),
            },
        )

    def settle_from_escrow(self, sender_id: str, receiver_id: str, amount: Decimal) -> None:
        """sender escrow_balance -> receiver balance, the payout leg of a completion"""
        amount = self._require_positive(amount)
        self._apply(
            "settle_debit", sender_id, amount,
            guard=User.escrow_balance >= amount,
            values={"escrow_balance": func.round(User.escrow_balance - amount, 2)},
        )
        self._apply(
            "settle_credit", receiver_id, amount,
            guard=None,
            values={"balance": func.round(User.balance + amount, 2)},
        )

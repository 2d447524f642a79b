"""
Transaction Store
Owns escrow transaction records and enforces the status transition table on every write
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from models import Transaction, TransactionStatus
from utils.atomic_transactions import lock_transaction_row
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.escrow_errors import InvalidTransition, NotAcceptedState, NotFound
from utils.escrow_state_machine import EscrowStateValidator, TIMESTAMP_FIELDS

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TransactionStatus.PENDING.value, TransactionStatus.ACCEPTED.value)

# Smallest possible time limit; nothing created more recently than this can be expired
MIN_TIME_LIMIT = timedelta(hours=1)

# Position in the (created_at, id) scan order
ScanCursor = Tuple[datetime, str]


def scan_cursor(transaction: Transaction) -> ScanCursor:
    return transaction.created_at, transaction.id


class TransactionStore:
    """Reads and guarded writes for transactions, issued on the caller's session"""

    def __init__(self, session: Session):
        self.session = session

    def insert(self, transaction: Transaction) -> Transaction:
        if transaction.status != TransactionStatus.PENDING.value:
            raise InvalidTransition(
                f"New transactions must start pending, got '{transaction.status}'",
                current_status=None,
            )
        self.session.add(transaction)
        self.session.flush()
        return transaction

    def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        return self.session.get(Transaction, transaction_id)

    def get_by_vtid(self, vtid: str) -> Optional[Transaction]:
        return self.session.execute(
            select(Transaction).where(Transaction.vtid == vtid.strip().upper())
        ).scalar_one_or_none()

    def list_by_sender(self, user_id: str) -> List[Transaction]:
        return list(self.session.execute(
            select(Transaction)
            .where(Transaction.sender_id == user_id)
            .order_by(Transaction.created_at.desc())
        ).scalars())

    def list_by_receiver(self, user_id: str) -> List[Transaction]:
        return list(self.session.execute(
            select(Transaction)
            .where(Transaction.receiver_id == user_id)
            .order_by(Transaction.created_at.desc())
        ).scalars())

    def list_for_user(self, user_id: str) -> List[Transaction]:
        """Transactions the user sent or received, newest first"""
        return list(self.session.execute(
            select(Transaction)
            .where(or_(Transaction.sender_id == user_id, Transaction.receiver_id == user_id))
            .order_by(Transaction.created_at.desc(), Transaction.id)
        ).scalars())

    def lock(self, transaction_id: str) -> Transaction:
        return lock_transaction_row(self.session, transaction_id)

    def update_status(
        self,
        transaction_id: str,
        new_status: str,
        expected_status: str,
        at: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set a status change.

        The UPDATE only matches while the row still holds expected_status, so a
        writer that read a stale status can never overwrite a concurrent change.
        Returns False when the row already sits in the requested terminal status.
        """
        if not EscrowStateValidator.require_transition(expected_status, new_status):
            return False

        values: Dict[str, Any] = {"status": new_status}
        timestamp_field = TIMESTAMP_FIELDS.get(new_status)
        if timestamp_field:
            values[timestamp_field] = at or get_naive_utc_now()

        result = self.session.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == expected_status)
            .values(**values)
        )
        if result.rowcount == 1:
            logger.info(f"🔄 STATUS_CHANGED: {transaction_id} {expected_status} -> {new_status}")
            return True

        current = self.session.execute(
            select(Transaction.status).where(Transaction.id == transaction_id)
        ).scalar_one_or_none()
        if current is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        if current == new_status and EscrowStateValidator.is_terminal_state(new_status):
            return False

        logger.warning(
            f"⚠️ STATUS_RACE_LOST: {transaction_id} expected '{expected_status}' but found '{current}'"
        )
        raise InvalidTransition(
            f"Cannot move transaction from '{current}' to '{new_status}'",
            current_status=current,
        )

    def update_conditions(self, transaction_id: str, conditions: List[Dict[str, Any]]) -> None:
        """Replace the condition list; only allowed while the transaction is accepted"""
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == TransactionStatus.ACCEPTED.value,
            )
            .values(conditions=[dict(c) for c in conditions])
        )
        if result.rowcount == 1:
            return

        current = self.session.execute(
            select(Transaction.status).where(Transaction.id == transaction_id)
        ).scalar_one_or_none()
        if current is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        raise NotAcceptedState(
            f"Conditions can only change while the transaction is accepted (status '{current}')",
            current_status=current,
        )

    def scan_expiry_candidates(
        self,
        now: datetime,
        limit: int = 100,
        after: Optional[ScanCursor] = None,
    ) -> List[Transaction]:
        """
        One page of active transactions old enough to possibly be expired.

        Pages are ordered by (created_at, id) and start strictly after the
        cursor, so each page is a bounded index range. Pending rows qualify
        once created more than the minimum time limit ago, accepted rows once
        accepted that long ago.
        """
        cutoff = now - MIN_TIME_LIMIT
        query = (
            select(Transaction)
            .where(
                Transaction.status.in_(ACTIVE_STATUSES),
                Transaction.created_at <= cutoff,
                or_(
                    Transaction.status == TransactionStatus.PENDING.value,
                    Transaction.accepted_at <= cutoff,
                ),
            )
            .order_by(Transaction.created_at, Transaction.id)
            .limit(limit)
        )
        if after is not None:
            after_created, after_id = after
            query = query.where(
                or_(
                    Transaction.created_at > after_created,
                    and_(Transaction.created_at == after_created, Transaction.id > after_id),
                )
            )
        return list(self.session.execute(query).scalars())

    def find_expired(
        self,
        now: Optional[datetime] = None,
        limit: int = 100,
        after: Optional[ScanCursor] = None,
    ) -> List[Transaction]:
        """
        Pending or accepted transactions whose deadline is before now, oldest first.

        Deadlines depend on the per-row time limit and on accepted_at, so the
        final filter runs on each loaded page.
        """
        now = ensure_naive_datetime(now) if now else get_naive_utc_now()
        expired: List[Transaction] = []

        while len(expired) < limit:
            page = self.scan_expiry_candidates(now, limit=limit, after=after)
            for transaction in page:
                if transaction.is_expired(now):
                    expired.append(transaction)
                    if len(expired) >= limit:
                        break
            if len(page) < limit:
                break
            after = scan_cursor(page[-1])
        return expired

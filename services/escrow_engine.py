"""
Escrow Engine
Sole mutator of balances and transaction status. Every operation is one atomic unit:
lock the transaction row, re-read its status, validate, write ledger/status/unread
changes, commit. Events are published only after the commit succeeds.
"""

import logging
from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from config import Config
from database import SessionFactory
from models import Transaction, TransactionStatus, User
from services.identifier_generator import IdentifierGenerator
from services.ledger import Ledger
from services.notification_service import DomainEvent, NotificationEvent, NotificationSink, NullNotificationSink
from services.transaction_store import ACTIVE_STATUSES, TransactionStore
from services.user_service import mark_unread
from utils.atomic_transactions import atomic_transaction, lock_user_rows
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_errors import (
    InvalidArgument,
    InvalidTransition,
    NotAcceptedState,
    NotFound,
    PermissionDenied,
)

logger = logging.getLogger(__name__)

ConditionInput = Union[str, Dict[str, Any]]

EXPIRY_REASON = "time limit expired"


class EscrowEngine:
    """Orchestrates escrow creation and every status transition"""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        notifier: Optional[NotificationSink] = None,
        id_generator: Optional[IdentifierGenerator] = None,
        max_amount: Optional[Decimal] = None,
        max_time_limit_hours: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or NullNotificationSink()
        self.id_generator = id_generator or IdentifierGenerator()
        self.max_amount = max_amount if max_amount is not None else Config.MAX_TRANSACTION_AMOUNT
        self.max_time_limit_hours = (
            max_time_limit_hours if max_time_limit_hours is not None else Config.MAX_TIME_LIMIT_HOURS
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_amount(self, amount) -> Decimal:
        amount = MonetaryDecimal.parse_amount(amount)
        if self.max_amount is not None and amount > self.max_amount:
            raise InvalidArgument(
                f"amount {amount} exceeds the maximum of {self.max_amount}", error_code="invalid_amount"
            )
        return amount

    def _validate_time_limit(self, time_limit_hours) -> int:
        if isinstance(time_limit_hours, bool) or not isinstance(time_limit_hours, int):
            raise InvalidArgument("time_limit_hours must be a whole number of hours", error_code="invalid_time_limit")
        if time_limit_hours <= 0:
            raise InvalidArgument("time_limit_hours must be positive", error_code="invalid_time_limit")
        if self.max_time_limit_hours is not None and time_limit_hours > self.max_time_limit_hours:
            raise InvalidArgument(
                f"time_limit_hours exceeds the maximum of {self.max_time_limit_hours}",
                error_code="invalid_time_limit",
            )
        return time_limit_hours

    @staticmethod
    def _validate_conditions(conditions: Sequence[ConditionInput]) -> List[Dict[str, Any]]:
        if isinstance(conditions, (str, bytes)) or not conditions:
            raise InvalidArgument("at least one condition is required", error_code="invalid_conditions")

        normalized = []
        for condition in conditions:
            description = condition.get("description") if isinstance(condition, dict) else condition
            if not isinstance(description, str) or not description.strip():
                raise InvalidArgument("condition descriptions must be non-empty text", error_code="invalid_conditions")
            # Conditions always start incomplete, regardless of what the client sent
            normalized.append({"description": description.strip(), "completed": False})
        return normalized

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_parties(session: Session, transaction: Transaction) -> Dict[str, User]:
        users = lock_user_rows(session, [transaction.sender_id, transaction.receiver_id])
        return {user.id: user for user in users}

    @staticmethod
    def _party_names(transaction: Transaction, parties: Dict[str, User]) -> Dict[str, Any]:
        return {
            "sender_name": parties[transaction.sender_id].name,
            "receiver_name": parties[transaction.receiver_id].name,
        }

    def _publish(self, kind: NotificationEvent, snapshot: Dict[str, Any], recipients: Iterable[str],
                 details: Optional[Dict[str, Any]] = None) -> None:
        """Hand a committed event to the sink; a sink failure never reaches the caller"""
        try:
            self.notifier.notify(DomainEvent(kind=kind, transaction=snapshot, details=details or {}), list(recipients))
        except Exception as e:
            logger.error(f"❌ NOTIFY_FAILED: {kind.value} for transaction {snapshot.get('id')}: {e}")

    def _cancel_locked(self, session: Session, transaction: Transaction, now: datetime) -> bool:
        """
        Shared cancellation path for manual cancel and expiry.

        Returns False when the transaction was already cancelled; the refund is
        applied only when this unit performed the status change.
        """
        store = TransactionStore(session)
        if not store.update_status(
            transaction.id,
            TransactionStatus.CANCELLED.value,
            expected_status=transaction.status,
            at=now,
        ):
            return False

        Ledger(session).release_from_escrow(transaction.sender_id, transaction.amount)
        return True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_transaction(
        self,
        sender_id: str,
        receiver_id: str,
        amount,
        conditions: Sequence[ConditionInput],
        time_limit_hours: int,
    ) -> Transaction:
        """Move amount from the sender's balance into escrow and record a pending transaction"""
        amount = self._validate_amount(amount)
        time_limit_hours = self._validate_time_limit(time_limit_hours)
        normalized_conditions = self._validate_conditions(conditions)
        if not sender_id or not receiver_id:
            raise InvalidArgument("sender_id and receiver_id are required")
        if sender_id == receiver_id:
            raise InvalidArgument("sender and receiver must be different users", error_code="same_user")

        with atomic_transaction(self.session_factory) as session:
            parties = {user.id: user for user in lock_user_rows(session, [sender_id, receiver_id])}

            Ledger(session).move_to_escrow(sender_id, amount)

            transaction = TransactionStore(session).insert(Transaction(
                vtid=self.id_generator.generate_vtid(session),
                sender_id=sender_id,
                receiver_id=receiver_id,
                amount=amount,
                status=TransactionStatus.PENDING.value,
                conditions=normalized_conditions,
                time_limit=time_limit_hours,
                created_at=get_naive_utc_now(),
            ))
            mark_unread([parties[receiver_id]], transaction.id)
            session.flush()

            snapshot = transaction.to_dict()
            details = self._party_names(transaction, parties)

        logger.info(
            f"✅ ESCROW_CREATED: {transaction.vtid} ({transaction.id}) {amount} "
            f"from {sender_id} to {receiver_id}, {time_limit_hours}h limit"
        )
        self._publish(NotificationEvent.TRANSACTION_PENDING, snapshot, [receiver_id], details)
        return transaction

    def accept_transaction(
        self,
        transaction_id: str,
        acting_user_id: str,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Receiver accepts a pending transaction; the deadline restarts from acceptance"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        with atomic_transaction(self.session_factory) as session:
            store = TransactionStore(session)
            transaction = store.lock(transaction_id)

            if acting_user_id != transaction.receiver_id:
                raise PermissionDenied("Only the receiver can accept a transaction")

            if transaction.status != TransactionStatus.PENDING.value:
                raise InvalidTransition(
                    f"Cannot accept a transaction that is {transaction.status}",
                    current_status=transaction.status,
                )

            if transaction.is_expired(now):
                raise InvalidTransition(
                    "Cannot accept a transaction past its time limit",
                    current_status=transaction.status,
                    error_code="transaction_expired",
                )

            parties = self._lock_parties(session, transaction)
            store.update_status(
                transaction.id,
                TransactionStatus.ACCEPTED.value,
                expected_status=TransactionStatus.PENDING.value,
                at=now,
            )
            mark_unread([parties[transaction.sender_id]], transaction.id)
            session.flush()

            snapshot = transaction.to_dict()
            details = self._party_names(transaction, parties)

        logger.info(f"🤝 ESCROW_ACCEPTED: {transaction.vtid} by {acting_user_id}")
        self._publish(NotificationEvent.TRANSACTION_ACCEPTED, snapshot, [transaction.sender_id], details)
        return transaction

    def update_condition(
        self,
        transaction_id: str,
        condition_index: int,
        completed: bool,
        acting_user_id: str,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """
        Sender marks one condition complete or incomplete.

        When this leaves every condition complete, the accepted -> completed
        transition and the payout run inside the same atomic unit.
        """
        if not isinstance(completed, bool):
            raise InvalidArgument("completed must be true or false")
        if isinstance(condition_index, bool) or not isinstance(condition_index, int):
            raise InvalidArgument("condition_index must be an integer", error_code="invalid_condition_index")
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        with atomic_transaction(self.session_factory) as session:
            store = TransactionStore(session)
            transaction = store.lock(transaction_id)

            if acting_user_id != transaction.sender_id:
                raise PermissionDenied("Only the sender can update conditions")

            conditions = [dict(c) for c in (transaction.conditions or [])]
            if not 0 <= condition_index < len(conditions):
                raise InvalidArgument(
                    f"condition_index {condition_index} out of range (0..{len(conditions) - 1})",
                    error_code="invalid_condition_index",
                )

            if transaction.status != TransactionStatus.ACCEPTED.value:
                raise NotAcceptedState(
                    f"Conditions can only change while the transaction is accepted (status '{transaction.status}')",
                    current_status=transaction.status,
                )

            parties = self._lock_parties(session, transaction)
            conditions[condition_index]["completed"] = completed
            store.update_conditions(transaction.id, conditions)

            all_completed = all(c["completed"] for c in conditions)
            if all_completed:
                store.update_status(
                    transaction.id,
                    TransactionStatus.COMPLETED.value,
                    expected_status=TransactionStatus.ACCEPTED.value,
                    at=now,
                )
                Ledger(session).settle_from_escrow(transaction.sender_id, transaction.receiver_id, transaction.amount)
                mark_unread(parties.values(), transaction.id)
            else:
                mark_unread([parties[transaction.receiver_id]], transaction.id)
            session.flush()

            snapshot = transaction.to_dict()
            details = self._party_names(transaction, parties)

        description = conditions[condition_index]["description"]
        logger.info(
            f"📋 CONDITION_UPDATED: {transaction.vtid} #{condition_index} '{description}' -> "
            f"{'completed' if completed else 'not completed'}"
        )
        self._publish(
            NotificationEvent.CONDITION_UPDATED, snapshot, [transaction.receiver_id],
            dict(details, condition_index=condition_index, condition_description=description, completed=completed),
        )

        if all_completed:
            logger.info(f"🎉 ESCROW_COMPLETED: {transaction.vtid} released {transaction.amount} to {transaction.receiver_id}")
            self._publish(
                NotificationEvent.TRANSACTION_COMPLETED, snapshot,
                [transaction.sender_id, transaction.receiver_id], details,
            )
        return transaction

    def cancel_transaction(
        self,
        transaction_id: str,
        acting_user_id: str,
        expected_status: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """
        Either party cancels a pending or accepted transaction; escrow returns to the sender.

        expected_status is the status the caller last saw. When given and the row
        has since moved on, the cancel fails with InvalidTransition instead of
        acting on state the caller never saw.
        """
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        with atomic_transaction(self.session_factory) as session:
            transaction = TransactionStore(session).lock(transaction_id)

            if acting_user_id not in (transaction.sender_id, transaction.receiver_id):
                raise PermissionDenied("Only the sender or receiver can cancel a transaction")

            if expected_status is not None and transaction.status != expected_status:
                raise InvalidTransition(
                    f"Transaction is {transaction.status}, not {expected_status}",
                    current_status=transaction.status,
                )

            parties = self._lock_parties(session, transaction)
            applied = self._cancel_locked(session, transaction, now)
            if applied:
                mark_unread(parties.values(), transaction.id)
                session.flush()

            snapshot = transaction.to_dict()
            role = "sender" if acting_user_id == transaction.sender_id else "receiver"
            details = dict(self._party_names(transaction, parties), reason=f"cancelled by the {role}")

        if not applied:
            logger.info(f"Cancel of {transaction.vtid} is a no-op - already cancelled")
            return transaction

        logger.info(f"🚫 ESCROW_CANCELLED: {transaction.vtid} by {role} {acting_user_id}, {transaction.amount} refunded")
        self._publish(
            NotificationEvent.TRANSACTION_CANCELLED, snapshot,
            [transaction.sender_id, transaction.receiver_id], details,
        )
        return transaction

    def expire_transaction(self, transaction_id: str, now: Optional[datetime] = None) -> Optional[Transaction]:
        """
        Sweep path: cancel a transaction whose deadline has passed.

        The deadline is re-checked under the row lock. Returns None when a
        concurrent action already resolved the transaction or moved its deadline.
        """
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        with atomic_transaction(self.session_factory) as session:
            transaction = TransactionStore(session).lock(transaction_id)

            if transaction.status not in ACTIVE_STATUSES:
                logger.info(f"⏭️ EXPIRY_SKIPPED: {transaction.vtid} already {transaction.status}")
                return None

            if not transaction.is_expired(now):
                logger.info(f"⏭️ EXPIRY_SKIPPED: {transaction.vtid} deadline {transaction.deadline} not reached")
                return None

            parties = self._lock_parties(session, transaction)
            if not self._cancel_locked(session, transaction, now):
                return None
            mark_unread(parties.values(), transaction.id)
            session.flush()

            snapshot = transaction.to_dict()
            details = dict(self._party_names(transaction, parties), reason=EXPIRY_REASON)

        logger.info(f"⏰ ESCROW_EXPIRED: {transaction.vtid} cancelled, {transaction.amount} returned to {transaction.sender_id}")
        self._publish(
            NotificationEvent.TRANSACTION_CANCELLED, snapshot,
            [transaction.sender_id, transaction.receiver_id], details,
        )
        return transaction

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Transaction:
        with atomic_transaction(self.session_factory) as session:
            transaction = TransactionStore(session).get_by_id(transaction_id)
            if transaction is None:
                raise NotFound(f"Transaction {transaction_id} not found")
            return transaction

    def get_transaction_by_vtid(self, vtid: str) -> Transaction:
        with atomic_transaction(self.session_factory) as session:
            transaction = TransactionStore(session).get_by_vtid(vtid)
            if transaction is None:
                raise NotFound(f"Transaction with VTID {vtid} not found")
            return transaction

    def list_for_user(self, user_id: str) -> List[Transaction]:
        with atomic_transaction(self.session_factory) as session:
            if session.get(User, user_id) is None:
                raise NotFound(f"User {user_id} not found")
            return TransactionStore(session).list_for_user(user_id)

"""Atomic transaction utilities for escrow and ledger operations"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Transaction, User
from utils.escrow_errors import NotFound

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session_factory: Optional[Callable[[], Session]] = None,
    session: Optional[Session] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.

    With no session, a new one is opened from session_factory (defaults to
    database.SessionLocal), committed on success, rolled back on any error and
    closed. With a provided session, nesting depth is tracked and only the
    outermost block commits.
    """
    if session is None:
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal

        new_session = session_factory()
        try:
            yield new_session
            new_session.commit()
            logger.debug("Atomic transaction committed successfully")
        except Exception as e:
            new_session.rollback()
            logger.debug(f"Atomic transaction rolled back due to {type(e).__name__}: {e}")
            raise
        finally:
            new_session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
    except Exception as e:
        session.rollback()
        logger.debug(f"Transaction rolled back (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def lock_transaction_row(session: Session, transaction_id: str) -> Transaction:
    """
    Load a transaction with a row-level lock held until the session commits.

    The status read here is the one every guard must be evaluated against;
    no concurrent writer can change it before this unit commits or rolls back.
    """
    try:
        transaction = session.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Database error locking transaction {transaction_id}: {e}")
        raise

    if transaction is None:
        raise NotFound(f"Transaction {transaction_id} not found")

    logger.debug(f"🔒 Locked transaction {transaction_id} ({transaction.status})")
    return transaction


def lock_user_rows(session: Session, user_ids: Iterable[str]) -> List[User]:
    """
    Lock user rows in a stable (sorted id) order.

    Every atomic unit that touches two users locks them in the same order, so
    two units moving money in opposite directions cannot deadlock.
    """
    ordered_ids = sorted(set(user_ids))
    users = session.execute(
        select(User)
        .where(User.id.in_(ordered_ids))
        .order_by(User.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()

    found = {user.id for user in users}
    missing = [user_id for user_id in ordered_ids if user_id not in found]
    if missing:
        raise NotFound(f"User {missing[0]} not found")

    return list(users)


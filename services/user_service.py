"""
User Service
Registration, lookup and unread-marker bookkeeping for Vault users
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from config import Config
from database import SessionFactory
from models import User
from services.identifier_generator import IdentifierGenerator
from utils.atomic_transactions import atomic_transaction, lock_user_rows
from utils.escrow_errors import InvalidArgument, NotFound

logger = logging.getLogger(__name__)


def mark_unread(users: Iterable[User], transaction_id: str) -> None:
    """Flag transaction_id as needing attention for each user (rows must be locked by the caller)"""
    for user in users:
        current = list(user.unread_transaction_ids or [])
        if transaction_id not in current:
            # Reassign so the JSON column is flagged dirty
            user.unread_transaction_ids = current + [transaction_id]


class UserService:
    """Registers and looks up users"""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        id_generator: Optional[IdentifierGenerator] = None,
        starting_balance: Optional[Decimal] = None,
    ):
        self.session_factory = session_factory
        self.id_generator = id_generator or IdentifierGenerator()
        self.starting_balance = (
            starting_balance if starting_balance is not None else Config.DEFAULT_STARTING_BALANCE
        )

    def register_user(
        self,
        name: str,
        email: str,
        phone: Optional[str] = None,
        location: Optional[str] = None,
    ) -> User:
        """Create a user with a fresh VID and the configured starting balance"""
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name:
            raise InvalidArgument("name is required")
        if not email or "@" not in email:
            raise InvalidArgument(f"invalid email address: {email!r}")

        try:
            with atomic_transaction(self.session_factory) as session:
                user = User(
                    vault_id=self.id_generator.generate_vid(session),
                    name=name,
                    email=email,
                    phone=phone,
                    location=location,
                    balance=self.starting_balance,
                    escrow_balance=Decimal("0.00"),
                    unread_transaction_ids=[],
                )
                session.add(user)
                session.flush()
        except IntegrityError as e:
            if self._email_taken(email):
                raise InvalidArgument(f"email {email} is already registered", error_code="email_taken")
            logger.error(f"❌ USER_REGISTRATION_FAILED: {email}: {e}")
            raise

        logger.info(f"👤 USER_REGISTERED: {user.id} VID={user.vault_id}")
        return user

    def _email_taken(self, email: str) -> bool:
        with atomic_transaction(self.session_factory) as session:
            return session.execute(select(User.id).where(User.email == email)).first() is not None

    def get_user(self, user_id: str) -> User:
        with atomic_transaction(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            return user

    def get_by_vault_id(self, vault_id: str) -> User:
        with atomic_transaction(self.session_factory) as session:
            user = session.execute(
                select(User).where(User.vault_id == vault_id.strip().upper())
            ).scalar_one_or_none()
            if user is None:
                raise NotFound(f"User with VID {vault_id} not found")
            return user

    def clear_unread(self, user_id: str, transaction_id: str) -> User:
        """Remove a transaction from the user's unread list once viewed"""
        with atomic_transaction(self.session_factory) as session:
            (user,) = lock_user_rows(session, [user_id])
            remaining = [tid for tid in (user.unread_transaction_ids or []) if tid != transaction_id]
            if len(remaining) != len(user.unread_transaction_ids or []):
                user.unread_transaction_ids = remaining
                logger.debug(f"📭 UNREAD_CLEARED: {transaction_id} for user {user_id}")
            session.flush()
            return user

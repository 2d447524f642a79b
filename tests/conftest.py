"""
Shared fixtures for the Vault escrow test suite

Key Components:
1. A fresh SQLite file database per test (file-backed so threads share it)
2. A recording notification sink standing in for push delivery
3. User factories and balance/timestamp helpers
"""

import itertools
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

import pytest
from sqlalchemy import func, select, update

from database import build_engine, build_session_factory, create_tables
from models import Transaction, User
from services.escrow_engine import EscrowEngine
from services.expiry_sweeper import ExpirySweeper
from services.notification_service import DomainEvent, NotificationEvent, NotificationSink
from services.user_service import UserService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class RecordingSink(NotificationSink):
    """Keeps every published event in memory"""

    def __init__(self):
        self.events: List[Tuple[DomainEvent, List[str]]] = []

    def notify(self, event: DomainEvent, recipients: List[str]) -> None:
        self.events.append((event, list(recipients)))

    def kinds(self) -> List[NotificationEvent]:
        return [event.kind for event, _ in self.events]

    def recipients_for(self, kind: NotificationEvent) -> List[List[str]]:
        return [recipients for event, recipients in self.events if event.kind is kind]


class ExplodingSink(NotificationSink):
    """A sink whose delivery always fails"""

    def __init__(self):
        self.calls = 0

    def notify(self, event: DomainEvent, recipients: List[str]) -> None:
        self.calls += 1
        raise RuntimeError("push gateway unavailable")


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'vault_test.db'}")
    assert create_tables(engine) is True
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def user_service(session_factory):
    return UserService(session_factory, starting_balance=Decimal("1000.00"))


@pytest.fixture
def escrow_engine(session_factory, sink):
    return EscrowEngine(session_factory, notifier=sink, max_amount=None, max_time_limit_hours=None)


@pytest.fixture
def sweeper(escrow_engine, session_factory):
    return ExpirySweeper(escrow_engine, session_factory=session_factory, batch_size=2)


@pytest.fixture
def make_user(user_service, session_factory):
    """Factory registering users with unique emails and an optional custom balance"""
    counter = itertools.count(1)

    def _make_user(name: str = "User", balance: Optional[Decimal] = None) -> User:
        n = next(counter)
        user = user_service.register_user(name=f"{name} {n}", email=f"user{n}@vault.test")
        if balance is not None:
            set_balance(session_factory, user.id, Decimal(balance))
        return user

    return _make_user


def set_balance(session_factory, user_id: str, balance: Decimal) -> None:
    with session_factory() as session:
        session.execute(update(User).where(User.id == user_id).values(balance=balance))
        session.commit()


def reload_user(session_factory, user_id: str) -> User:
    with session_factory() as session:
        return session.get(User, user_id)


def reload_transaction(session_factory, transaction_id: str) -> Transaction:
    with session_factory() as session:
        return session.get(Transaction, transaction_id)


def total_money(session_factory) -> Decimal:
    """Sum of every balance and escrow balance in the system"""
    with session_factory() as session:
        balance, escrow = session.execute(
            select(func.coalesce(func.sum(User.balance), 0), func.coalesce(func.sum(User.escrow_balance), 0))
        ).one()
    return Decimal(str(balance)).quantize(Decimal("0.01")) + Decimal(str(escrow)).quantize(Decimal("0.01"))


def backdate(session_factory, transaction_id: str, created_at: datetime = None, accepted_at: datetime = None) -> None:
    values = {}
    if created_at is not None:
        values["created_at"] = created_at
    if accepted_at is not None:
        values["accepted_at"] = accepted_at
    with session_factory() as session:
        session.execute(update(Transaction).where(Transaction.id == transaction_id).values(**values))
        session.commit()

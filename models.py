"""
Vault Escrow Platform - Database Schema
=======================================

Schema for peer-to-peer escrow payments:
- Users with a spendable balance and an escrow balance (funds locked in sent transactions)
- Escrow transactions with a checklist of conditions and a time limit
- Push notification device tokens

Amounts are a single currency with 2 fraction digits throughout.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    String, Integer, Numeric, DateTime, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionStatus(Enum):
    """Escrow transaction lifecycle states"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class User(Base):
    """Vault user - owns a spendable balance and an escrow balance"""
    __tablename__ = 'users'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    vault_id: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)  # VID

    # Profile
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Balances - mutated only through services.ledger
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    escrow_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    # Transaction ids awaiting this user's attention
    unread_transaction_ids: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    device_tokens: Mapped[List["DeviceToken"]] = relationship(
        "DeviceToken", back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_users_balance_non_negative'),
        CheckConstraint('escrow_balance >= 0', name='ck_users_escrow_balance_non_negative'),
        Index('idx_users_vault_id', 'vault_id'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vault_id": self.vault_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "location": self.location,
            "balance": self.balance,
            "escrow_balance": self.escrow_balance,
            "created_at": self.created_at,
            "unread_transaction_ids": list(self.unread_transaction_ids or []),
        }


class Transaction(Base):
    """Escrow transaction between a sender and a receiver"""
    __tablename__ = 'transactions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    vtid: Mapped[str] = mapped_column(String(24), unique=True, nullable=False)  # VTID

    # Participants
    sender_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False)
    receiver_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=TransactionStatus.PENDING.value, nullable=False)

    # Ordered list of {"description": str, "completed": bool}
    conditions: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, default=list, nullable=False)

    time_limit: Mapped[int] = mapped_column(Integer, nullable=False)  # hours

    # Lifecycle timestamps - each set exactly once at the corresponding transition
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    sender: Mapped["User"] = relationship("User", foreign_keys=[sender_id])
    receiver: Mapped["User"] = relationship("User", foreign_keys=[receiver_id])

    __table_args__ = (
        CheckConstraint(
            f"status IN ('{TransactionStatus.PENDING.value}', '{TransactionStatus.ACCEPTED.value}', "
            f"'{TransactionStatus.COMPLETED.value}', '{TransactionStatus.CANCELLED.value}')",
            name='ck_transactions_status_valid',
        ),
        CheckConstraint('amount > 0', name='ck_transactions_amount_positive'),
        CheckConstraint('time_limit > 0', name='ck_transactions_time_limit_positive'),
        CheckConstraint('sender_id != receiver_id', name='ck_transactions_different_users'),
        Index('idx_transactions_sender_id', 'sender_id'),
        Index('idx_transactions_receiver_id', 'receiver_id'),
        Index('idx_transactions_status', 'status'),
        Index('idx_transactions_status_created', 'status', 'created_at', 'id'),
        Index('idx_transactions_vtid', 'vtid'),
    )

    @property
    def deadline(self) -> datetime:
        """Deadline is measured from acceptance once accepted, from creation before that"""
        start = self.accepted_at or self.created_at
        return start + timedelta(hours=self.time_limit)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.deadline < (now or get_naive_utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vtid": self.vtid,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "amount": self.amount,
            "status": self.status,
            "conditions": [dict(c) for c in (self.conditions or [])],
            "time_limit": self.time_limit,
            "created_at": self.created_at,
            "accepted_at": self.accepted_at,
            "completed_at": self.completed_at,
            "cancelled_at": self.cancelled_at,
        }


class DeviceToken(Base):
    """Push notification device token registered by a user"""
    __tablename__ = 'device_tokens'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    device_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="device_tokens")

    __table_args__ = (
        UniqueConstraint('user_id', 'token', name='uq_device_tokens_user_token'),
        Index('idx_device_tokens_user_id', 'user_id'),
        Index('idx_device_tokens_token', 'token'),
    )

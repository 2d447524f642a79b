"""
Request and response bodies for the escrow HTTP API
Amounts travel as strings with 2 decimals so no client float ever touches the ledger
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from models import DeviceToken, Transaction, User
from utils.decimal_precision import MonetaryDecimal


def _money(value: Decimal) -> str:
    return f"{MonetaryDecimal.quantize(value):.2f}"


# --- Users ---

class RegisterUserRequest(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None
    location: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    vault_id: str
    name: str
    email: str
    phone: Optional[str] = None
    location: Optional[str] = None
    balance: str
    escrow_balance: str
    created_at: datetime
    unread_transaction_ids: List[str]

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        data = user.to_dict()
        data["balance"] = _money(user.balance)
        data["escrow_balance"] = _money(user.escrow_balance)
        return cls(**data)


class DeviceTokenRequest(BaseModel):
    token: str
    platform: str
    device_name: Optional[str] = None


class DeviceTokenResponse(BaseModel):
    id: str
    user_id: str
    platform: str
    device_name: Optional[str] = None
    last_used_at: datetime

    @classmethod
    def from_model(cls, device_token: DeviceToken) -> "DeviceTokenResponse":
        return cls(
            id=device_token.id,
            user_id=device_token.user_id,
            platform=device_token.platform,
            device_name=device_token.device_name,
            last_used_at=device_token.last_used_at,
        )


# --- Transactions ---

class ConditionBody(BaseModel):
    description: str
    completed: bool = False


class CreateTransactionRequest(BaseModel):
    sender_id: str
    receiver_id: str
    amount: Decimal
    conditions: List[str]
    time_limit_hours: int = Field(..., description="Hours until the transaction expires")


class ActorRequest(BaseModel):
    acting_user_id: str


class CancelTransactionRequest(BaseModel):
    acting_user_id: str
    # Status the client last saw; the cancel is rejected if the transaction moved on
    expected_status: str = Field(..., description="pending or accepted, as last seen by the client")


class ConditionUpdateRequest(BaseModel):
    completed: bool
    acting_user_id: str


class TransactionResponse(BaseModel):
    id: str
    vtid: str
    sender_id: str
    receiver_id: str
    amount: str
    status: str
    conditions: List[ConditionBody]
    time_limit: int
    deadline: datetime
    created_at: datetime
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, transaction: Transaction) -> "TransactionResponse":
        data = transaction.to_dict()
        data["amount"] = _money(transaction.amount)
        data["deadline"] = transaction.deadline
        return cls(**data)


class SweepResponse(BaseModel):
    cancelled: int

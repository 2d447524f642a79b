"""
Escrow Transaction Routes
Thin HTTP layer over EscrowEngine; domain errors are mapped to status codes by the app
"""

import logging
from typing import List

from fastapi import APIRouter, Depends

from routes.dependencies import ServiceRegistry, get_services
from routes.schemas import (
    ActorRequest,
    CancelTransactionRequest,
    ConditionUpdateRequest,
    CreateTransactionRequest,
    SweepResponse,
    TransactionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transactions"])


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(body: CreateTransactionRequest, services: ServiceRegistry = Depends(get_services)):
    transaction = services.engine.create_transaction(
        sender_id=body.sender_id,
        receiver_id=body.receiver_id,
        amount=body.amount,
        conditions=body.conditions,
        time_limit_hours=body.time_limit_hours,
    )
    return TransactionResponse.from_model(transaction)


@router.get("/transactions/vtid/{vtid}", response_model=TransactionResponse)
def get_transaction_by_vtid(vtid: str, services: ServiceRegistry = Depends(get_services)):
    return TransactionResponse.from_model(services.engine.get_transaction_by_vtid(vtid))


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(transaction_id: str, services: ServiceRegistry = Depends(get_services)):
    return TransactionResponse.from_model(services.engine.get_transaction(transaction_id))


@router.get("/users/{user_id}/transactions", response_model=List[TransactionResponse])
def list_user_transactions(user_id: str, services: ServiceRegistry = Depends(get_services)):
    return [TransactionResponse.from_model(t) for t in services.engine.list_for_user(user_id)]


@router.post("/transactions/{transaction_id}/accept", response_model=TransactionResponse)
def accept_transaction(
    transaction_id: str, body: ActorRequest, services: ServiceRegistry = Depends(get_services)
):
    return TransactionResponse.from_model(
        services.engine.accept_transaction(transaction_id, body.acting_user_id)
    )


@router.post("/transactions/{transaction_id}/cancel", response_model=TransactionResponse)
def cancel_transaction(
    transaction_id: str, body: CancelTransactionRequest, services: ServiceRegistry = Depends(get_services)
):
    return TransactionResponse.from_model(
        services.engine.cancel_transaction(
            transaction_id, body.acting_user_id, expected_status=body.expected_status
        )
    )


@router.post("/transactions/{transaction_id}/conditions/{condition_index}", response_model=TransactionResponse)
def update_condition(
    transaction_id: str,
    condition_index: int,
    body: ConditionUpdateRequest,
    services: ServiceRegistry = Depends(get_services),
):
    """Sender marks a condition; completing the last one releases the escrow to the receiver"""
    return TransactionResponse.from_model(
        services.engine.update_condition(
            transaction_id, condition_index, body.completed, body.acting_user_id
        )
    )


@router.post("/admin/sweep", response_model=SweepResponse, tags=["admin"])
def run_sweep(services: ServiceRegistry = Depends(get_services)):
    """Run the expiry sweep now instead of waiting for the hourly job"""
    cancelled = services.sweeper.sweep()
    logger.info(f"🧹 MANUAL_SWEEP: cancelled {cancelled} transaction(s)")
    return SweepResponse(cancelled=cancelled)

"""
User Routes
Registration, lookup, device tokens and unread markers
"""

import logging

from fastapi import APIRouter, Depends

from routes.dependencies import ServiceRegistry, get_services
from routes.schemas import (
    DeviceTokenRequest,
    DeviceTokenResponse,
    RegisterUserRequest,
    UserResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=UserResponse, status_code=201)
def register_user(body: RegisterUserRequest, services: ServiceRegistry = Depends(get_services)):
    user = services.users.register_user(
        name=body.name,
        email=body.email,
        phone=body.phone,
        location=body.location,
    )
    return UserResponse.from_model(user)


@router.get("/vid/{vault_id}", response_model=UserResponse)
def get_user_by_vault_id(vault_id: str, services: ServiceRegistry = Depends(get_services)):
    return UserResponse.from_model(services.users.get_by_vault_id(vault_id))


@router.get("/{user_id}", response_model=UserResponse)
def get_user(user_id: str, services: ServiceRegistry = Depends(get_services)):
    return UserResponse.from_model(services.users.get_user(user_id))


@router.post("/{user_id}/device-tokens", response_model=DeviceTokenResponse, status_code=201)
def save_device_token(
    user_id: str, body: DeviceTokenRequest, services: ServiceRegistry = Depends(get_services)
):
    """Register or refresh a push token for the user's device"""
    device_token = services.device_tokens.save_device_token(
        user_id=user_id,
        token=body.token,
        platform=body.platform,
        device_name=body.device_name,
    )
    return DeviceTokenResponse.from_model(device_token)


@router.post("/{user_id}/unread/{transaction_id}/clear", response_model=UserResponse)
def clear_unread(user_id: str, transaction_id: str, services: ServiceRegistry = Depends(get_services)):
    return UserResponse.from_model(services.users.clear_unread(user_id, transaction_id))

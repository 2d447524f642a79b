"""Service wiring shared by the HTTP routes and the scheduler"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from database import SessionFactory
from services.device_token_registry import DeviceTokenRegistry
from services.escrow_engine import EscrowEngine
from services.expiry_sweeper import ExpirySweeper
from services.identifier_generator import IdentifierGenerator
from services.notification_service import NotificationSink, build_notification_sink
from services.user_service import UserService

logger = logging.getLogger(__name__)


@dataclass
class ServiceRegistry:
    users: UserService
    device_tokens: DeviceTokenRegistry
    engine: EscrowEngine
    sweeper: ExpirySweeper
    notifications: NotificationSink


def build_services(
    session_factory: Optional[SessionFactory] = None,
    notification_sink: Optional[NotificationSink] = None,
) -> ServiceRegistry:
    """Construct every service against one session factory"""
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    id_generator = IdentifierGenerator()
    device_tokens = DeviceTokenRegistry(session_factory)
    sink = notification_sink or build_notification_sink(device_tokens)
    engine = EscrowEngine(session_factory, notifier=sink, id_generator=id_generator)

    return ServiceRegistry(
        users=UserService(session_factory, id_generator=id_generator),
        device_tokens=device_tokens,
        engine=engine,
        sweeper=ExpirySweeper(engine),
        notifications=sink,
    )


def get_services(request: Request) -> ServiceRegistry:
    return request.app.state.services

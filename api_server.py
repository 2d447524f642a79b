"""
Vault Escrow API Server
FastAPI application exposing the escrow engine, plus the background scheduler lifecycle
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from database import test_connection
from jobs.escrow_scheduler import EscrowScheduler
from routes.dependencies import ServiceRegistry, build_services
from routes.transactions import router as transactions_router
from routes.users import router as users_router
from services.notification_service import QueuedNotificationSink
from utils.escrow_errors import (
    EscrowError,
    InsufficientFunds,
    InvalidArgument,
    InvalidTransition,
    NotFound,
    PermissionDenied,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses (NotAcceptedState) resolve through their parent
ERROR_STATUS_CODES = (
    (InvalidArgument, 422),
    (InsufficientFunds, 409),
    (InvalidTransition, 409),
    (PermissionDenied, 403),
    (NotFound, 404),
)


def status_code_for(error: EscrowError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 400


def create_app(services: Optional[ServiceRegistry] = None, run_scheduler: bool = True) -> FastAPI:
    """Build the API; tests pass their own services and skip the scheduler"""
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if run_scheduler:
            sink = services.notifications
            scheduler = EscrowScheduler(
                services.sweeper,
                notification_sink=sink if isinstance(sink, QueuedNotificationSink) else None,
            )
            scheduler.start()

        yield

        if scheduler is not None:
            scheduler.stop()
        logger.info("🔄 Vault API shutting down")

    app = FastAPI(
        title="Vault Escrow API",
        description="Peer-to-peer escrow payments with condition checklists and time limits",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.error_code}: {exc.message}")

        content = {"error": exc.error_code, "message": exc.message}
        current_status = getattr(exc, "current_status", None)
        if current_status:
            content["current_status"] = current_status
        return JSONResponse(status_code=status_code, content=content)

    @app.get("/health")
    def health_check():
        """Liveness plus a database round trip"""
        with services.engine.session_factory() as session:
            database_ok = test_connection(session.get_bind())
        if not database_ok:
            return JSONResponse(status_code=503, content={"status": "degraded", "database": False})
        return {"status": "healthy", "database": True}

    app.include_router(users_router)
    app.include_router(transactions_router)
    return app

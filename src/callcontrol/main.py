"""
FastAPI application entry point.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from callcontrol.accounts.ledger import LedgerStore
from callcontrol.accounts.router import router as accounts_router
from callcontrol.alerts.notifier import Notifier, create_notifier
from callcontrol.alerts.sweep import AccountAlertSweep, AlertSweepConfig
from callcontrol.calls.admission import AdmissionController
from callcontrol.calls.monitor import CallLifecycleMonitor, MonitorConfig
from callcontrol.campaigns.dialer import DialerConfig
from callcontrol.campaigns.manager import CampaignManager
from callcontrol.campaigns.repository import CampaignRepository
from callcontrol.campaigns.router import router as campaigns_router
from callcontrol.config import Settings, get_settings
from callcontrol.shared.clock import Clock, SystemClock
from callcontrol.shared.database import DatabaseManager, get_database_manager
from callcontrol.shared.exceptions import (
    AppException,
    ConfigurationError,
    InsufficientCreditsError,
    InvalidCampaignStateError,
    LedgerConflict,
    NotFoundError,
    ValidationError,
)
from callcontrol.shared.logging import get_logger, setup_logging
from callcontrol.telephony.config import TelephonyConfig, get_telephony_config
from callcontrol.telephony.factory import create_telephony_provider
from callcontrol.telephony.interface import TelephonyProvider
from callcontrol.telephony.webhooks.router import router as telephony_webhooks_router

logger = get_logger(__name__)

_STATUS_BY_EXCEPTION: list[tuple[type[AppException], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (InsufficientCreditsError, status.HTTP_403_FORBIDDEN),
    (InvalidCampaignStateError, status.HTTP_409_CONFLICT),
    (LedgerConflict, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def wire_services(
    app: FastAPI,
    db: DatabaseManager,
    provider: TelephonyProvider,
    notifier: Notifier,
    settings: Settings,
    telephony_config: TelephonyConfig,
    clock: Clock | None = None,
) -> None:
    """Build the control plane services and attach them to ``app.state``."""
    clock = clock or SystemClock()
    ledger = LedgerStore(db, settings)

    app.state.settings = settings
    app.state.telephony_config = telephony_config
    app.state.db = db
    app.state.provider = provider
    app.state.notifier = notifier
    app.state.ledger = ledger
    app.state.admission = AdmissionController(ledger, notifier, settings, clock)
    app.state.monitor = CallLifecycleMonitor(
        ledger,
        provider,
        notifier,
        MonitorConfig.from_settings(settings),
        clock,
    )
    app.state.alert_sweep = AccountAlertSweep(
        ledger,
        notifier,
        AlertSweepConfig.from_settings(settings),
        clock,
    )
    app.state.campaign_manager = CampaignManager(
        CampaignRepository(db),
        ledger,
        provider,
        settings,
        DialerConfig.from_settings(settings),
        clock,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})

    db = get_database_manager()
    if settings.auto_create_schema:
        await db.create_all()
        logger.info("Database schema ensured")

    telephony_config = get_telephony_config()
    provider = create_telephony_provider(telephony_config)
    notifier = create_notifier(settings)
    wire_services(app, db, provider, notifier, settings, telephony_config)

    if settings.monitor_enabled:
        await app.state.monitor.start()
    if settings.alert_sweep_enabled:
        await app.state.alert_sweep.start()

    yield

    logger.info("Shutting down application")

    await app.state.campaign_manager.shutdown()
    await app.state.monitor.stop()
    await app.state.alert_sweep.stop()

    provider.close()
    close_notifier = getattr(notifier, "close", None)
    if close_notifier is not None:
        await close_notifier()

    await db.close()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Call Control Plane API",
        description="Inbound admission, campaign dialing and per-minute billing",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(AppException)
    async def _app_exception(_: Request, exc: AppException) -> JSONResponse:
        status_code = status.HTTP_400_BAD_REQUEST
        for exc_type, code in _STATUS_BY_EXCEPTION:
            if isinstance(exc, exc_type):
                status_code = code
                break
        return JSONResponse(
            status_code=status_code,
            content={"detail": {"code": exc.code, "message": exc.message, "details": exc.details}},
        )

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(campaigns_router)
    app.include_router(accounts_router)
    app.include_router(telephony_webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app

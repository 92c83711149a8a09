import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError

from core.background import SideEffectDispatcher
from core.config import Settings, settings as default_settings
from core.database import DatabaseManager
from core.logging import setup_logging
from core.utils.polling import BoundedPoller
# Import exceptions and handlers
from core.exceptions import (
    APIException,
    api_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    sqlalchemy_exception_handler,
    general_exception_handler
)
from routes import health_router, orders_router, payments_router, shipping_router
from services.shippo import ShippoClient
from services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup event
    state = app.state
    for warning in state.settings.validate():
        logger.warning(warning)

    if state.settings.DB_CREATE_ALL:
        await state.db_manager.create_all()
        logger.info("Database tables ensured")

    yield

    # Shutdown event
    if state.dispatcher.pending:
        logger.info(f"Waiting for {state.dispatcher.pending} side effects to finish")
    await state.dispatcher.drain()
    await state.shippo_client.close()
    await state.db_manager.dispose()


def create_app(
    settings: Optional[Settings] = None,
    db_manager: Optional[DatabaseManager] = None,
    stripe_gateway: Optional[StripeGateway] = None,
    shippo_client: Optional[ShippoClient] = None,
    dispatcher: Optional[SideEffectDispatcher] = None,
    poller: Optional[BoundedPoller] = None,
) -> FastAPI:
    """Build the API with one instance of every process-wide collaborator."""
    settings = settings or default_settings
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Storefront API",
        description="Checkout, payments and shipment tracking for the storefront.",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.db_manager = db_manager or DatabaseManager(
        settings.SQLALCHEMY_DATABASE_URI,
        echo=settings.ENVIRONMENT == "local" and settings.LOG_LEVEL.upper() == "DEBUG",
    )
    app.state.dispatcher = dispatcher or SideEffectDispatcher()
    app.state.stripe_gateway = stripe_gateway or StripeGateway(
        settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        currency=settings.STRIPE_CURRENCY,
    )
    app.state.shippo_client = shippo_client or ShippoClient(
        settings.SHIPPO_API_TOKEN,
        base_url=settings.SHIPPO_API_URL,
        api_version=settings.SHIPPO_API_VERSION,
        timeout=settings.SHIPPO_TIMEOUT_SECONDS,
    )
    app.state.poller = poller or BoundedPoller(
        max_attempts=settings.SHIPPO_QUEUED_MAX_ATTEMPTS,
        delay=settings.SHIPPO_QUEUED_RETRY_DELAY_SECONDS,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include all routers with API versioning
    app.include_router(orders_router, prefix=settings.API_PREFIX)
    app.include_router(payments_router, prefix=settings.API_PREFIX)
    app.include_router(shipping_router, prefix=settings.API_PREFIX)
    app.include_router(health_router)

    # Register exception handlers
    app.add_exception_handler(APIException, api_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    @app.get("/")
    async def read_root():
        return {
            "service": "Storefront API",
            "version": "1.0.0",
            "status": "online",
            "docs": "/docs",
        }

    return app


app = create_app()

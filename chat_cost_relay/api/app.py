"""
FastAPI application factory.

Wires settings, pricing table, exchange store, identity and the streaming
relay together and maps the error taxonomy onto JSON responses.

Run with:
    uvicorn chat_cost_relay.api.app:create_app --factory
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chat_cost_relay.config.loader import (
    RelaySettings,
    StorageBackend,
    describe_settings,
    load_settings,
    resolve_pricing_table,
)
from chat_cost_relay.core.pricing import PricingTable
from chat_cost_relay.errors import PersistenceFailure, RelayError
from chat_cost_relay.logging_config import setup_logging
from chat_cost_relay.relay.streaming import StreamingRelay
from chat_cost_relay.storage.models import ExchangeStore
from chat_cost_relay.storage.repository import SqliteExchangeRepository, initialize_schema
from chat_cost_relay.storage.supabase_repository import (
    SupabaseExchangeRepository,
    create_supabase_client,
)

from .auth import Authenticator, SupabaseAuthenticator
from .routes import SERVICE_NAME, SERVICE_VERSION, router

logger = logging.getLogger(__name__)


def _supabase_configured(settings: RelaySettings) -> bool:
    return bool(settings.supabase_url and settings.supabase_service_role_key)


def build_store(settings: RelaySettings, supabase_client=None) -> ExchangeStore:
    """The exchange store selected by ``settings.storage_backend``."""
    if settings.storage_backend is StorageBackend.SQLITE:
        initialize_schema(settings.sqlite_path)
        return SqliteExchangeRepository(settings.sqlite_path)
    if supabase_client is None:
        supabase_client = create_supabase_client(
            settings.supabase_url, settings.supabase_service_role_key
        )
    return SupabaseExchangeRepository(supabase_client)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(PersistenceFailure)
    async def persistence_error_handler(request: Request, exc: PersistenceFailure):
        logger.error("Storage failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Malformed request body."})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(status_code=404, content={"error": "Route not found"})
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


def create_app(
    settings: Optional[RelaySettings] = None,
    pricing: Optional[PricingTable] = None,
    store: Optional[ExchangeStore] = None,
    authenticator: Optional[Authenticator] = None,
    relay: Optional[StreamingRelay] = None,
) -> FastAPI:
    """Build the application.

    Collaborators that are not passed in are built from ``settings``
    (loaded from the environment when omitted).
    """
    if settings is None:
        settings = load_settings()
        setup_logging(settings.log_level)
    logger.info("Loaded config: %s", describe_settings(settings))

    if pricing is None:
        pricing = resolve_pricing_table(settings)

    supabase_client = None
    if (store is None or authenticator is None) and _supabase_configured(settings):
        supabase_client = create_supabase_client(
            settings.supabase_url, settings.supabase_service_role_key
        )
    if store is None:
        store = build_store(settings, supabase_client)
    if authenticator is None:
        authenticator = SupabaseAuthenticator(supabase_client)
    if relay is None:
        relay = StreamingRelay(settings=settings, pricing=pricing, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await relay.aclose()

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.pricing = pricing
    app.state.store = store
    app.state.authenticator = authenticator
    app.state.relay = relay

    register_error_handlers(app)
    app.include_router(router)
    return app

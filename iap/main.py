"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from iap.api.routes import router
from iap.config import Settings, settings
from iap.db.migration_runner import run_migrations
from iap.db.session import close_engine, get_engine, get_session_factory
from iap.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from iap.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from iap.services.apple_provider import AppleReceiptProvider
from iap.services.entitlements import EntitlementService
from iap.services.google_play_provider import GooglePlayProvider
from iap.services.payment_provider import ProviderRegistry
from iap.services.paypal_provider import PayPalWebProvider
from iap.services.purchase_normalizer import PurchaseNormalizer
from iap.services.runtime_config import (
    HttpRuntimeConfigProvider,
    NoopRuntimeConfigProvider,
    RuntimeConfigProvider,
)
from iap.store import InMemoryIapStore, JsonFileIapStore, SqlIapStore
from iap.store.base import IapStore

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_store(config: Settings) -> IapStore:
    """Create the ledger store selected by IAP_STORE_TYPE."""
    if config.store_type == "postgres":
        instrument_sqlalchemy(get_engine())
        return SqlIapStore(get_session_factory())
    if config.store_type == "file":
        return JsonFileIapStore(config.iap_store_file_path)
    return InMemoryIapStore()


def build_provider_registry(config: Settings) -> ProviderRegistry:
    """Register the three provider adapters."""
    timeout = config.iap_provider_timeout_seconds
    return ProviderRegistry(
        {
            "apple": AppleReceiptProvider(timeout_seconds=timeout),
            "google": GooglePlayProvider(),
            "paypal_web": PayPalWebProvider(timeout_seconds=timeout),
        },
        timeout_seconds=timeout,
    )


def build_runtime_config_provider(config: Settings) -> RuntimeConfigProvider:
    """Create the per-game runtime config source selected by IAP_RUNTIME_CONFIG_MODE."""
    if config.iap_runtime_config_mode.strip().lower() == "http":
        return HttpRuntimeConfigProvider(
            service_url=config.iap_runtime_config_url,
            internal_key=config.iap_runtime_config_internal_key,
            environment=config.iap_environment,
            cache_ttl_seconds=config.iap_runtime_config_cache_ttl_seconds,
        )
    return NoopRuntimeConfigProvider()


def build_entitlement_service(
    config: Settings,
    store: IapStore,
    runtime_config: RuntimeConfigProvider,
    providers: ProviderRegistry | None = None,
) -> EntitlementService:
    """Wire store, normalizer and providers into the service facade."""
    normalizer = PurchaseNormalizer(
        providers=providers or build_provider_registry(config),
        runtime_config=runtime_config,
        static_provider_configs=config.static_provider_configs(),
        environment=config.iap_environment.strip().lower(),
    )
    return EntitlementService(store=store, normalizer=normalizer)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the store and service on startup, releases them on shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        store=settings.store_type,
        runtime_config_mode=settings.iap_runtime_config_mode,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.store_type == "postgres" and settings.iap_run_migrations:
        await asyncio.to_thread(run_migrations)

    store = build_store(settings)
    runtime_config = build_runtime_config_provider(settings)
    app.state.entitlement_service = build_entitlement_service(settings, store, runtime_config)

    yield

    logger.info("application_shutting_down")
    await runtime_config.close()
    await store.close()
    if settings.store_type == "postgres":
        await close_engine()
        logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Proxy headers middleware - trust X-Forwarded-* headers from the load balancer
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        response = await call_next(request)
        return response


app.add_middleware(ProxyHeadersMiddleware)

# CORS middleware - origins from CORS_ALLOWED_ORIGINS
_origins = settings.allowed_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials="*" not in _origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["x-request-id"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Assign a request id and log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID") or f"req_{uuid.uuid4().hex}"
    request.state.request_id = request_id

    endpoint = request.url.path
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    with log_context(request_id=request_id):
        try:
            response = await call_next(request)
            duration = time.time() - start_time

            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=endpoint,
                status_code=response.status_code,
                duration_seconds=duration,
            )

            response.headers["x-request-id"] = request_id
            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "iap.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )

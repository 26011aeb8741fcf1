"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from app.api.dependencies import get_ingestor
from app.api.routes import router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines, get_write_engine
from app.exceptions import (
    AuthenticationError,
    EntitlementNotFoundError,
    InvalidPurchaseError,
    PersistenceError,
    StorefrontUnavailableError,
    UnverifiableResponseError,
    WebhookVerificationError,
)
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

RETRY_AFTER_SECONDS = "5"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Startup applies pending migrations and starts the inbox worker, which
    first drains events acknowledged before the last shutdown.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.auto_migrate:
        await asyncio.to_thread(run_migrations)

    instrument_sqlalchemy(get_write_engine())

    ingestor = get_ingestor()
    ingestor.start()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await ingestor.stop()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


def _error(status_code: int, error: str, message: str, retry: bool = False) -> JSONResponse:
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if retry else None
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message},
        headers=headers,
    )


# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # Sanitize errors for logging (ctx may contain non-serializable objects)
    sanitized_errors = [
        {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
        for error in errors
    ]

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    fields = ", ".join(".".join(str(part) for part in e["loc"] or ()) for e in sanitized_errors)
    return _error(422, "validation_error", f"Invalid request: {fields}")


@app.exception_handler(InvalidPurchaseError)
async def invalid_purchase_handler(request: Request, exc: InvalidPurchaseError) -> JSONResponse:
    return _error(400, "invalid_purchase", f"This purchase is invalid: {exc.message}")


@app.exception_handler(StorefrontUnavailableError)
async def storefront_unavailable_handler(
    request: Request, exc: StorefrontUnavailableError
) -> JSONResponse:
    logger.warning("storefront_unavailable", path=request.url.path, error=exc.message)
    metrics.record_error("storefront_unavailable", request.url.path)
    return _error(
        503,
        "verification_unavailable",
        "The purchase could not be confirmed yet, try again shortly",
        retry=True,
    )


@app.exception_handler(UnverifiableResponseError)
async def unverifiable_response_handler(
    request: Request, exc: UnverifiableResponseError
) -> JSONResponse:
    logger.error("storefront_response_unverifiable", path=request.url.path, error=exc.message)
    metrics.record_error("unverifiable_response", request.url.path)
    return _error(
        503,
        "verification_unavailable",
        "The purchase could not be confirmed yet, try again shortly",
        retry=True,
    )


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("persistence_failed", path=request.url.path, error=exc.message)
    metrics.record_error("persistence", request.url.path)
    return _error(503, "storage_unavailable", "Temporarily unable to save, try again", retry=True)


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    return _error(401, "unauthorized", exc.message)


@app.exception_handler(WebhookVerificationError)
async def webhook_verification_handler(
    request: Request, exc: WebhookVerificationError
) -> JSONResponse:
    logger.error("google_play_webhook_verification_failed", error=exc.message)
    return _error(400, "invalid_notification", exc.message)


@app.exception_handler(EntitlementNotFoundError)
async def not_found_handler(request: Request, exc: EntitlementNotFoundError) -> JSONResponse:
    return _error(404, "not_found", exc.message)


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID", "unknown")

    # Label by route template so subscriber ids do not become metric labels
    endpoint = request.url.path
    if endpoint.startswith("/v1/entitlements/"):
        endpoint = "/v1/entitlements/{subscriber_id}"
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)
        try:
            response = await call_next(request)
            duration = time.perf_counter() - start_time

            # Record metrics
            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=endpoint,
                status_code=response.status_code,
                duration_seconds=duration,
            )

            return response
        except Exception as e:
            duration = time.perf_counter() - start_time
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


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )

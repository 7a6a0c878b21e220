"""
Main FastAPI application.

Donation payment API with:
- ECPay checkout, retry and callback endpoints
- Request and trade-number log context
- Prometheus metrics
"""
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from ngo_payments import __version__
from ngo_payments.config import get_settings
from ngo_payments.database.connection import close_db, init_db
from ngo_payments.integrations.callback_handler import ACK_REJECTED
from ngo_payments.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    monitoring_router,
    order_router,
    payment_router,
    webhook_router,
)

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Creates tables on startup and disposes the engine on shutdown.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


app = FastAPI(
    title="NGO Donation Payments",
    description=(
        "ECPay checkout and reconciliation for the donation platform. "
        "Verified callbacks settle orders, restock supplies and fill emergency needs "
        "exactly once."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Trade number or order id addressed by the request path
ORDER_PATH = re.compile(r"^(?:/admin)?/orders/(?P<trade_no>[^/]+)")
PAYMENT_PATH = re.compile(r"^/payments/(?P<order_id>\d+)/")
CALLBACK_PATH = "/webhooks/ecpay"


def request_log_context(request: Request) -> Dict[str, Any]:
    """Fields bound to every log line emitted while serving a request."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    context: Dict[str, Any] = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
    }
    match = ORDER_PATH.match(request.url.path) or PAYMENT_PATH.match(request.url.path)
    if match:
        context.update(match.groupdict())
    return context


@app.middleware("http")
async def bind_request_context(request: Request, call_next: Any) -> Response:
    context = request_log_context(request)
    start_time = time.time()
    structlog.contextvars.bind_contextvars(**context)

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = context["request_id"]
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    """
    Last-resort handler.

    ECPay only reads the plain-text acknowledgement, so the callback URL
    answers "0|ERROR" (and ECPay retries) instead of a JSON error body.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    if request.url.path == CALLBACK_PATH:
        return PlainTextResponse(ACK_REJECTED)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


app.include_router(order_router)
app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": "ngo-payments",
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ngo_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )

# relay_locator/main.py
"""FastAPI application serving closest-relay lookups."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from relay_locator.errors import DataUnavailable, InvalidCoordinate, RelayServiceError
from relay_locator.middleware import ProbeRateLimitMiddleware
from relay_locator.routers import relays
from relay_locator.services.catalog_service import close_http_client, create_http_client
from relay_locator.settings import settings

# Configure structured logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format=(
        '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'
        if settings.log_format == "json"
        else "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ),
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the shared HTTP client for the store and close it on shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    await create_http_client()
    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    await close_http_client()
    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Finds the nearest reachable VPN relay by distance and TCP latency",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    default_response_class=JSONResponse,
)


# --- Middleware Stack (order matters: last added = first executed) ---

app.add_middleware(GZipMiddleware, minimum_size=500)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["GET", "HEAD", "OPTIONS"],
    allow_headers=["Content-Type", "Accept"],
    max_age=86400,  # Cache preflight for 24 hours
)

if settings.rate_limit_enabled:
    app.add_middleware(ProbeRateLimitMiddleware)
    logger.info(f"Probe rate limiting: {settings.rate_limit_requests} req/{settings.rate_limit_period}s")


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    if settings.enable_security_headers:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if not settings.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    if "server" in response.headers:
        del response.headers["server"]

    return response


# --- Exception Handlers ---
@app.exception_handler(InvalidCoordinate)
async def invalid_coordinate_handler(request: Request, exc: InvalidCoordinate):
    """Reject coordinates that are out of range or not finite."""
    logger.warning(f"Invalid coordinate: {request.url.path} - {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Bad Request", "message": "Invalid latitude or longitude."},
    )


@app.exception_handler(DataUnavailable)
async def data_unavailable_handler(request: Request, exc: DataUnavailable):
    """Handle an unreachable location store."""
    logger.error(f"Location store unavailable: {request.url.path} - {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Service Unavailable", "message": "Server data temporarily unavailable."},
    )


@app.exception_handler(RelayServiceError)
async def relay_service_error_handler(request: Request, exc: RelayServiceError):
    """Handle any other relay service failure without leaking details."""
    logger.error(f"Relay service error: {request.url.path} - {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal Server Error", "message": "An error occurred."},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with sanitized output."""
    logger.warning(f"Validation error: {request.url.path}")
    errors = [
        {"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Validation Error", "details": errors},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all handler - never expose internal details."""
    logger.exception(f"Unhandled exception: {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal Server Error", "message": "An unexpected error occurred."},
    )


# --- Health Check ---
@app.get("/health", tags=["Health"], response_class=JSONResponse)
async def health_check():
    """Lightweight health check for load balancers."""
    return {"status": "healthy", "version": settings.app_version}


app.include_router(relays.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "relay_locator.main:app",
        host="127.0.0.1",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=settings.debug,
    )

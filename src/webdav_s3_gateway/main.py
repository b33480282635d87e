"""ASGI application for the WebDAV S3 Gateway.

Run with ``webdav-s3-gateway serve`` or ``uvicorn webdav_s3_gateway.main:app``.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from webdav_s3_gateway.config import settings
from webdav_s3_gateway.metrics import ERRORS_TOTAL, set_service_info
from webdav_s3_gateway.middleware.metrics import MetricsMiddleware, normalize_path
from webdav_s3_gateway.routers import backend, metrics, s3_compat
from webdav_s3_gateway.s3.errors import InternalError, S3Error
from webdav_s3_gateway.webdav.client import WebDAVClient


def setup_logging(debug: bool = False) -> None:
    """Configure structlog: JSON lines in production, coloured console output in debug."""
    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if debug else logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


setup_logging(settings.debug)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the pooled WebDAV client for the lifetime of the app."""
    logger.info(
        "gateway_starting",
        version=settings.api_version,
        webdav_url=settings.webdav_url,
        region=settings.s3_region,
        debug=settings.debug,
    )

    missing = settings.missing_required()
    if missing:
        # Still serve /health and /metrics; S3 requests fail until fixed
        logger.error("configuration_incomplete", missing=missing)

    set_service_info(version=settings.api_version, region=settings.s3_region)

    app.state.webdav = WebDAVClient(
        settings.webdav_url,
        settings.webdav_username,
        settings.webdav_password,
        timeout=settings.webdav_timeout,
    )
    try:
        yield
    finally:
        await app.state.webdav.close()
        logger.info("gateway_stopped")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description="""
S3-compatible object storage API in front of a WebDAV server.

S3 clients (aws-cli, boto3, rclone) talk path-style S3 to this gateway:
- Requests are authenticated with AWS Signature V4 (header or pre-signed URL)
- Buckets map to top-level WebDAV collections, keys to paths below them
- Listings are translated from WebDAV PROPFIND responses

`GET /health` and `GET /metrics` are served by the gateway itself.
    """,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
)

# Browser-based S3 clients need the ETag and request ID headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_methods=["GET", "PUT", "POST", "DELETE", "HEAD", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["ETag", "x-amz-request-id"],
    max_age=86400,
)
app.add_middleware(MetricsMiddleware)


def new_request_id() -> str:
    """S3-style request ID: 32 upper-case hex characters."""
    return uuid.uuid4().hex.upper()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Tag the request with an S3 request ID and log its outcome."""
    request_id = new_request_id()
    request.state.request_id = request_id

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    started = time.perf_counter()
    logger.debug("request_started", method=request.method, path=request.url.path)

    response = await call_next(request)
    response.headers["x-amz-request-id"] = request_id

    logger.info(
        "request_completed",
        method=request.method,
        endpoint=normalize_path(request.url.path),
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


@app.exception_handler(S3Error)
async def s3_error_handler(request: Request, exc: S3Error):
    """Render S3 errors as ``<Error>`` XML."""
    if exc.status_code >= 500:
        ERRORS_TOTAL.labels(type=exc.code, endpoint=normalize_path(request.url.path)).inc()

    logger.info(
        "s3_error",
        code=exc.code,
        status_code=exc.status_code,
        message=exc.message,
        resource=exc.resource,
    )
    return exc.to_response(getattr(request.state, "request_id", ""))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Report anything else as S3 InternalError; details only in debug mode."""
    ERRORS_TOTAL.labels(type=type(exc).__name__, endpoint=normalize_path(request.url.path)).inc()
    logger.error(
        "unhandled_exception",
        method=request.method,
        path=request.url.path,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    error = InternalError(str(exc) if settings.debug else None)
    return error.to_response(getattr(request.state, "request_id", ""))


# The S3 catch-all must come last so /health and /metrics win
app.include_router(backend.router)
app.include_router(metrics.router)
app.include_router(s3_compat.router)

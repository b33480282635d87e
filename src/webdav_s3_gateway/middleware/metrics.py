"""HTTP request instrumentation.

S3 paths carry bucket names and object keys, so they are collapsed to
``/{bucket}`` and ``/{bucket}/{key}`` before being used as labels.
"""

import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from webdav_s3_gateway.metrics import (
    HTTP_REQUEST_DURATION,
    HTTP_REQUESTS_IN_FLIGHT,
    HTTP_REQUESTS_TOTAL,
)

# Served by the gateway itself, labelled verbatim
SERVICE_PATHS = frozenset({"/health", "/metrics", "/docs", "/redoc", "/openapi.json"})


def normalize_path(path: str) -> str:
    """Map a request path to a low-cardinality endpoint label.

    >>> normalize_path("/my-bucket/photos/2024/a.jpg")
    '/{bucket}/{key}'
    """
    if path in SERVICE_PATHS:
        return path

    bucket, _, key = path.lstrip("/").partition("/")
    if not bucket:
        return "/"
    return "/{bucket}/{key}" if key else "/{bucket}"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count, time and track in-flight HTTP requests. Scrapes are not counted."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = normalize_path(request.url.path)
        status_code = "500"
        started = time.perf_counter()

        with HTTP_REQUESTS_IN_FLIGHT.labels(method=method).track_inprogress():
            try:
                response = await call_next(request)
                status_code = str(response.status_code)
            finally:
                HTTP_REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(time.perf_counter() - started)
                HTTP_REQUESTS_TOTAL.labels(method=method, endpoint=endpoint, status_code=status_code).inc()

        return response

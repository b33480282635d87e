"""Prometheus metrics for the gateway.

Every metric lives under the ``webdav_s3_gateway`` namespace, grouped by
subsystem:

- ``http_*``: requests as seen by the ASGI app (see ``middleware.metrics``)
- ``s3_*``: S3 operations, payload bytes, auth failures, presign requests
- ``webdav_*``: calls made to the WebDAV backend

Label values never contain bucket names or keys.
"""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

NAMESPACE = "webdav_s3_gateway"

UP = Gauge("up", "Whether the gateway process is serving (1)", namespace=NAMESPACE)
START_TIME = Gauge("start_time_seconds", "Unix time the gateway process started", namespace=NAMESPACE)

UP.set(1)
START_TIME.set(time.time())

SERVICE_INFO = Info("service", "Gateway version and configured S3 region", namespace=NAMESPACE)

# HTTP

HTTP_REQUESTS_TOTAL = Counter(
    "requests_total",
    "HTTP requests by method, normalized endpoint and status code",
    ["method", "endpoint", "status_code"],
    namespace=NAMESPACE,
    subsystem="http",
)

HTTP_REQUEST_DURATION = Histogram(
    "request_duration_seconds",
    "HTTP request latency, including streamed bodies",
    ["method", "endpoint"],
    namespace=NAMESPACE,
    subsystem="http",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "requests_in_flight",
    "HTTP requests currently being served",
    ["method"],
    namespace=NAMESPACE,
    subsystem="http",
)

ERRORS_TOTAL = Counter(
    "errors_total",
    "Server-side failures by S3 error code or exception type",
    ["type", "endpoint"],
    namespace=NAMESPACE,
    subsystem="http",
)

# S3

S3_OPERATIONS_TOTAL = Counter(
    "operations_total",
    "Dispatched S3 operations by outcome",
    ["operation", "status"],  # status: success | error
    namespace=NAMESPACE,
    subsystem="s3",
)

S3_OPERATION_DURATION = Histogram(
    "operation_duration_seconds",
    "Time spent in an S3 operation handler",
    ["operation"],
    namespace=NAMESPACE,
    subsystem="s3",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
)

S3_BYTES_IN_TOTAL = Counter(
    "bytes_in_total",
    "Object bytes uploaded by S3 clients",
    namespace=NAMESPACE,
    subsystem="s3",
)

S3_BYTES_OUT_TOTAL = Counter(
    "bytes_out_total",
    "Object bytes announced to S3 clients by Content-Length on GetObject",
    namespace=NAMESPACE,
    subsystem="s3",
)

S3_AUTH_FAILURES_TOTAL = Counter(
    "auth_failures_total",
    "Rejected SigV4 verifications by reason",
    ["reason"],
    namespace=NAMESPACE,
    subsystem="s3",
)

S3_PRESIGN_REQUESTS_TOTAL = Counter(
    "presign_requests_total",
    "Pre-signed GET URLs issued through ?presign",
    namespace=NAMESPACE,
    subsystem="s3",
)

# WebDAV backend

WEBDAV_REQUESTS_TOTAL = Counter(
    "requests_total",
    "Requests sent to the WebDAV backend",
    ["method", "status_code"],  # status_code is "error" on transport failure
    namespace=NAMESPACE,
    subsystem="webdav",
)

WEBDAV_REQUEST_DURATION = Histogram(
    "request_duration_seconds",
    "WebDAV backend latency up to response headers",
    ["method"],
    namespace=NAMESPACE,
    subsystem="webdav",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0, 30.0),
)


def set_service_info(version: str, region: str) -> None:
    SERVICE_INFO.info({"version": version, "region": region})

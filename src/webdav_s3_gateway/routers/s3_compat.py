"""S3-compatible API endpoint.

A single catch-all route receives every path-style S3 request
(``/{bucket}`` or ``/{bucket}/{key}``), verifies its AWS Signature V4 and
dispatches it to the matching operation handler.

Supported operations:
- GET /{bucket}                      ListObjects / ListObjectsV2
- HEAD /{bucket}                     HeadBucket
- POST /{bucket}?delete              DeleteObjects
- GET /{bucket}/{key}                GetObject
- GET /{bucket}/{key}?presign        CreatePresignedGetUrl
- PUT /{bucket}/{key}                PutObject (CopyObject with x-amz-copy-source)
- DELETE /{bucket}/{key}             DeleteObject
- HEAD /{bucket}/{key}               HeadObject

Authentication accepts the ``Authorization`` header or pre-signed URL query
parameters, verified against the single credential in settings. This router
must be included last: ``/health`` and ``/metrics`` take precedence over
buckets of the same name.
"""

from typing import Mapping

import structlog
from fastapi import APIRouter, Depends, Request, Response

from webdav_s3_gateway import metrics
from webdav_s3_gateway.config import settings
from webdav_s3_gateway.dependencies import get_webdav_client
from webdav_s3_gateway.models.s3 import RequestContext, S3Operation
from webdav_s3_gateway.s3.errors import (
    AccessDenied,
    InternalError,
    InvalidAccessKeyId,
    RequestTimeTooSkewed,
    S3Error,
    SignatureDoesNotMatch,
)
from webdav_s3_gateway.s3.operations import handle_operation
from webdav_s3_gateway.s3.sigv4 import RejectReason, SignableRequest, VerificationResult, verify
from webdav_s3_gateway.webdav.client import WebDAVClient

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["s3"])

S3_METHODS = ["GET", "PUT", "POST", "DELETE", "HEAD", "PATCH", "OPTIONS"]


def split_path(path: str) -> tuple[str, str]:
    """Split a decoded request path into bucket and key."""
    bucket, _, key = path.lstrip("/").partition("/")
    return bucket, key


def classify(method: str, bucket: str, key: str, query: Mapping[str, str], headers: Mapping[str, str]) -> S3Operation:
    """Map an HTTP request onto the S3 operation it asks for."""
    method = method.upper()
    if not bucket:
        return S3Operation.UNKNOWN

    if key:
        if method == "GET":
            return S3Operation.CREATE_PRESIGNED_GET_URL if "presign" in query else S3Operation.GET_OBJECT
        if method == "PUT":
            return S3Operation.COPY_OBJECT if headers.get("x-amz-copy-source") else S3Operation.PUT_OBJECT
        if method == "DELETE":
            return S3Operation.DELETE_OBJECT
        if method == "HEAD":
            return S3Operation.HEAD_OBJECT
        return S3Operation.UNKNOWN

    if method == "GET":
        return S3Operation.LIST_BUCKET
    if method == "HEAD":
        return S3Operation.HEAD_BUCKET
    if method == "POST" and "delete" in query:
        return S3Operation.DELETE_OBJECTS
    return S3Operation.UNKNOWN


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


def _rejection_error(result: VerificationResult, resource: str) -> S3Error:
    """Translate a failed verification into the S3 error the client sees."""
    if result.reason == RejectReason.UNKNOWN_ACCESS_KEY:
        return InvalidAccessKeyId(resource=resource)

    if result.reason == RejectReason.SIGNATURE_MISMATCH:
        extra = None
        if settings.s3_debug_signature_errors and result.diagnostics:
            extra = {
                "CanonicalRequest": result.diagnostics["canonical_request"],
                "StringToSign": result.diagnostics["string_to_sign"],
            }
        return SignatureDoesNotMatch(resource=resource, extra=extra)

    if result.reason == RejectReason.REQUEST_TIME_SKEWED:
        return RequestTimeTooSkewed(resource=resource)

    if result.reason == RejectReason.EXPIRED:
        return AccessDenied("Request has expired", resource=resource)

    if result.reason == RejectReason.MISSING_AUTH:
        return AccessDenied("Missing authentication", resource=resource)

    if result.reason == RejectReason.MALFORMED_AUTH:
        return AccessDenied(resource=resource)

    # Bad scope, date or missing signed header: the message names the problem
    return AccessDenied(f"Access Denied: {result.message}", resource=resource)


def authenticate(request: Request, resource: str) -> None:
    """Verify the request's SigV4 signature.

    Raises:
        S3Error: If verification fails
    """
    signable = SignableRequest(
        method=request.method,
        path=request.scope["path"],
        query=request.scope.get("query_string", b"").decode("latin-1"),
        headers=request.headers,
    )
    result = verify(
        signable,
        settings.credential,
        max_age_seconds=settings.s3_sig_v4_max_age_seconds,
    )
    if result.accepted:
        return

    metrics.S3_AUTH_FAILURES_TOTAL.labels(reason=result.reason.value).inc()
    logger.warning(
        "s3_auth_failed",
        reason=result.reason.value,
        message=result.message,
        access_key_id=result.components.access_key_id if result.components else None,
    )
    if result.diagnostics:
        logger.debug("s3_signature_mismatch", **result.diagnostics)

    raise _rejection_error(result, resource)


@router.api_route(
    "/{path:path}",
    methods=S3_METHODS,
    summary="S3-compatible API",
    description="Path-style S3 API backed by WebDAV. Authenticated with AWS Signature V4.",
    include_in_schema=False,
)
async def s3_request(
    path: str,
    request: Request,
    client: WebDAVClient = Depends(get_webdav_client),
) -> Response:
    """Authenticate, classify and dispatch one S3 request."""
    bucket, key = split_path(request.scope["path"])
    resource = f"/{bucket}/{key}" if key else f"/{bucket}"

    missing = settings.missing_required()
    if missing:
        logger.error("s3_configuration_error", missing=missing)
        raise InternalError("Server configuration error", resource=resource)

    authenticate(request, resource)

    query = request.query_params
    ctx = RequestContext(
        bucket=bucket,
        key=key,
        operation=classify(request.method, bucket, key, query, request.headers),
        method=request.method,
        headers=request.headers,
        url=str(request.url),
        query=query,
        body=request.stream() if _has_body(request) else None,
        request_id=getattr(request.state, "request_id", ""),
    )

    logger.info("s3_request", operation=ctx.operation.value, bucket=bucket, key=key)

    return await handle_operation(ctx, client)

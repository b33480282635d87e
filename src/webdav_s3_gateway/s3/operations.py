"""S3 operation handlers backed by WebDAV.

Each handler takes a ``RequestContext`` and a ``WebDAVClient`` and maps one
S3 operation onto WebDAV calls:

| Operation             | WebDAV calls                         |
|-----------------------|--------------------------------------|
| GetObject             | GET (streamed)                       |
| PutObject             | HEAD/MKCOL per ancestor, then PUT    |
| CopyObject            | HEAD/MKCOL per ancestor, then COPY   |
| DeleteObject          | DELETE                               |
| DeleteObjects         | DELETE per key                       |
| HeadObject            | HEAD                                 |
| ListBucket            | PROPFIND depth 1                     |
| HeadBucket            | PROPFIND depth 0                     |
| CreatePresignedGetUrl | none                                 |

Handlers raise ``S3Error`` subclasses for every failure. Upstream calls are
never retried.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable
from urllib.parse import unquote
from xml.etree import ElementTree as ET

import structlog
from fastapi import Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from webdav_s3_gateway import metrics
from webdav_s3_gateway.config import settings
from webdav_s3_gateway.models.s3 import RequestContext, S3Operation
from webdav_s3_gateway.s3.errors import (
    InternalError,
    InvalidArgument,
    MalformedXML,
    MethodNotAllowed,
    MissingRequestBody,
    NoSuchBucket,
    NoSuchKey,
    S3Error,
)
from webdav_s3_gateway.s3.listing import DEFAULT_MAX_KEYS, translate
from webdav_s3_gateway.s3.presign import create_presigned_url
from webdav_s3_gateway.s3.xml import (
    build_copy_object_result_xml,
    build_delete_result_xml,
    build_list_bucket_result_xml,
)
from webdav_s3_gateway.webdav.client import WebDAVClient, WebDAVError

logger = structlog.get_logger(__name__)

# Metadata headers forwarded from WebDAV GET/HEAD responses
FORWARDED_HEADERS = ("Content-Length", "Last-Modified", "ETag")

MAX_DELETE_OBJECTS = 1000

Handler = Callable[[RequestContext, WebDAVClient], Awaitable[Response]]


def check_segments(bucket: str, key: str = "") -> None:
    """Reject names that would leave the bucket once the path is resolved.

    The bucket must be a single segment. Key segments may not be empty,
    ``.`` or ``..``; a single trailing ``/`` (a directory prefix) is allowed.

    Raises:
        InvalidArgument: If the bucket or key is not confined to the bucket
    """
    if not bucket or "/" in bucket or bucket in (".", ".."):
        raise InvalidArgument(f"Invalid bucket name: {bucket}", resource=f"/{bucket}")
    if not key:
        return
    segments = key[:-1].split("/") if key.endswith("/") else key.split("/")
    if any(segment in ("", ".", "..") for segment in segments):
        raise InvalidArgument(f"Invalid key: {key}", resource=f"/{bucket}/{key}")


def webdav_path(bucket: str, key: str = "") -> str:
    """Map an S3 bucket and key onto a WebDAV path."""
    check_segments(bucket, key)
    if not key:
        return f"{bucket}/"
    return f"{bucket}/{key}"


def _object_headers(upstream) -> dict[str, str]:
    headers = {"Content-Type": upstream.headers.get("Content-Type") or "application/octet-stream"}
    for name in FORWARDED_HEADERS:
        value = upstream.headers.get(name)
        if value:
            headers[name] = value
    return headers


def _new_etag() -> str:
    return uuid.uuid4().hex


async def _read_body(body: AsyncIterator[bytes]) -> bytes:
    chunks = []
    async for chunk in body:
        chunks.append(chunk)
    return b"".join(chunks)


async def _count_bytes_in(body: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    async for chunk in body:
        metrics.S3_BYTES_IN_TOTAL.inc(len(chunk))
        yield chunk


# ============================================================================
# Object operations
# ============================================================================


async def get_object(ctx: RequestContext, client: WebDAVClient) -> Response:
    """S3 GetObject - Stream a file from WebDAV."""
    logger.info("s3_get_object", bucket=ctx.bucket, key=ctx.key)

    upstream = await client.get(webdav_path(ctx.bucket, ctx.key))

    if not upstream.is_success:
        await upstream.aclose()
        if upstream.status_code == 404:
            raise NoSuchKey(resource=ctx.resource)
        raise InternalError(f"WebDAV error: {upstream.status_code}", resource=ctx.resource)

    headers = _object_headers(upstream)
    if "Content-Length" in headers and headers["Content-Length"].isdigit():
        metrics.S3_BYTES_OUT_TOTAL.inc(int(headers["Content-Length"]))

    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=200,
        headers=headers,
        background=BackgroundTask(upstream.aclose),
    )


async def head_object(ctx: RequestContext, client: WebDAVClient) -> Response:
    """S3 HeadObject - Get file metadata without content."""
    logger.info("s3_head_object", bucket=ctx.bucket, key=ctx.key)

    upstream = await client.head(webdav_path(ctx.bucket, ctx.key))

    if not upstream.is_success:
        if upstream.status_code == 404:
            raise NoSuchKey(resource=ctx.resource)
        raise InternalError(f"WebDAV HEAD failed: {upstream.status_code}", resource=ctx.resource)

    return Response(status_code=200, headers=_object_headers(upstream))


async def put_object(ctx: RequestContext, client: WebDAVClient) -> Response:
    """S3 PutObject - Upload a file, creating missing parent directories first."""
    if ctx.body is None:
        raise MissingRequestBody(resource=ctx.resource)

    start_time = time.time()
    path = webdav_path(ctx.bucket, ctx.key)

    logger.info("s3_put_object_start", bucket=ctx.bucket, key=ctx.key)

    try:
        # Bucket directory included
        await client.ensure_parent_dirs(path)
    except WebDAVError as e:
        raise InternalError(f"Failed to create parent directories: {e.status_code}", resource=ctx.resource) from e

    upstream = await client.put(
        path,
        _count_bytes_in(ctx.body),
        content_type=ctx.headers.get("content-type"),
        content_length=ctx.headers.get("content-length"),
    )

    if not upstream.is_success:
        raise InternalError(f"WebDAV PUT failed: {upstream.status_code}", resource=ctx.resource)

    logger.info(
        "s3_put_object_complete",
        bucket=ctx.bucket,
        key=ctx.key,
        duration_ms=int((time.time() - start_time) * 1000),
    )

    return Response(status_code=200, headers={"ETag": f'"{_new_etag()}"'})


def _parse_copy_source(value: str) -> tuple[str, str]:
    """Split ``x-amz-copy-source`` (``[/]bucket/key[?versionId=...]``) into bucket and key."""
    source = unquote(value.split("?", 1)[0]).lstrip("/")
    bucket, _, key = source.partition("/")
    if not bucket or not key:
        raise InvalidArgument(f"Invalid copy source: {value}")
    return bucket, key


async def copy_object(ctx: RequestContext, client: WebDAVClient) -> Response:
    """S3 CopyObject - Server-side copy via WebDAV COPY."""
    source_bucket, source_key = _parse_copy_source(ctx.headers.get("x-amz-copy-source", ""))
    destination = webdav_path(ctx.bucket, ctx.key)
    source = webdav_path(source_bucket, source_key)

    logger.info(
        "s3_copy_object",
        bucket=ctx.bucket,
        key=ctx.key,
        source_bucket=source_bucket,
        source_key=source_key,
    )

    try:
        await client.ensure_parent_dirs(destination)
    except WebDAVError as e:
        raise InternalError(f"Failed to create parent directories: {e.status_code}", resource=ctx.resource) from e

    upstream = await client.copy(source, destination)

    if not upstream.is_success:
        if upstream.status_code == 404:
            raise NoSuchKey(resource=f"/{source_bucket}/{source_key}")
        raise InternalError(f"WebDAV COPY failed: {upstream.status_code}", resource=ctx.resource)

    return Response(
        content=build_copy_object_result_xml(_new_etag(), datetime.now(timezone.utc)),
        status_code=200,
        media_type="application/xml",
    )


async def delete_object(ctx: RequestContext, client: WebDAVClient) -> Response:
    """S3 DeleteObject - Delete a file.

    Note: S3 returns 204 even if the key doesn't exist.
    """
    logger.info("s3_delete_object", bucket=ctx.bucket, key=ctx.key)

    upstream = await client.delete(webdav_path(ctx.bucket, ctx.key))

    if not upstream.is_success and upstream.status_code != 404:
        raise InternalError(f"WebDAV DELETE failed: {upstream.status_code}", resource=ctx.resource)

    return Response(status_code=204)


def _parse_delete_request(body: bytes) -> tuple[list[str], bool]:
    """Parse an S3 ``<Delete>`` document into keys and the Quiet flag."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise MalformedXML() from e

    def local(element: ET.Element) -> str:
        return element.tag.rsplit("}", 1)[-1]

    if local(root) != "Delete":
        raise MalformedXML()

    keys = []
    quiet = False
    for child in root:
        if local(child) == "Quiet":
            quiet = (child.text or "").strip().lower() == "true"
        elif local(child) == "Object":
            key = next((item.text for item in child if local(item) == "Key"), None)
            if not key:
                raise MalformedXML()
            keys.append(key)

    if not keys or len(keys) > MAX_DELETE_OBJECTS:
        raise MalformedXML()
    return keys, quiet


async def delete_objects(ctx: RequestContext, client: WebDAVClient) -> Response:
    """S3 DeleteObjects - Delete up to 1000 keys, one DELETE at a time."""
    if ctx.body is None:
        raise MissingRequestBody(resource=ctx.resource)

    keys, quiet = _parse_delete_request(await _read_body(ctx.body))

    logger.info("s3_delete_objects", bucket=ctx.bucket, count=len(keys), quiet=quiet)

    deleted: list[str] = []
    errors: list[tuple[str, str, str]] = []
    for key in keys:
        try:
            path = webdav_path(ctx.bucket, key)
        except InvalidArgument as e:
            errors.append((key, e.code, e.message))
            continue
        try:
            upstream = await client.delete(path)
        except WebDAVError as e:
            errors.append((key, InternalError.code, str(e)))
            continue
        if upstream.is_success or upstream.status_code == 404:
            deleted.append(key)
        else:
            errors.append((key, InternalError.code, f"WebDAV DELETE failed: {upstream.status_code}"))

    return Response(
        content=build_delete_result_xml([] if quiet else deleted, errors),
        status_code=200,
        media_type="application/xml",
    )


# ============================================================================
# Bucket operations
# ============================================================================


def _parse_max_keys(value: str | None) -> int:
    if value is None or value == "":
        return DEFAULT_MAX_KEYS
    if not value.isdigit():
        raise InvalidArgument("max-keys must be a non-negative integer")
    return int(value)


async def list_bucket(ctx: RequestContext, client: WebDAVClient) -> Response:
    """S3 ListObjects (v1) and ListObjectsV2.

    Lists the directory holding ``prefix`` and filters its children, so
    prefixes that are not directory boundaries work as well.
    """
    query = ctx.query
    prefix = query.get("prefix", "")
    delimiter = query.get("delimiter", "")
    max_keys = _parse_max_keys(query.get("max-keys"))
    list_type = 2 if query.get("list-type") == "2" else 1

    if list_type == 2:
        start_after = query.get("continuation-token") or query.get("start-after")
    else:
        start_after = query.get("marker")

    directory = prefix[: prefix.rfind("/") + 1]

    logger.info(
        "s3_list_objects",
        bucket=ctx.bucket,
        prefix=prefix,
        delimiter=delimiter,
        max_keys=max_keys,
        list_type=list_type,
    )

    try:
        resources = await client.propfind(webdav_path(ctx.bucket, directory), depth="1")
    except WebDAVError as e:
        logger.error("s3_list_objects_failed", bucket=ctx.bucket, error=str(e))
        raise InternalError("Failed to list directory", resource=ctx.resource) from e

    result = translate(
        resources,
        ctx.bucket,
        prefix,
        delimiter,
        max_keys,
        base_path=client.base_path,
        start_after=start_after,
        list_type=list_type,
    )

    return Response(content=build_list_bucket_result_xml(result), media_type="application/xml")


async def head_bucket(ctx: RequestContext, client: WebDAVClient) -> Response:
    """S3 HeadBucket - The bucket exists if its directory answers PROPFIND."""
    try:
        resources = await client.propfind(webdav_path(ctx.bucket), depth="0")
    except WebDAVError as e:
        logger.warning("s3_head_bucket_failed", bucket=ctx.bucket, error=str(e))
        resources = []

    if not resources:
        raise NoSuchBucket(resource=ctx.resource)

    return Response(status_code=200, headers={"x-amz-bucket-region": settings.s3_region})


async def create_presigned_get_url(ctx: RequestContext, client: WebDAVClient) -> Response:
    """Return a pre-signed GET URL for the object as plain text."""
    expires_str = ctx.query.get("expires") or ctx.query.get("Expires")
    if expires_str is None:
        expires_in = settings.presign_default_expiry
    elif expires_str.isdigit():
        expires_in = int(expires_str)
    else:
        raise InvalidArgument("expires must be a positive integer")

    if not 0 < expires_in <= settings.presign_max_expiry:
        raise InvalidArgument(f"expires must be between 1 and {settings.presign_max_expiry} seconds")
    check_segments(ctx.bucket, ctx.key)

    try:
        url = create_presigned_url(
            settings.credential,
            settings.base_url,
            ctx.bucket,
            ctx.key,
            expires_in=expires_in,
        )
    except ValueError as e:
        raise InternalError(f"Failed to create presigned URL: {e}") from e

    metrics.S3_PRESIGN_REQUESTS_TOTAL.inc()
    logger.info("s3_presign_url_created", bucket=ctx.bucket, key=ctx.key, expires_in=expires_in)

    return PlainTextResponse(url)


# ============================================================================
# Dispatch
# ============================================================================

HANDLERS: dict[S3Operation, Handler] = {
    S3Operation.GET_OBJECT: get_object,
    S3Operation.GET_OBJECT_STREAM: get_object,
    S3Operation.PUT_OBJECT: put_object,
    S3Operation.COPY_OBJECT: copy_object,
    S3Operation.DELETE_OBJECT: delete_object,
    S3Operation.DELETE_OBJECTS: delete_objects,
    S3Operation.HEAD_OBJECT: head_object,
    S3Operation.LIST_BUCKET: list_bucket,
    S3Operation.HEAD_BUCKET: head_bucket,
    S3Operation.CREATE_PRESIGNED_GET_URL: create_presigned_get_url,
}


async def handle_operation(ctx: RequestContext, client: WebDAVClient) -> Response:
    """Run the handler for ``ctx.operation`` and record operation metrics.

    Raises:
        S3Error: On any failure; transport errors become InternalError
    """
    handler = HANDLERS.get(ctx.operation)
    if handler is None:
        raise MethodNotAllowed(resource=ctx.resource)

    operation = ctx.operation.value
    start_time = time.time()
    try:
        response = await handler(ctx, client)
    except S3Error:
        metrics.S3_OPERATIONS_TOTAL.labels(operation=operation, status="error").inc()
        raise
    except WebDAVError as e:
        metrics.S3_OPERATIONS_TOTAL.labels(operation=operation, status="error").inc()
        logger.error("s3_backend_error", operation=operation, status_code=e.status_code, error=str(e))
        status = e.status_code if e.status_code is not None else "unavailable"
        raise InternalError(f"WebDAV backend error: {status}", resource=ctx.resource) from e
    finally:
        metrics.S3_OPERATION_DURATION.labels(operation=operation).observe(time.time() - start_time)

    metrics.S3_OPERATIONS_TOTAL.labels(operation=operation, status="success").inc()
    return response

"""Data model shared by the SigV4 engine, the WebDAV parser and the S3 layer."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Mapping


class S3Operation(str, Enum):
    """S3 operations the gateway understands."""

    GET_OBJECT = "GetObject"
    GET_OBJECT_STREAM = "GetObjectStream"
    PUT_OBJECT = "PutObject"
    COPY_OBJECT = "CopyObject"
    DELETE_OBJECT = "DeleteObject"
    DELETE_OBJECTS = "DeleteObjects"
    HEAD_OBJECT = "HeadObject"
    LIST_BUCKET = "ListBucket"
    HEAD_BUCKET = "HeadBucket"
    CREATE_PRESIGNED_GET_URL = "CreatePresignedGetUrl"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Credential:
    """Locally held S3 credential used to sign and verify requests."""

    access_key_id: str
    secret_key: str
    region: str
    service: str = "s3"


@dataclass(frozen=True)
class SignatureComponents:
    """Parsed AWS Signature V4 components."""

    algorithm: str
    access_key_id: str
    date_stamp: str  # YYYYMMDD
    region: str
    service: str
    signed_headers: list[str]
    signature: str

    @property
    def credential_scope(self) -> str:
        return f"{self.date_stamp}/{self.region}/{self.service}/aws4_request"


@dataclass(frozen=True)
class CanonicalRequest:
    """AWS Sig V4 canonical request.

    ``str()`` gives the exact text that is hashed into the string to sign:

        {HTTP_METHOD}\\n
        {CANONICAL_URI}\\n
        {CANONICAL_QUERY_STRING}\\n
        {CANONICAL_HEADERS}\\n
        {SIGNED_HEADERS}\\n
        {HASHED_PAYLOAD}

    The canonical headers block carries its own trailing newline.
    """

    method: str
    canonical_uri: str
    canonical_query_string: str
    canonical_headers: str
    signed_headers: str
    payload_hash: str

    def __str__(self) -> str:
        return "\n".join(
            [
                self.method,
                self.canonical_uri,
                self.canonical_query_string,
                self.canonical_headers,
                self.signed_headers,
                self.payload_hash,
            ]
        )


@dataclass(frozen=True)
class WebDAVResource:
    """One <response> entry of a PROPFIND multistatus body."""

    href: str
    is_collection: bool
    content_length: int
    last_modified: datetime
    etag: str
    content_type: str
    display_name: str


@dataclass(frozen=True)
class S3Object:
    key: str
    last_modified: datetime
    etag: str
    size: int
    storage_class: str = "STANDARD"


@dataclass(frozen=True)
class CommonPrefix:
    prefix: str


@dataclass
class ListBucketResult:
    """Result of translating a WebDAV listing into the S3 listing model."""

    name: str
    prefix: str
    delimiter: str
    max_keys: int
    is_truncated: bool
    contents: list[S3Object] = field(default_factory=list)
    common_prefixes: list[CommonPrefix] = field(default_factory=list)
    marker: str = ""
    next_marker: str | None = None
    list_type: int = 1


@dataclass(frozen=True)
class RequestContext:
    """Everything the operation handlers need to know about one S3 request."""

    bucket: str
    key: str
    operation: S3Operation
    method: str
    headers: Mapping[str, str]
    url: str
    query: Mapping[str, str]
    body: AsyncIterator[bytes] | None = None
    request_id: str = ""

    @property
    def resource(self) -> str:
        """S3 resource path used in error responses."""
        if self.key:
            return f"/{self.bucket}/{self.key}"
        return f"/{self.bucket}"

"""Pytest configuration and fixtures."""

from datetime import datetime, timezone

import pytest
import respx
from botocore.auth import S3SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials
from fastapi.testclient import TestClient

from webdav_s3_gateway.config import settings
from webdav_s3_gateway.models.s3 import Credential, WebDAVResource

WEBDAV_URL = "http://dav.test/remote.php/dav/files/gateway/"
WEBDAV_BASE_PATH = "/remote.php/dav/files/gateway/"

TEST_ACCESS_KEY = "AKIDEXAMPLE"
TEST_SECRET_KEY = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"
TEST_REGION = "us-east-1"


def sign_headers(
    method: str,
    path: str,
    body: bytes = b"",
    headers: dict[str, str] | None = None,
    secret_key: str = TEST_SECRET_KEY,
    region: str = TEST_REGION,
) -> dict[str, str]:
    """Sign a request to the test server with botocore and return its headers.

    ``path`` may carry a query string; it must already be URI-encoded the
    way S3 clients encode it.
    """
    request = AWSRequest(
        method=method,
        url=f"http://testserver{path}",
        data=body,
        headers=headers or {},
    )
    S3SigV4Auth(Credentials(TEST_ACCESS_KEY, secret_key), "s3", region).add_auth(request)
    return dict(request.headers.items())


def make_resource(
    href: str,
    is_collection: bool = False,
    size: int = 0,
    etag: str = "etag",
    last_modified: datetime | None = None,
) -> WebDAVResource:
    """Build a WebDAVResource as the multistatus parser would."""
    return WebDAVResource(
        href=href,
        is_collection=is_collection,
        content_length=size,
        last_modified=last_modified or datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        etag=etag,
        content_type="application/octet-stream",
        display_name=href.rstrip("/").rsplit("/", 1)[-1],
    )


def multistatus(*entries: tuple[str, bool, int]) -> str:
    """Build a multistatus body from (href, is_collection, size) entries."""
    responses = []
    for href, is_collection, size in entries:
        resourcetype = "<d:collection/>" if is_collection else ""
        responses.append(
            "<d:response>"
            f"<d:href>{href}</d:href>"
            "<d:propstat><d:prop>"
            f"<d:resourcetype>{resourcetype}</d:resourcetype>"
            f"<d:getcontentlength>{size}</d:getcontentlength>"
            "<d:getlastmodified>Mon, 15 Jan 2024 10:30:00 GMT</d:getlastmodified>"
            f'<d:getetag>"etag-{size}"</d:getetag>'
            "</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat>"
            "</d:response>"
        )
    return '<?xml version="1.0"?><d:multistatus xmlns:d="DAV:">' + "".join(responses) + "</d:multistatus>"


@pytest.fixture
def credential() -> Credential:
    return Credential(access_key_id=TEST_ACCESS_KEY, secret_key=TEST_SECRET_KEY, region=TEST_REGION)


@pytest.fixture
def gateway_settings(monkeypatch):
    """Configure settings for a gateway in front of the mocked WebDAV server."""
    monkeypatch.setattr(settings, "webdav_url", WEBDAV_URL)
    monkeypatch.setattr(settings, "webdav_username", "gateway")
    monkeypatch.setattr(settings, "webdav_password", "dav-secret")
    monkeypatch.setattr(settings, "s3_access_key_id", TEST_ACCESS_KEY)
    monkeypatch.setattr(settings, "s3_secret_access_key", TEST_SECRET_KEY)
    monkeypatch.setattr(settings, "s3_region", TEST_REGION)
    monkeypatch.setattr(settings, "s3_debug_signature_errors", False)
    monkeypatch.setattr(settings, "base_url", "http://testserver")
    return settings


@pytest.fixture
def webdav_mock():
    """Mock the WebDAV backend; unmatched requests fail the test."""
    with respx.mock(assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def client(gateway_settings, webdav_mock):
    """Create a test client for the FastAPI app."""
    from webdav_s3_gateway.main import app

    with TestClient(app) as test_client:
        yield test_client

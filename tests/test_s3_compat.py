"""Tests for the S3-compatible API served through the FastAPI app."""

from urllib.parse import urlsplit
from xml.etree import ElementTree as ET

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import TEST_ACCESS_KEY, WEBDAV_URL, multistatus, sign_headers

from webdav_s3_gateway.config import settings
from webdav_s3_gateway.models.s3 import S3Operation
from webdav_s3_gateway.routers.s3_compat import classify, split_path
from webdav_s3_gateway.s3.presign import create_presigned_url
from webdav_s3_gateway.s3.xml import S3_NAMESPACE

NS = {"s3": S3_NAMESPACE}
DAV_PREFIX = "/remote.php/dav/files/gateway"


def error_code(response) -> str:
    return ET.fromstring(response.content).find("Code").text


class TestClassify:
    """Tests for mapping HTTP requests onto S3 operations."""

    @pytest.mark.parametrize(
        "method,bucket,key,query,headers,expected",
        [
            ("GET", "b", "k", {}, {}, S3Operation.GET_OBJECT),
            ("GET", "b", "k", {"presign": ""}, {}, S3Operation.CREATE_PRESIGNED_GET_URL),
            ("PUT", "b", "k", {}, {}, S3Operation.PUT_OBJECT),
            ("PUT", "b", "k", {}, {"x-amz-copy-source": "/b/src"}, S3Operation.COPY_OBJECT),
            ("DELETE", "b", "k", {}, {}, S3Operation.DELETE_OBJECT),
            ("HEAD", "b", "k", {}, {}, S3Operation.HEAD_OBJECT),
            ("POST", "b", "k", {}, {}, S3Operation.UNKNOWN),
            ("GET", "b", "", {}, {}, S3Operation.LIST_BUCKET),
            ("HEAD", "b", "", {}, {}, S3Operation.HEAD_BUCKET),
            ("POST", "b", "", {"delete": ""}, {}, S3Operation.DELETE_OBJECTS),
            ("POST", "b", "", {}, {}, S3Operation.UNKNOWN),
            ("PUT", "b", "", {}, {}, S3Operation.UNKNOWN),
            ("DELETE", "b", "", {}, {}, S3Operation.UNKNOWN),
            ("GET", "", "", {}, {}, S3Operation.UNKNOWN),
            ("get", "b", "k", {}, {}, S3Operation.GET_OBJECT),
        ],
    )
    def test_routing_table(self, method, bucket, key, query, headers, expected):
        assert classify(method, bucket, key, query, headers) == expected

    def test_split_path(self):
        assert split_path("/bucket/photos/2024/a.jpg") == ("bucket", "photos/2024/a.jpg")
        assert split_path("/bucket") == ("bucket", "")
        assert split_path("/bucket/") == ("bucket", "")
        assert split_path("/") == ("", "")


class TestObjects:
    """Tests for object operations end to end."""

    def test_get_object_streams_content(self, client: TestClient, webdav_mock):
        """Test that GetObject streams the body and forwards metadata headers."""
        webdav_mock.route(method="GET", url=WEBDAV_URL + "bucket/docs/a.txt").mock(
            return_value=httpx.Response(
                200,
                content=b"hello world",
                headers={
                    "Content-Type": "text/plain",
                    "ETag": '"e1"',
                    "Last-Modified": "Mon, 15 Jan 2024 10:30:00 GMT",
                },
            )
        )

        response = client.get("/bucket/docs/a.txt", headers=sign_headers("GET", "/bucket/docs/a.txt"))

        assert response.status_code == 200
        assert response.content == b"hello world"
        assert response.headers["content-type"] == "text/plain"
        assert response.headers["etag"] == '"e1"'
        assert response.headers["last-modified"] == "Mon, 15 Jan 2024 10:30:00 GMT"

    def test_get_missing_object(self, client: TestClient, webdav_mock):
        """Test that a WebDAV 404 becomes NoSuchKey."""
        webdav_mock.route(method="GET", url=WEBDAV_URL + "bucket/nope").mock(return_value=httpx.Response(404))

        response = client.get("/bucket/nope", headers=sign_headers("GET", "/bucket/nope"))

        assert response.status_code == 404
        root = ET.fromstring(response.content)
        assert root.find("Code").text == "NoSuchKey"
        assert root.find("Resource").text == "/bucket/nope"
        assert root.find("RequestId").text == response.headers["x-amz-request-id"]

    def test_key_with_space(self, client: TestClient, webdav_mock):
        """Test that encoded keys are signed and forwarded correctly."""
        route = webdav_mock.route(method="HEAD", url=WEBDAV_URL + "bucket/my%20file.txt").mock(
            return_value=httpx.Response(200, headers={"Content-Length": "3"})
        )

        response = client.head("/bucket/my%20file.txt", headers=sign_headers("HEAD", "/bucket/my%20file.txt"))

        assert response.status_code == 200
        assert route.called
        assert response.headers["content-length"] == "3"
        assert response.headers["content-type"] == "application/octet-stream"

    def test_put_object_creates_parents(self, client: TestClient, webdav_mock):
        """Test that PutObject creates missing directories before uploading."""
        webdav_mock.route(method="HEAD", url=WEBDAV_URL + "bucket/").mock(return_value=httpx.Response(200))
        webdav_mock.route(method="HEAD", url=WEBDAV_URL + "bucket/dir/").mock(return_value=httpx.Response(404))
        webdav_mock.route(method="MKCOL", url=WEBDAV_URL + "bucket/dir/").mock(return_value=httpx.Response(201))
        webdav_mock.route(method="PUT", url=WEBDAV_URL + "bucket/dir/f.txt").mock(return_value=httpx.Response(201))

        headers = sign_headers("PUT", "/bucket/dir/f.txt", body=b"hello", headers={"Content-Type": "text/plain"})
        response = client.put("/bucket/dir/f.txt", content=b"hello", headers=headers)

        assert response.status_code == 200
        assert response.headers["etag"].startswith('"')
        calls = [(call.request.method, call.request.url.path) for call in webdav_mock.calls]
        assert calls == [
            ("HEAD", f"{DAV_PREFIX}/bucket/"),
            ("HEAD", f"{DAV_PREFIX}/bucket/dir/"),
            ("MKCOL", f"{DAV_PREFIX}/bucket/dir/"),
            ("PUT", f"{DAV_PREFIX}/bucket/dir/f.txt"),
        ]
        assert webdav_mock.calls.last.request.headers["Content-Type"] == "text/plain"

    def test_copy_object(self, client: TestClient, webdav_mock):
        """Test that x-amz-copy-source turns a PUT into a WebDAV COPY."""
        webdav_mock.route(method="HEAD", url=WEBDAV_URL + "bucket/").mock(return_value=httpx.Response(200))
        copy = webdav_mock.route(method="COPY", url=WEBDAV_URL + "bucket/src.txt").mock(
            return_value=httpx.Response(201)
        )

        headers = sign_headers("PUT", "/bucket/dst.txt", headers={"x-amz-copy-source": "/bucket/src.txt"})
        response = client.put("/bucket/dst.txt", headers=headers)

        assert response.status_code == 200
        assert copy.calls.last.request.headers["Destination"] == WEBDAV_URL + "bucket/dst.txt"
        assert ET.fromstring(response.content).tag == f"{{{S3_NAMESPACE}}}CopyObjectResult"

    def test_delete_object(self, client: TestClient, webdav_mock):
        """Test that DeleteObject returns 204 even when the key is missing."""
        webdav_mock.route(method="DELETE", url=WEBDAV_URL + "bucket/gone").mock(return_value=httpx.Response(404))

        response = client.delete("/bucket/gone", headers=sign_headers("DELETE", "/bucket/gone"))

        assert response.status_code == 204

    def test_delete_objects(self, client: TestClient, webdav_mock):
        """Test batch delete through POST ?delete."""
        webdav_mock.route(method="DELETE", url=WEBDAV_URL + "bucket/a").mock(return_value=httpx.Response(204))
        webdav_mock.route(method="DELETE", url=WEBDAV_URL + "bucket/b").mock(return_value=httpx.Response(204))
        body = b"<Delete><Object><Key>a</Key></Object><Object><Key>b</Key></Object></Delete>"

        response = client.post("/bucket?delete=", content=body, headers=sign_headers("POST", "/bucket?delete=", body))

        assert response.status_code == 200
        root = ET.fromstring(response.content)
        assert [k.text for k in root.findall("s3:Deleted/s3:Key", NS)] == ["a", "b"]


class TestBuckets:
    """Tests for bucket operations end to end."""

    def test_list_objects_v2(self, client: TestClient, webdav_mock):
        """Test ListObjectsV2 with a prefix and delimiter."""
        webdav_mock.route(method="PROPFIND", url=WEBDAV_URL + "bucket/photos/").mock(
            return_value=httpx.Response(
                207,
                text=multistatus(
                    (f"{DAV_PREFIX}/bucket/photos/", True, 0),
                    (f"{DAV_PREFIX}/bucket/photos/2024/", True, 0),
                    (f"{DAV_PREFIX}/bucket/photos/b.jpg", False, 20),
                    (f"{DAV_PREFIX}/bucket/photos/a.jpg", False, 10),
                ),
            )
        )

        path = "/bucket?list-type=2&prefix=photos%2F&delimiter=%2F"
        response = client.get(path, headers=sign_headers("GET", path))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        root = ET.fromstring(response.content)
        assert root.find("s3:Name", NS).text == "bucket"
        assert root.find("s3:Prefix", NS).text == "photos/"
        assert root.find("s3:KeyCount", NS).text == "3"
        assert [k.text for k in root.findall("s3:Contents/s3:Key", NS)] == ["photos/a.jpg", "photos/b.jpg"]
        assert [k.text for k in root.findall("s3:Contents/s3:Size", NS)] == ["10", "20"]
        assert [k.text for k in root.findall("s3:Contents/s3:ETag", NS)] == ['"etag-10"', '"etag-20"']
        assert [p.text for p in root.findall("s3:CommonPrefixes/s3:Prefix", NS)] == ["photos/2024/"]

    def test_head_bucket(self, client: TestClient, webdav_mock):
        """Test that HeadBucket reports the configured region."""
        webdav_mock.route(method="PROPFIND", url=WEBDAV_URL + "bucket/").mock(
            return_value=httpx.Response(207, text=multistatus((f"{DAV_PREFIX}/bucket/", True, 0)))
        )

        response = client.head("/bucket", headers=sign_headers("HEAD", "/bucket"))

        assert response.status_code == 200
        assert response.headers["x-amz-bucket-region"] == "us-east-1"

    def test_head_missing_bucket(self, client: TestClient, webdav_mock):
        webdav_mock.route(method="PROPFIND", url=WEBDAV_URL + "nope/").mock(return_value=httpx.Response(404))

        response = client.head("/nope", headers=sign_headers("HEAD", "/nope"))

        assert response.status_code == 404

    @pytest.mark.parametrize("method,path", [("GET", "/"), ("PUT", "/bucket"), ("DELETE", "/bucket")])
    def test_unsupported_requests(self, client: TestClient, webdav_mock, method, path):
        """Test that requests without a matching operation get 405."""
        response = client.request(method, path, headers=sign_headers(method, path))

        assert response.status_code == 405
        assert error_code(response) == "MethodNotAllowed"
        assert not webdav_mock.calls


class TestAuthentication:
    """Tests for SigV4 authentication of S3 requests."""

    def test_missing_authorization(self, client: TestClient, webdav_mock):
        response = client.get("/bucket/a.txt")

        assert response.status_code == 403
        assert error_code(response) == "AccessDenied"
        assert not webdav_mock.calls

    def test_unknown_access_key(self, client: TestClient):
        headers = sign_headers("GET", "/bucket/a.txt")
        headers["Authorization"] = headers["Authorization"].replace(f"Credential={TEST_ACCESS_KEY}/", "Credential=AKIDOTHER/")

        response = client.get("/bucket/a.txt", headers=headers)

        assert response.status_code == 403
        assert error_code(response) == "InvalidAccessKeyId"

    def test_wrong_secret(self, client: TestClient):
        """Test that diagnostics stay out of the response by default."""
        response = client.get("/bucket/a.txt", headers=sign_headers("GET", "/bucket/a.txt", secret_key="wrong"))

        assert response.status_code == 403
        root = ET.fromstring(response.content)
        assert root.find("Code").text == "SignatureDoesNotMatch"
        assert root.find("CanonicalRequest") is None
        assert root.find("StringToSign") is None

    def test_wrong_secret_with_debug_diagnostics(self, client: TestClient, monkeypatch):
        monkeypatch.setattr(settings, "s3_debug_signature_errors", True)

        response = client.get("/bucket/a.txt", headers=sign_headers("GET", "/bucket/a.txt", secret_key="wrong"))

        root = ET.fromstring(response.content)
        assert root.find("Code").text == "SignatureDoesNotMatch"
        assert root.find("CanonicalRequest").text.startswith("GET\n/bucket/a.txt\n")
        assert root.find("StringToSign").text.startswith("AWS4-HMAC-SHA256\n")

    def test_tampered_path(self, client: TestClient):
        response = client.get("/bucket/b.txt", headers=sign_headers("GET", "/bucket/a.txt"))

        assert response.status_code == 403
        assert error_code(response) == "SignatureDoesNotMatch"

    def test_wrong_region(self, client: TestClient):
        response = client.get("/bucket/a.txt", headers=sign_headers("GET", "/bucket/a.txt", region="eu-west-1"))

        assert response.status_code == 403
        assert error_code(response) == "AccessDenied"

    def test_incomplete_configuration(self, client: TestClient, monkeypatch):
        """Test that requests fail with InternalError while settings are missing."""
        monkeypatch.setattr(settings, "webdav_password", "")

        response = client.get("/bucket/a.txt", headers=sign_headers("GET", "/bucket/a.txt"))

        assert response.status_code == 500
        root = ET.fromstring(response.content)
        assert root.find("Code").text == "InternalError"
        assert root.find("Message").text == "Server configuration error"

    def test_request_id_is_unique(self, client: TestClient):
        first = client.get("/bucket/a.txt")
        second = client.get("/bucket/a.txt")

        assert first.headers["x-amz-request-id"] != second.headers["x-amz-request-id"]


class TestPresignedUrls:
    """Tests for ?presign and pre-signed GET requests."""

    def test_presign_then_download(self, client: TestClient, webdav_mock):
        """Test that a URL minted by the gateway downloads the object without headers."""
        webdav_mock.route(method="GET", url=WEBDAV_URL + "bucket/photos/a.jpg").mock(
            return_value=httpx.Response(200, content=b"jpeg")
        )

        path = "/bucket/photos/a.jpg?expires=60&presign="
        response = client.get(path, headers=sign_headers("GET", path))

        assert response.status_code == 200
        url = response.text
        assert url.startswith("http://testserver/bucket/photos/a.jpg?")
        assert "X-Amz-Expires=60" in url

        parts = urlsplit(url)
        download = client.get(f"{parts.path}?{parts.query}")

        assert download.status_code == 200
        assert download.content == b"jpeg"

    def test_presign_invalid_expiry(self, client: TestClient):
        path = "/bucket/a.jpg?expires=0&presign="
        response = client.get(path, headers=sign_headers("GET", path))

        assert response.status_code == 400
        assert error_code(response) == "InvalidArgument"

    def test_encoded_dot_segments_stay_in_bucket(self, client: TestClient, webdav_mock, credential):
        """%2E%2E decodes to '..' after routing and is refused before any WebDAV call."""
        url = create_presigned_url(credential, "http://testserver", "bucket", "a/../../../etc/secret", 60)
        parts = urlsplit(url.replace("/..", "/%2E%2E"))

        response = client.get(f"{parts.path}?{parts.query}")

        assert response.status_code == 400
        assert error_code(response) == "InvalidArgument"
        assert not webdav_mock.calls

    def test_presigned_url_for_other_key_rejected(self, client: TestClient):
        path = "/bucket/a.jpg?presign="
        url = client.get(path, headers=sign_headers("GET", path)).text
        query = urlsplit(url).query

        response = client.get(f"/bucket/b.jpg?{query}")

        assert response.status_code == 403
        assert error_code(response) == "SignatureDoesNotMatch"

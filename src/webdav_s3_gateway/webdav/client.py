"""Async WebDAV client used as the gateway's storage backend.

One ``WebDAVClient`` wraps a pooled ``httpx.AsyncClient`` with Basic
authentication against the WebDAV base URL. Paths passed to its methods
are relative to that base URL and unencoded; every segment is
percent-encoded before the request is sent.

No call is retried: a transport failure surfaces immediately as
``WebDAVError``.
"""

import time
from urllib.parse import quote, urlsplit

import httpx
import structlog

from webdav_s3_gateway.metrics import WEBDAV_REQUEST_DURATION, WEBDAV_REQUESTS_TOTAL
from webdav_s3_gateway.models.s3 import WebDAVResource
from webdav_s3_gateway.webdav.parser import build_propfind_body, parse_multistatus

logger = structlog.get_logger(__name__)


class WebDAVError(Exception):
    """WebDAV transport failure or unexpected upstream status."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class WebDAVClient:
    """HTTP client for a WebDAV server."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(username, password),
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_path(self) -> str:
        """Path component of the base URL, e.g. ``/remote.php/dav/files/me/``."""
        return urlsplit(self.base_url).path or "/"

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "WebDAVClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    @staticmethod
    def build_url(path: str) -> str:
        """Encode a store path into a URL relative to the base URL."""
        if any(segment in (".", "..") for segment in path.split("/")):
            raise WebDAVError(f"Path escapes the base URL: {path}")
        return quote(path.lstrip("/"), safe="/")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        content=None,
        stream: bool = False,
    ) -> httpx.Response:
        request = self._client.build_request(method, self.build_url(path), headers=headers, content=content)
        start_time = time.perf_counter()
        try:
            response = await self._client.send(request, stream=stream)
        except httpx.HTTPError as e:
            WEBDAV_REQUESTS_TOTAL.labels(method=method, status_code="error").inc()
            logger.error("webdav_request_failed", method=method, path=path, error=str(e))
            raise WebDAVError(f"WebDAV {method} failed: {e}") from e
        finally:
            WEBDAV_REQUEST_DURATION.labels(method=method).observe(time.perf_counter() - start_time)

        WEBDAV_REQUESTS_TOTAL.labels(method=method, status_code=str(response.status_code)).inc()
        logger.debug("webdav_request", method=method, path=path, status_code=response.status_code)
        return response

    async def get(self, path: str) -> httpx.Response:
        """GET - Download a file.

        The response is opened in streaming mode; the caller must close it.
        """
        return await self._request("GET", path, headers={"Accept-Encoding": "identity"}, stream=True)

    async def head(self, path: str) -> httpx.Response:
        """HEAD - Get file metadata"""
        return await self._request("HEAD", path)

    async def put(
        self,
        path: str,
        body,
        content_type: str | None = None,
        content_length: str | None = None,
    ) -> httpx.Response:
        """PUT - Upload a file from bytes or an async byte iterator.

        Without ``content_length`` a streamed body is sent chunked.
        """
        headers = {"Content-Type": content_type or "application/octet-stream"}
        if content_length is not None:
            headers["Content-Length"] = content_length
        return await self._request("PUT", path, headers=headers, content=body)

    async def delete(self, path: str) -> httpx.Response:
        """DELETE - Delete a file or directory"""
        return await self._request("DELETE", path)

    async def mkcol(self, path: str) -> httpx.Response:
        """MKCOL - Create a directory"""
        return await self._request("MKCOL", path)

    async def copy(self, source: str, destination: str) -> httpx.Response:
        """COPY - Server-side copy, overwriting the destination"""
        headers = {
            "Destination": self.base_url + self.build_url(destination),
            "Overwrite": "T",
        }
        return await self._request("COPY", source, headers=headers)

    async def propfind(self, path: str, depth: str = "1") -> list[WebDAVResource]:
        """PROPFIND - List directory contents or get properties.

        Returns an empty list when the path does not exist.

        Raises:
            WebDAVError: On transport failure or any other non-2xx status
        """
        response = await self._request(
            "PROPFIND",
            path,
            headers={"Content-Type": "application/xml; charset=utf-8", "Depth": depth},
            content=build_propfind_body(),
        )

        if response.status_code == 404:
            return []
        if not response.is_success:
            raise WebDAVError(f"PROPFIND failed: {response.status_code}", response.status_code)

        return parse_multistatus(response.content)

    async def exists(self, path: str) -> bool:
        """Check if a path exists"""
        response = await self.head(path)
        return response.is_success

    async def ensure_parent_dirs(self, path: str) -> None:
        """Create every missing ancestor directory of ``path``, parents first.

        Each level is probed with HEAD and created with MKCOL when absent.
        The walk is sequential: a directory can only be created once its
        parent exists. A 405 from MKCOL means the directory already exists.

        Raises:
            WebDAVError: If MKCOL fails with any other status
        """
        parts = [part for part in path.split("/") if part]
        current = ""

        # Skip the last part (filename)
        for part in parts[:-1]:
            current += part + "/"

            if await self.exists(current):
                continue

            response = await self.mkcol(current)
            if response.is_success or response.status_code == 405:
                continue

            logger.warning("webdav_mkcol_failed", path=current, status_code=response.status_code)
            raise WebDAVError(
                f"Failed to create directory {current}: {response.status_code}", response.status_code
            )

"""FastAPI dependencies.

The pooled WebDAV client is created once in the application lifespan and
kept on ``app.state``; routers receive it through ``get_webdav_client``:

    @router.get("/health")
    async def health_check(client: WebDAVClient = Depends(get_webdav_client)):
        ...
"""

from fastapi import Request

from webdav_s3_gateway.webdav.client import WebDAVClient


def get_webdav_client(request: Request) -> WebDAVClient:
    """Return the application's shared WebDAV client."""
    return request.app.state.webdav

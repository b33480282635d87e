"""Gateway health endpoint."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from webdav_s3_gateway.config import settings
from webdav_s3_gateway.dependencies import get_webdav_client
from webdav_s3_gateway.models.responses import HealthChecks, HealthResponse, UnhealthyResponse
from webdav_s3_gateway.webdav.client import WebDAVClient, WebDAVError

logger = structlog.get_logger()
router = APIRouter(tags=["backend"])


async def webdav_reachable(client: WebDAVClient) -> bool:
    """The root collection must answer PROPFIND with at least itself."""
    try:
        return bool(await client.propfind("", depth="0"))
    except WebDAVError as e:
        logger.warning("health_webdav_unreachable", status_code=e.status_code, error=str(e))
        return False


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": UnhealthyResponse}},
    summary="Health check",
)
async def health_check(client: WebDAVClient = Depends(get_webdav_client)) -> HealthResponse:
    """Check configuration, then the WebDAV backend.

    The backend is not contacted while required settings are missing.
    """
    missing = settings.missing_required()
    checks = HealthChecks(configuration=not missing, webdav=False)
    if checks.configuration:
        checks.webdav = await webdav_reachable(client)

    healthy = checks.configuration and checks.webdav
    logger.info("health_check", healthy=healthy, **checks.model_dump())

    if not healthy:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "backend_unavailable",
                "message": "Gateway is not configured or the WebDAV backend is unreachable",
                "details": {**checks.model_dump(), "missing_settings": missing},
            },
        )

    return HealthResponse(version=settings.api_version, webdav_available=True, details=checks)

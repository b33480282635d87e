"""Prometheus scrape endpoint."""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from webdav_s3_gateway.config import settings
from webdav_s3_gateway.metrics import set_service_info

router = APIRouter(tags=["metrics"])


@router.get("/metrics", summary="Prometheus metrics", response_class=Response)
async def get_metrics() -> Response:
    """Prometheus text exposition. Not authenticated, so scrapers need no S3 credential."""
    set_service_info(version=settings.api_version, region=settings.s3_region)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

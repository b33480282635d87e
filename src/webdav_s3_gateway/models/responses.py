"""JSON bodies of the gateway's own endpoints. S3 responses are XML."""

from typing import Literal

from pydantic import BaseModel, Field


class HealthChecks(BaseModel):
    configuration: bool = Field(description="All required settings are present")
    webdav: bool = Field(description="The WebDAV root answered a depth-0 PROPFIND")


class HealthResponse(BaseModel):
    """Body of a healthy ``GET /health``."""

    status: Literal["healthy"] = "healthy"
    version: str
    webdav_available: bool
    details: HealthChecks


class HealthFailure(BaseModel):
    error: str = Field(description="Machine-readable failure type")
    message: str
    details: dict = Field(description="Individual checks plus missing_settings")


class UnhealthyResponse(BaseModel):
    """Body of a 503 from ``GET /health`` (FastAPI wraps it in ``detail``)."""

    detail: HealthFailure

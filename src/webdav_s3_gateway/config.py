"""Application configuration using pydantic-settings."""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from webdav_s3_gateway import __version__
from webdav_s3_gateway.models.s3 import Credential


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via:
    1. Environment variables (e.g., WEBDAV_URL=https://dav.example.com/)
    2. .env file in the project root

    The WebDAV connection and the S3 credential pair are required; the
    gateway starts without them but answers every S3 request with
    InternalError until they are provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # API settings
    api_title: str = "WebDAV S3 Gateway"
    api_version: str = __version__
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Public URL of this gateway, used as the host of pre-signed URLs
    base_url: str = "http://localhost:8000"

    # WebDAV backing store
    webdav_url: str = ""
    webdav_username: str = ""
    webdav_password: str = ""
    webdav_timeout: float = 30.0  # Seconds, per upstream call

    # AWS Signature V4 settings (for boto3/aws-cli/rclone compatibility)
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_region: str = "us-east-1"
    s3_sig_v4_max_age_seconds: int = 900  # Max age of signed request (15 minutes), 0 disables
    s3_debug_signature_errors: bool = False  # Echo canonical request in SignatureDoesNotMatch

    # Pre-signed URL settings
    presign_default_expiry: int = 86400  # 24 hours
    presign_max_expiry: int = 604800  # 7 days

    # CORS
    cors_allow_origins: list[str] = ["*"]

    @field_validator("webdav_url")
    @classmethod
    def ensure_trailing_slash(cls, value: str) -> str:
        """WebDAV base URL always ends with a slash so relative paths join under it."""
        if value and not value.endswith("/"):
            return value + "/"
        return value

    def missing_required(self) -> list[str]:
        """Return the environment names of required settings that are empty."""
        required = {
            "WEBDAV_URL": self.webdav_url,
            "WEBDAV_USERNAME": self.webdav_username,
            "WEBDAV_PASSWORD": self.webdav_password,
            "S3_ACCESS_KEY_ID": self.s3_access_key_id,
            "S3_SECRET_ACCESS_KEY": self.s3_secret_access_key,
            "S3_REGION": self.s3_region,
        }
        return [name for name, value in required.items() if not value]

    @property
    def credential(self) -> Credential:
        """The single S3 credential this gateway accepts."""
        return Credential(
            access_key_id=self.s3_access_key_id,
            secret_key=self.s3_secret_access_key,
            region=self.s3_region,
        )


# Global settings instance
settings = Settings()

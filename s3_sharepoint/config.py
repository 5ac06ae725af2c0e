"""Application configuration using Pydantic settings."""

import json
import re
from functools import lru_cache
from secrets import token_urlsafe
from typing import Annotated, Literal

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class BucketTarget(BaseModel):
    """SharePoint location a bucket name resolves to."""

    model_config = {"frozen": True}

    site_id: str
    drive_id: str | None = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Application
    secret_key: str = ""  # Will be validated and set default in model_validator
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # Logging
    log_level: str = "INFO"

    # SharePoint app registration (client credentials flow)
    sharepoint_tenant_id: str = ""
    sharepoint_client_id: str = ""
    sharepoint_client_secret: str = ""

    # Bucket name -> SharePoint site (JSON object or "bucket=site_id;...")
    bucket_sites: Annotated[dict[str, BucketTarget], NoDecode] = {}

    # Inbound HTTP Basic credentials
    basic_auth_username: str = ""
    basic_auth_password: str = ""

    # Listing
    max_keys_default: int = 1000
    max_keys_ceiling: int = 1000
    filename_pattern: str = ".*"
    search_max_results: int = 5000

    # Microsoft Graph
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    graph_page_size: int = 200
    upstream_timeout_seconds: float = 30.0
    upstream_retry_count: int = 3
    download_chunk_size: int = 1024 * 1024  # 1MB

    # Token cache
    auth_retry_attempts: int = 3
    token_refresh_margin_seconds: int = 300

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """Normalize log level to uppercase."""
        return v.upper() if isinstance(v, str) else "INFO"

    @field_validator("bucket_sites", mode="before")
    @classmethod
    def parse_bucket_sites(cls, v: str | dict) -> dict:
        """Parse bucket mapping from JSON, "bucket=site" pairs, or a dict.

        Values may be a bare site id or an object with site_id/drive_id.
        """
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return {}
            try:
                v = json.loads(v)
            except json.JSONDecodeError:
                pairs = {}
                for entry in v.split(";"):
                    if not entry.strip():
                        continue
                    bucket, sep, site = entry.partition("=")
                    if not sep:
                        raise ValueError(
                            f"BUCKET_SITES entry {entry!r} must be bucket=site_id"
                        )
                    pairs[bucket.strip()] = site.strip()
                v = pairs
        if not isinstance(v, dict):
            raise ValueError("BUCKET_SITES must be a mapping of bucket to site")
        return {
            bucket: {"site_id": target} if isinstance(target, str) else target
            for bucket, target in v.items()
        }

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Validate security-critical settings based on environment."""
        import warnings

        # Generate secure secret_key if not provided
        if not self.secret_key:
            object.__setattr__(self, "secret_key", token_urlsafe(32))
            if self.environment != "development":
                warnings.warn(
                    "SECRET_KEY not set - using auto-generated key. "
                    "Continuation tokens will not survive a restart.",
                    stacklevel=2,
                )

        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters")

        if self.max_keys_ceiling < 1:
            raise ValueError("MAX_KEYS_CEILING must be positive")
        if not 0 <= self.max_keys_default <= self.max_keys_ceiling:
            raise ValueError("MAX_KEYS_DEFAULT must be between 0 and MAX_KEYS_CEILING")

        try:
            re.compile(self.filename_pattern)
        except re.error as e:
            raise ValueError(f"FILENAME_PATTERN is not a valid regex: {e}") from e

        # Production environment requires explicit configuration
        if self.environment == "production":
            errors = []

            for name in (
                "sharepoint_tenant_id",
                "sharepoint_client_id",
                "sharepoint_client_secret",
            ):
                value = getattr(self, name)
                if not value or value.startswith("your-"):
                    errors.append(f"{name.upper()} is required in production")

            if not self.bucket_sites:
                errors.append("BUCKET_SITES is required in production")

            if not self.is_basic_auth_enabled:
                errors.append(
                    "BASIC_AUTH_USERNAME and BASIC_AUTH_PASSWORD are required in production"
                )

            if errors:
                raise ValueError(
                    "Production configuration errors:\n"
                    + "\n".join(f"  - {e}" for e in errors)
                )

        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_sharepoint_configured(self) -> bool:
        """Check if SharePoint app credentials are present."""
        return bool(
            self.sharepoint_tenant_id
            and self.sharepoint_client_id
            and self.sharepoint_client_secret
        )

    @property
    def is_basic_auth_enabled(self) -> bool:
        """Check if inbound Basic authentication is configured."""
        return bool(self.basic_auth_username and self.basic_auth_password)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

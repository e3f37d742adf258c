"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables with sensible defaults.
Using Pydantic's BaseSettings means we get:
- Type validation at startup (fail fast if config is wrong)
- Documentation of what's required vs optional
- Easy testing with different configurations

Mock mode enables local development without a real bucket.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.keys import ProxyConfig
from ..infrastructure.storage.client import StorageConfig


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables
    (e.g. BUCKET_NAME, STRIP_PATH_PREFIX, STORAGE_MOCK_MODE).
    """

    # API Configuration
    api_title: str = "Storage Proxy"
    api_version: str = "v1"

    # Listener
    listen_address: str = Field(
        default="127.0.0.1",
        description="Address to listen on"
    )
    port: int = Field(
        default=8080,
        description="Port to serve"
    )

    # Key derivation
    bucket_name: str = Field(
        default="",
        description="Bucket name. Also stripped from request paths that start with '<bucket>/'."
    )
    default_prefix: str = Field(
        default="",
        description="Optional general object prefix (e.g. version directory)."
    )
    strip_path_prefix: str = Field(
        default="",
        description="Runtime path prefix to strip from incoming requests (e.g. '/microservices/')."
    )

    # Object storage (S3-compatible API)
    storage_endpoint_url: Optional[str] = Field(
        default=None,
        description="S3-compatible endpoint. Use https://storage.googleapis.com for GCS interoperability."
    )
    storage_access_key_id: str = Field(
        default="",
        description="Access key ID (HMAC key for GCS interoperability)"
    )
    storage_secret_access_key: str = Field(
        default="",
        description="Secret access key"
    )
    storage_region: Optional[str] = Field(
        default=None,
        description="Region name passed to the S3 client ('auto' for Cloudflare R2)"
    )
    storage_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of a real bucket. Enables local dev without object storage."
    )

    # Streaming
    stream_chunk_size: int = Field(
        default=64 * 1024,
        gt=0,
        description="Copy buffer size in bytes for downloads and uploads."
    )
    upload_part_size: int = Field(
        default=8 * 1024 * 1024,
        ge=5 * 1024 * 1024,
        description="Multipart upload part size in bytes. S3 rejects parts under 5 MiB."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def proxy_config(self) -> ProxyConfig:
        """Key-derivation configuration shared by every request."""
        return ProxyConfig(
            default_prefix=self.default_prefix,
            bucket_name=self.bucket_name,
            strip_path_prefix=self.strip_path_prefix,
        )

    @property
    def storage_config(self) -> StorageConfig:
        """Connection settings for the S3-compatible backend."""
        return StorageConfig(
            access_key_id=self.storage_access_key_id,
            secret_access_key=self.storage_secret_access_key,
            bucket_name=self.bucket_name,
            endpoint_url=self.storage_endpoint_url,
            region=self.storage_region,
            part_size=self.upload_part_size,
        )

    def validate_required_fields(self) -> list[str]:
        """
        Validate that required fields are set based on mock mode settings.

        Returns list of missing required fields. The bucket name is always
        required because key derivation strips it from request paths.
        """
        missing = []

        if not self.bucket_name:
            missing.append("BUCKET_NAME")

        # Explicit keys come in pairs. With neither set, boto3 resolves
        # credentials from its own chain (env, shared config, instance role).
        if not self.storage_mock_mode:
            if self.storage_secret_access_key and not self.storage_access_key_id:
                missing.append("STORAGE_ACCESS_KEY_ID")
            if self.storage_access_key_id and not self.storage_secret_access_key:
                missing.append("STORAGE_SECRET_ACCESS_KEY")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once per process. For tests, call
    get_settings.cache_clear() to reset.
    """
    return Settings()

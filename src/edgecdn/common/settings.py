"""Application configuration for the edge CDN service."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class EdgeSettings(BaseSettings):
    """Runtime settings for the edge content service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    # Download accounting backend
    labrinth_url: Optional[str] = env_field(None, "EDGECDN_LABRINTH_URL")
    labrinth_admin_key: SecretStr = env_field(SecretStr(""), "EDGECDN_LABRINTH_ADMIN_KEY")
    rate_limit_ignore_key: SecretStr = env_field(SecretStr(""), "EDGECDN_RATE_LIMIT_IGNORE_KEY")
    client_ip_header: str = env_field("CF-Connecting-IP", "EDGECDN_CLIENT_IP_HEADER")
    accounting_timeout_seconds: float = env_field(10.0, "EDGECDN_ACCOUNTING_TIMEOUT")
    uncounted_extensions: str = env_field("md,markdown", "EDGECDN_UNCOUNTED_EXTENSIONS")
    download_count_limit: Optional[int] = env_field(None, "EDGECDN_DOWNLOAD_STORAGE_LIMIT")
    download_window_minutes: int = env_field(6 * 60, "EDGECDN_DOWNLOAD_STORAGE_TIME")

    # Object store
    storage_path: Path = env_field(Path("./objects"), "EDGECDN_STORAGE_PATH")
    s3_endpoint_url: Optional[str] = env_field(None, "EDGECDN_S3_ENDPOINT")
    s3_bucket: Optional[str] = env_field(None, "EDGECDN_S3_BUCKET")
    s3_region: Optional[str] = env_field(None, "EDGECDN_S3_REGION")
    s3_max_retries: int = env_field(3, "EDGECDN_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "EDGECDN_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "EDGECDN_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "EDGECDN_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "EDGECDN_S3_CIRCUIT_RESET")
    stream_chunk_bytes: int = env_field(64 * 1024, "EDGECDN_STREAM_CHUNK_BYTES")

    # Response cache
    redis_url: Optional[str] = env_field(None, "EDGECDN_REDIS_URL")
    cache_key_prefix: str = env_field("edgecdn:response", "EDGECDN_CACHE_PREFIX")
    cache_max_entries: int = env_field(1024, "EDGECDN_CACHE_MAX_ENTRIES")
    cache_default_ttl_seconds: int = env_field(3600, "EDGECDN_CACHE_DEFAULT_TTL")
    cache_max_object_bytes: Optional[int] = env_field(64 * 1024 * 1024, "EDGECDN_CACHE_MAX_OBJECT_BYTES")
    cache_max_bytes: Optional[int] = env_field(512 * 1024 * 1024, "EDGECDN_CACHE_MAX_BYTES")

    # Server
    bind_address: str = env_field("0.0.0.0", "EDGECDN_BIND_ADDRESS")
    port: int = env_field(8787, "EDGECDN_PORT")

    # Observability
    metrics_token: Optional[SecretStr] = env_field(None, "EDGECDN_METRICS_TOKEN")
    log_level: str = env_field("INFO", "EDGECDN_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "EDGECDN_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "EDGECDN_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "EDGECDN_OTEL_SAMPLER_RATIO")

    @field_validator("labrinth_url", mode="before")
    @classmethod
    def _blank_labrinth_url(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def uncounted_extension_set(self) -> frozenset[str]:
        return frozenset(
            item.strip().lower().lstrip(".") for item in self.uncounted_extensions.split(",") if item.strip()
        )

    @property
    def download_window_seconds(self) -> int:
        return max(1, self.download_window_minutes) * 60

"""Application configuration for the crates.io caching proxy."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def default_cache_dir() -> Path:
    """Per-user cache directory, falling back to ``./cache`` without a home."""
    base = os.environ.get("XDG_CACHE_HOME")
    if base:
        return Path(base) / "crates.io-proxy"
    try:
        return Path.home() / ".cache" / "crates.io-proxy"
    except RuntimeError:
        return Path("cache")


class CacheProxySettings(BaseSettings):
    """Configuration for the caching reverse proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    upstream: HttpUrl = env_field("https://crates.io/", "UPSTREAM")
    host: str = env_field("localhost", "HOST")
    port: int = env_field(8080, "PORT")
    verbose: bool = env_field(False, "VERBOSE")
    log_level: str = env_field("INFO", "CRATES_PROXY_LOG_LEVEL")
    cache_dir: Path = Field(default_factory=default_cache_dir, validation_alias="CACHE_DIR")
    s3_bucket: Optional[str] = env_field(None, "CRATES_PROXY_S3_BUCKET")
    s3_endpoint_url: Optional[str] = env_field(None, "CRATES_PROXY_S3_ENDPOINT")
    s3_region: Optional[str] = env_field(None, "CRATES_PROXY_S3_REGION")
    s3_max_retries: int = env_field(3, "CRATES_PROXY_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "CRATES_PROXY_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "CRATES_PROXY_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "CRATES_PROXY_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "CRATES_PROXY_S3_CIRCUIT_RESET")
    upstream_timeout_seconds: float = env_field(60.0, "CRATES_PROXY_UPSTREAM_TIMEOUT")
    metrics_token: Optional[SecretStr] = env_field(None, "CRATES_PROXY_METRICS_TOKEN")
    otel_exporter_endpoint: Optional[str] = env_field(None, "CRATES_PROXY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "CRATES_PROXY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "CRATES_PROXY_OTEL_SAMPLER_RATIO")

    @field_validator("s3_bucket", "s3_endpoint_url", "s3_region", mode="before")
    @classmethod
    def _blank_as_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cache_dir", mode="before")
    @classmethod
    def _expand_cache_dir(cls, value):
        if isinstance(value, str):
            value = Path(value)
        if isinstance(value, Path):
            return value.expanduser()
        return value

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.verbose else self.log_level

    def public_view(self) -> dict[str, object]:
        """Options safe to print in the startup log."""
        return {
            "upstream": str(self.upstream),
            "host": self.host,
            "port": self.port,
            "verbose": self.verbose,
            "cache_dir": str(self.cache_dir),
            "bucket": self.s3_bucket,
        }

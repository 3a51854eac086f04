"""Configuration models for the catalog delta sync."""

from typing import Literal

from pydantic import BaseModel, Field, HttpUrl, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Largest page the platform serves for query endpoints.
MAX_PAGE_SIZE = 500


class CommercetoolsConfig(BaseModel):
    """Configuration for the commercetools project connection."""

    project_key: str = Field(default=..., min_length=1, description="commercetools project key")
    client_id: str = Field(default=..., description="API client id")
    client_secret: str = Field(default=..., description="API client secret")
    auth_url: HttpUrl = Field(
        default="https://auth.europe-west1.gcp.commercetools.com",
        description="OAuth host",
    )
    api_url: HttpUrl = Field(
        default="https://api.europe-west1.gcp.commercetools.com",
        description="HTTP API host",
    )
    scopes: list[str] = Field(default_factory=list, description="OAuth scopes to request")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")


class SyncConfig(BaseModel):
    """Configuration for a delta sync run."""

    store_key: str = Field(default=..., min_length=1, description="Scope of the watermark")
    strategy: Literal["change_feed", "store_assignments"] = Field(
        default="change_feed",
        description="How candidates are enumerated; one strategy per deployment",
    )
    page_size: int = Field(default=100, ge=1, le=MAX_PAGE_SIZE, description="Change feed page size")
    store_page_size: int = Field(
        default=MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Store directory page size"
    )
    assignment_page_size: int = Field(
        default=MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Assignment page size"
    )
    store_keys: list[str] | None = Field(
        default=None, description="Optional allow-list of store keys to fan out to"
    )
    max_workers: int = Field(default=8, ge=1, le=64, description="Concurrent projection fetches")
    run_timeout_seconds: float | None = Field(
        default=540.0, gt=0, description="Abort the run after this many seconds"
    )
    resolution_failure_policy: Literal["hold_back", "advance"] = Field(
        default="hold_back",
        description="Whether transient resolution failures hold back the watermark",
    )
    watermark_backend: Literal["custom_object", "file", "memory"] = Field(
        default="custom_object", description="Where watermarks are persisted"
    )
    watermark_container: str = Field(
        default="search-index-delta-sync", description="Custom object container prefix"
    )
    watermark_key: str = Field(default="last-sync", description="Custom object key")
    watermark_file: str = Field(
        default="./state/watermarks.json", description="Path used by the file backend"
    )


class RetryConfig(BaseModel):
    """Retry policy for transient platform failures."""

    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryConfig":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    Loaded from YAML by ``ConfigLoader`` or from environment variables with the
    APP_ prefix (``APP_SYNC__STORE_KEY`` and so on).
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    commercetools: CommercetoolsConfig
    sync: SyncConfig
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

"""Data models for the catalog delta sync."""

from catalog_delta_sync.models.catalog import (
    EPOCH,
    CandidateRef,
    ChangedEntity,
    ChangeFeedCursor,
    Projection,
    Watermark,
    ensure_utc,
    truncate_to_millis,
)
from catalog_delta_sync.models.config import (
    AppConfig,
    CommercetoolsConfig,
    LoggingConfig,
    RetryConfig,
    SyncConfig,
)

__all__ = [
    "EPOCH",
    "CandidateRef",
    "ChangedEntity",
    "ChangeFeedCursor",
    "Projection",
    "Watermark",
    "ensure_utc",
    "truncate_to_millis",
    "AppConfig",
    "CommercetoolsConfig",
    "LoggingConfig",
    "RetryConfig",
    "SyncConfig",
]

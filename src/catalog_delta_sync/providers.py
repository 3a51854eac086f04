"""Centralized provider module for the platform client, watermark store and orchestrator.

These factory functions are the only place configuration is turned into
components. Every component receives its collaborators explicitly; there is no
process-wide client.
"""

import structlog

from catalog_delta_sync.errors import ConfigurationError
from catalog_delta_sync.ingestion.commercetools_client import CommercetoolsClient
from catalog_delta_sync.models.config import AppConfig
from catalog_delta_sync.sync.assignment_paginator import AssignmentPaginator
from catalog_delta_sync.sync.change_scanner import ChangeFeedScanner
from catalog_delta_sync.sync.delta_filter import DeltaFilter
from catalog_delta_sync.sync.fan_out import FanOutResolver
from catalog_delta_sync.sync.projection_resolver import ProjectionResolver
from catalog_delta_sync.sync.store_directory import StoreDirectory
from catalog_delta_sync.sync.sync_orchestrator import SyncOrchestrator
from catalog_delta_sync.sync.watermark_store import (
    CustomObjectWatermarkStore,
    DryRunWatermarkStore,
    FileWatermarkStore,
    InMemoryWatermarkStore,
    WatermarkStore,
)

log = structlog.stdlib.get_logger()


def get_client(config: AppConfig) -> CommercetoolsClient:
    """Build the platform client from configuration."""
    return CommercetoolsClient(config.commercetools, retry=config.retry)


def get_watermark_store(config: AppConfig, client: CommercetoolsClient) -> WatermarkStore:
    """Get the configured watermark store implementation.

    Raises:
        ConfigurationError: If the backend is unknown
    """
    backend = config.sync.watermark_backend
    log.info("initializing_watermark_store", backend=backend)

    if backend == "custom_object":
        return CustomObjectWatermarkStore(
            client,
            container_prefix=config.sync.watermark_container,
            key=config.sync.watermark_key,
        )
    if backend == "file":
        return FileWatermarkStore(config.sync.watermark_file)
    if backend == "memory":
        return InMemoryWatermarkStore()

    raise ConfigurationError(f"Unknown watermark backend: {backend}")


def get_orchestrator(
    config: AppConfig,
    client: CommercetoolsClient | None = None,
    watermark_store: WatermarkStore | None = None,
    dry_run: bool = False,
) -> SyncOrchestrator:
    """Wire a ``SyncOrchestrator`` for the configured strategy.

    With ``dry_run`` the watermark is read from the configured store but never
    written back.
    """
    client = client or get_client(config)
    watermark_store = watermark_store or get_watermark_store(config, client)
    if dry_run:
        watermark_store = DryRunWatermarkStore(watermark_store)
    sync = config.sync

    scanner = None
    assignment_paginator = None
    if sync.strategy == "change_feed":
        scanner = ChangeFeedScanner(client, page_size=sync.page_size)
    else:
        assignment_paginator = AssignmentPaginator(client, page_size=sync.assignment_page_size)

    return SyncOrchestrator(
        scope=sync.store_key,
        watermark_store=watermark_store,
        store_directory=StoreDirectory(
            client, page_size=sync.store_page_size, allowed_keys=sync.store_keys
        ),
        fan_out=FanOutResolver(
            ProjectionResolver(client), DeltaFilter(), max_workers=sync.max_workers
        ),
        scanner=scanner,
        assignment_paginator=assignment_paginator,
        strategy=sync.strategy,
        run_timeout_seconds=sync.run_timeout_seconds,
        resolution_failure_policy=sync.resolution_failure_policy,
    )

"""Synchronization components for catalog delta runs."""

from catalog_delta_sync.sync.assignment_paginator import AssignmentPaginator
from catalog_delta_sync.sync.change_scanner import ChangeFeedScanner
from catalog_delta_sync.sync.delta_filter import DeltaFilter
from catalog_delta_sync.sync.fan_out import FanOutResolver
from catalog_delta_sync.sync.models import ResolutionFailure, RunState, SyncOutcome, SyncReport
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

__all__ = [
    "AssignmentPaginator",
    "ChangeFeedScanner",
    "CustomObjectWatermarkStore",
    "DryRunWatermarkStore",
    "DeltaFilter",
    "FanOutResolver",
    "FileWatermarkStore",
    "InMemoryWatermarkStore",
    "ProjectionResolver",
    "ResolutionFailure",
    "RunState",
    "StoreDirectory",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncReport",
    "WatermarkStore",
]

#!/usr/bin/env python3
"""
Scheduled delta synchronization for the catalog search index.

This script performs one incremental run:
- Reads the last committed watermark for the configured store key
- Detects products changed since then across every store
- Commits the run start time as the new watermark
- Logs synchronization statistics

Designed to be run on a schedule (cron, Cloud Scheduler, Airflow).

Usage:
    python scripts/run_delta_sync.py [--config CONFIG_PATH] [--strategy STRATEGY] [--dry-run]
"""

import argparse
import sys
from datetime import datetime, timezone

import structlog

from catalog_delta_sync.errors import ConfigurationError
from catalog_delta_sync.job import run_sync
from catalog_delta_sync.providers import get_orchestrator
from catalog_delta_sync.utils.config_loader import ConfigLoader
from catalog_delta_sync.utils.logging_config import configure_logging

log = structlog.stdlib.get_logger()


def perform_sync(
    config_path: str | None = None,
    strategy: str | None = None,
    dry_run: bool = False,
) -> dict:
    """
    Perform one delta synchronization.

    Args:
        config_path: Optional path to configuration file
        strategy: Optional override of the configured enumeration strategy
        dry_run: If True, the watermark is not written back

    Returns:
        Dictionary with sync statistics
    """
    start_time = datetime.now(timezone.utc)

    try:
        config = ConfigLoader().load_config(config_path)
    except ConfigurationError as e:
        log.error("configuration_failed", error=str(e))
        return {"success": False, "error": str(e), "processed_count": 0}

    if strategy is not None:
        config.sync.strategy = strategy

    configure_logging(
        log_level=config.logging.log_level,
        json_logs=config.logging.json_logs,
        log_file=config.logging.log_file,
    )
    ConfigLoader().validate_config(config)

    log.info(
        "scheduled_sync_started",
        store_key=config.sync.store_key,
        strategy=config.sync.strategy,
        dry_run=dry_run,
    )

    response = run_sync(config, orchestrator=get_orchestrator(config, dry_run=dry_run))
    duration = (datetime.now(timezone.utc) - start_time).total_seconds()

    stats = {
        "success": response.success,
        "error": response.error,
        "processed_count": response.processed_count,
        "store_key": config.sync.store_key,
        "strategy": config.sync.strategy,
        "dry_run": dry_run,
        "duration_seconds": duration,
    }
    log.info("scheduled_sync_finished", **stats)
    return stats


def main():
    """Main entry point for the scheduled delta sync."""
    parser = argparse.ArgumentParser(description="Delta sync of catalog changes")
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--strategy",
        choices=["change_feed", "store_assignments"],
        help="Override the configured candidate enumeration strategy",
        default=None,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Detect changes without committing the watermark",
    )

    args = parser.parse_args()

    stats = perform_sync(config_path=args.config, strategy=args.strategy, dry_run=args.dry_run)

    print("\n" + "=" * 60)
    print("DELTA SYNC SUMMARY")
    print("=" * 60)

    if stats.get("success"):
        print("Status: SUCCESS")
        print(f"Store: {stats.get('store_key', 'unknown')}")
        print(f"Strategy: {stats.get('strategy', 'unknown')}")
        print(f"Changed projections: {stats.get('processed_count', 0)}")
        print(f"Dry run: {stats.get('dry_run', False)}")
        print(f"Duration: {stats.get('duration_seconds', 0):.2f} seconds")
    else:
        print("Status: FAILED")
        print(f"Error: {stats.get('error', 'Unknown error')}")

    print("=" * 60)

    sys.exit(0 if stats.get("success") else 1)


if __name__ == "__main__":
    main()

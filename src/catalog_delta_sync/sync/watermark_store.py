"""Watermark persistence for maintaining synchronization state."""

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Protocol

import structlog

from catalog_delta_sync.errors import CatalogSyncError, NotFoundError, WatermarkStoreError
from catalog_delta_sync.ingestion.commercetools_client import CommercetoolsClient
from catalog_delta_sync.ingestion.query_builder import format_timestamp
from catalog_delta_sync.models.catalog import Watermark, ensure_utc

log = structlog.stdlib.get_logger()


class WatermarkStore(Protocol):
    """Durable record of the last successful sync time per scope."""

    def get(self, scope: str) -> datetime | None:
        """Return the watermark for ``scope``, or None if it was never synced.

        Raises:
            WatermarkStoreError: If the store cannot be read
        """
        ...

    def set(self, scope: str, synced_at: datetime) -> None:
        """Overwrite the watermark for ``scope``.

        Raises:
            WatermarkStoreError: If the value cannot be persisted
        """
        ...


class InMemoryWatermarkStore:
    """Process-local store, used for dry runs and tests."""

    def __init__(self, initial: dict[str, datetime] | None = None):
        self._values: dict[str, datetime] = {
            scope: ensure_utc(ts) for scope, ts in (initial or {}).items()
        }
        self._lock = threading.Lock()

    def get(self, scope: str) -> datetime | None:
        with self._lock:
            return self._values.get(scope)

    def set(self, scope: str, synced_at: datetime) -> None:
        with self._lock:
            self._values[scope] = ensure_utc(synced_at)


class FileWatermarkStore:
    """Watermarks kept in a JSON file, one entry per scope.

    Writes go to a temporary file in the same directory followed by
    ``os.replace``, so a reader sees either the old or the new content.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = threading.Lock()
        log.info("file_watermark_store_initialized", path=str(self._path))

    def _read_all(self) -> dict[str, str]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            raise WatermarkStoreError(f"Failed to read watermark file {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise WatermarkStoreError(f"Watermark file {self._path} is not a JSON object")
        return data

    def get(self, scope: str) -> datetime | None:
        with self._lock:
            raw = self._read_all().get(scope)

        if raw is None:
            return None

        try:
            return Watermark(scope=scope, synced_at=raw).synced_at
        except ValueError as e:
            raise WatermarkStoreError(f"Invalid watermark for scope {scope}: {raw!r}") from e

    def set(self, scope: str, synced_at: datetime) -> None:
        with self._lock:
            data = self._read_all()
            data[scope] = format_timestamp(synced_at)

            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".watermarks-")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        json.dump(data, f, indent=2, sort_keys=True)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp_path, self._path)
                except BaseException:
                    Path(tmp_path).unlink(missing_ok=True)
                    raise
            except OSError as e:
                raise WatermarkStoreError(f"Failed to write watermark file {self._path}: {e}") from e

        log.info("watermark_saved", scope=scope, synced_at=synced_at, backend="file")


class CustomObjectWatermarkStore:
    """Watermarks kept as platform custom objects keyed by ``(container, key)``.

    The container is ``{container_prefix}-{scope}``; the value is
    ``{"syncedAt": "<ISO-8601>"}``.
    """

    def __init__(self, client: CommercetoolsClient, container_prefix: str, key: str):
        self._client = client
        self._container_prefix = container_prefix
        self._key = key
        log.info(
            "custom_object_watermark_store_initialized",
            container_prefix=container_prefix,
            key=key,
        )

    def _container(self, scope: str) -> str:
        return f"{self._container_prefix}-{scope}"

    def get(self, scope: str) -> datetime | None:
        log.info("loading_watermark", scope=scope)

        try:
            custom_object = self._client.get_custom_object(self._container(scope), self._key)
        except NotFoundError:
            log.info("no_watermark_found", scope=scope)
            return None
        except CatalogSyncError as e:
            log.error("failed_to_load_watermark", scope=scope, error=str(e))
            raise WatermarkStoreError(f"Failed to load watermark: {e}") from e

        value = custom_object.get("value") if isinstance(custom_object, dict) else None
        synced_at = value.get("syncedAt") if isinstance(value, dict) else None
        if not synced_at:
            raise WatermarkStoreError(f"Watermark for scope {scope} has no syncedAt")

        try:
            watermark = Watermark(scope=scope, synced_at=synced_at)
        except ValueError as e:
            raise WatermarkStoreError(f"Invalid watermark for scope {scope}: {synced_at!r}") from e

        log.info("watermark_loaded", scope=scope, synced_at=watermark.synced_at)
        return watermark.synced_at

    def set(self, scope: str, synced_at: datetime) -> None:
        log.info("saving_watermark", scope=scope, synced_at=synced_at)

        try:
            self._client.upsert_custom_object(
                self._container(scope),
                self._key,
                {"syncedAt": format_timestamp(synced_at)},
            )
        except CatalogSyncError as e:
            log.error("failed_to_save_watermark", scope=scope, error=str(e))
            raise WatermarkStoreError(f"Failed to save watermark: {e}") from e

        log.info("watermark_saved", scope=scope, backend="custom_object")


class DryRunWatermarkStore:
    """Reads from a real store, keeps writes in memory."""

    def __init__(self, delegate: WatermarkStore):
        self._delegate = delegate
        self._writes = InMemoryWatermarkStore()

    def get(self, scope: str) -> datetime | None:
        written = self._writes.get(scope)
        if written is not None:
            return written
        return self._delegate.get(scope)

    def set(self, scope: str, synced_at: datetime) -> None:
        log.info("dry_run_watermark_not_persisted", scope=scope, synced_at=synced_at)
        self._writes.set(scope, synced_at)

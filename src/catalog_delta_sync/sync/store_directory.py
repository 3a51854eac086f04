"""Store directory: the complete set of stores a sync fans out to."""

from typing import Callable

import structlog

from catalog_delta_sync.errors import CatalogSyncError, EnumerationError, SyncCancelledError
from catalog_delta_sync.ingestion.commercetools_client import CommercetoolsClient
from catalog_delta_sync.ingestion.query_builder import PageQuery, Sort, Where
from catalog_delta_sync.models.config import MAX_PAGE_SIZE

log = structlog.stdlib.get_logger()


class StoreDirectory:
    """Lists every store key, paginating with an id cursor."""

    def __init__(
        self,
        client: CommercetoolsClient,
        page_size: int = MAX_PAGE_SIZE,
        allowed_keys: list[str] | None = None,
    ):
        """
        Args:
            client: Platform client
            page_size: Stores requested per page
            allowed_keys: Optional allow-list; stores outside it are ignored
        """
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._client = client
        self._page_size = page_size
        self._allowed_keys = frozenset(allowed_keys) if allowed_keys is not None else None

    def list_active_stores(self, should_stop: Callable[[], None] | None = None) -> frozenset[str]:
        """
        Return every store key, fully materialized.

        Raises:
            EnumerationError: If any page fails; a partial store set is never returned
        """
        keys: set[str] = set()
        last_id: str | None = None
        page_number = 0

        while True:
            if should_stop is not None:
                should_stop()

            page = PageQuery(
                limit=self._page_size,
                where=(Where("id") > last_id) if last_id is not None else None,
                sort=(Sort("id"),),
            )

            try:
                stores = self._client.query_stores(page, should_stop)
                page_ids = [store["id"] for store in stores]
                page_keys = [store["key"] for store in stores]
            except SyncCancelledError:
                raise
            except CatalogSyncError as e:
                log.error("store_directory_page_failed", page_number=page_number, error=str(e))
                raise EnumerationError(f"Store directory page {page_number} failed: {e}") from e
            except (KeyError, TypeError) as e:
                log.error("store_directory_page_malformed", page_number=page_number, error=str(e))
                raise EnumerationError(f"Store directory page {page_number} is malformed: {e}") from e

            page_number += 1
            keys.update(key for key in page_keys if key)

            if len(stores) < self._page_size:
                break

            last_id = page_ids[-1]

        if self._allowed_keys is not None:
            missing = self._allowed_keys - keys
            if missing:
                log.warning("configured_stores_not_found", store_keys=sorted(missing))
            keys &= self._allowed_keys

        log.info("stores_listed", pages=page_number, store_count=len(keys))
        return frozenset(keys)

"""Product assignments of a store, paginated by product id."""

from typing import Callable, Iterator

import structlog

from catalog_delta_sync.errors import CatalogSyncError, EnumerationError, SyncCancelledError
from catalog_delta_sync.ingestion.commercetools_client import CommercetoolsClient
from catalog_delta_sync.ingestion.query_builder import PageQuery, Sort, Where, nested
from catalog_delta_sync.models.config import MAX_PAGE_SIZE

log = structlog.stdlib.get_logger()


class AssignmentPaginator:
    """Walks a store's product selection assignments in product id order."""

    def __init__(self, client: CommercetoolsClient, page_size: int = MAX_PAGE_SIZE):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._client = client
        self._page_size = page_size

    def iter_product_ids(
        self, store_key: str, should_stop: Callable[[], None] | None = None
    ) -> Iterator[str]:
        """
        Yield ids of products assigned to ``store_key`` in ascending order.

        A product that sits in several selections of the store is yielded once.

        Raises:
            EnumerationError: If any page request fails
        """
        last_id: str | None = None
        seen: set[str] = set()
        page_number = 0

        while True:
            if should_stop is not None:
                should_stop()

            page = PageQuery(
                limit=self._page_size,
                where=nested("product", Where("id") > last_id) if last_id is not None else None,
                sort=(Sort("product.id"),),
            )

            try:
                assignments = self._client.query_store_assignments(
                    store_key, page, should_stop
                )
                product_ids = [assignment["product"]["id"] for assignment in assignments]
            except SyncCancelledError:
                raise
            except CatalogSyncError as e:
                log.error(
                    "assignment_page_failed",
                    store_key=store_key,
                    page_number=page_number,
                    error=str(e),
                )
                raise EnumerationError(
                    f"Assignments page {page_number} of store {store_key} failed: {e}"
                ) from e
            except (KeyError, TypeError) as e:
                raise EnumerationError(
                    f"Assignments page {page_number} of store {store_key} is malformed: {e}"
                ) from e

            page_number += 1

            for product_id in product_ids:
                if product_id not in seen:
                    seen.add(product_id)
                    yield product_id

            if len(product_ids) < self._page_size:
                break

            last_id = product_ids[-1]

        log.info(
            "store_assignments_scanned",
            store_key=store_key,
            pages=page_number,
            products=len(seen),
        )

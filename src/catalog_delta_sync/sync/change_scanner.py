"""Change feed scanner: identifiers of products modified inside a time window."""

from datetime import datetime
from typing import Callable, Iterator

import structlog

from catalog_delta_sync.errors import CatalogSyncError, EnumerationError, SyncCancelledError
from catalog_delta_sync.ingestion.commercetools_client import CommercetoolsClient
from catalog_delta_sync.ingestion.query_builder import PageQuery, Predicate, Sort, Where
from catalog_delta_sync.models.catalog import ChangedEntity, ChangeFeedCursor

log = structlog.stdlib.get_logger()

CHANGE_FEED_SORT = (Sort("lastModifiedAt"), Sort("id"))


def window_predicate(
    window_start: datetime, window_end: datetime, cursor: ChangeFeedCursor | None
) -> Predicate:
    """Predicate selecting rows of the window that come after ``cursor``.

    The first page starts at ``window_start`` inclusive. Later pages use the
    keyset condition ``t > c.t or (t = c.t and id > c.id)`` so pages strictly
    advance even when many products share one modification time.
    """
    upper = Where("lastModifiedAt") <= window_end
    if cursor is None:
        return (Where("lastModifiedAt") >= window_start) & upper

    after = (Where("lastModifiedAt") > cursor.last_modified_at) | (
        (Where("lastModifiedAt") == cursor.last_modified_at) & (Where("id") > cursor.id)
    )
    return after & upper


class ChangeFeedScanner:
    """Paginates the product change feed sorted by (lastModifiedAt, id)."""

    def __init__(self, client: CommercetoolsClient, page_size: int = 100):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._client = client
        self._page_size = page_size

    def scan(
        self,
        window_start: datetime,
        window_end: datetime,
        should_stop: Callable[[], None] | None = None,
    ) -> Iterator[ChangedEntity]:
        """
        Yield changed products in ``[window_start, window_end]``.

        Lazy and finite; the generator cannot be restarted. Each identifier is
        yielded once per scan.

        Args:
            window_start: Inclusive lower bound (the previous watermark)
            window_end: Inclusive upper bound (the run start time)
            should_stop: Optional callable checked before each page request;
                it raises to abort the scan

        Raises:
            EnumerationError: If any page request fails
        """
        cursor: ChangeFeedCursor | None = None
        seen: set[str] = set()
        page_number = 0

        while True:
            if should_stop is not None:
                should_stop()

            page = PageQuery(
                limit=self._page_size,
                where=window_predicate(window_start, window_end, cursor),
                sort=CHANGE_FEED_SORT,
            )

            try:
                rows = self._client.query_changed_products(page, should_stop)
                entities = [
                    ChangedEntity(id=row["id"], last_modified_at=row["lastModifiedAt"])
                    for row in rows
                ]
            except SyncCancelledError:
                raise
            except CatalogSyncError as e:
                log.error("change_feed_page_failed", page_number=page_number, error=str(e))
                raise EnumerationError(f"Change feed page {page_number} failed: {e}") from e
            except (KeyError, TypeError, ValueError) as e:
                log.error("change_feed_page_malformed", page_number=page_number, error=str(e))
                raise EnumerationError(f"Change feed page {page_number} is malformed: {e}") from e

            page_number += 1
            log.debug("change_feed_page_fetched", page_number=page_number, size=len(entities))

            for entity in entities:
                if entity.id in seen:
                    continue
                seen.add(entity.id)
                yield entity

            if len(entities) < self._page_size:
                break

            cursor = ChangeFeedCursor.after(entities[-1])

        log.info("change_feed_scanned", pages=page_number, products=len(seen))

"""Resolution of store-scoped product projections."""

from typing import Callable

import structlog

from catalog_delta_sync.errors import FatalError, NotFoundError
from catalog_delta_sync.ingestion.commercetools_client import CommercetoolsClient
from catalog_delta_sync.models.catalog import Projection

log = structlog.stdlib.get_logger()


class ProjectionResolver:
    """Fetches the projection of a product as seen from one store."""

    def __init__(self, client: CommercetoolsClient):
        self._client = client

    def resolve(
        self,
        product_id: str,
        store_key: str,
        should_stop: Callable[[], None] | None = None,
    ) -> Projection | None:
        """
        Resolve a (product, store) pair.

        ``should_stop`` is handed to the client so retries end once the run
        is cancelled.

        Returns:
            The projection, or None when the product is not assigned to or
            visible in the store

        Raises:
            TransientError: If the fetch kept failing after retries
            FatalError: On any other platform failure or a malformed body
        """
        try:
            payload = self._client.get_product_projection(store_key, product_id, should_stop)
        except NotFoundError:
            log.debug("projection_not_in_store", product_id=product_id, store_key=store_key)
            return None

        try:
            return Projection.from_api(payload, store_key)
        except ValueError as e:
            raise FatalError(
                f"Malformed projection for product {product_id} in store {store_key}: {e}"
            ) from e

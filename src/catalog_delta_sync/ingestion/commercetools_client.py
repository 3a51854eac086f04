"""commercetools HTTP client used by every delta sync component.

The client is the only place that looks at HTTP status codes; everything it
raises is a ``CatalogSyncError`` carrying a kind tag.
"""

import threading
import time
from typing import Any, Callable
from urllib.parse import quote

import requests
import structlog
from requests.exceptions import ConnectionError, RequestException, Timeout

from catalog_delta_sync.errors import (
    CatalogSyncError,
    FatalError,
    NotFoundError,
    TransientError,
)
from catalog_delta_sync.ingestion.query_builder import PageQuery
from catalog_delta_sync.models.config import CommercetoolsConfig, RetryConfig
from catalog_delta_sync.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()

CHANGED_PRODUCTS_QUERY = """
query ChangedProducts($limit: Int, $sort: [String!], $where: String) {
  products(limit: $limit, sort: $sort, where: $where) {
    results {
      id
      lastModifiedAt
    }
  }
}
"""

# Refresh the access token this many seconds before it expires.
TOKEN_EXPIRY_MARGIN = 60.0

StopCheck = Callable[[], None]


def classify_status(status_code: int, message: str) -> CatalogSyncError:
    """Map an HTTP error status to a typed error."""
    if status_code == 404:
        return NotFoundError(message, status_code=status_code)
    if status_code == 429 or status_code >= 500:
        return TransientError(message, status_code=status_code)
    return FatalError(message, status_code=status_code)


def _decode_body(response: requests.Response, what: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        # Truncated or proxy-generated bodies; the retry asks again.
        raise TransientError(f"{what} returned a non-JSON body: {e}") from e


class CommercetoolsClient:
    """Thin wrapper around the commercetools HTTP API using ``requests``.

    One instance is shared by all fan-out workers; the cached access token is
    guarded by a lock.
    """

    def __init__(
        self,
        config: CommercetoolsConfig,
        retry: RetryConfig | None = None,
        session: requests.Session | None = None,
    ):
        """
        Initialize the client.

        Args:
            config: Project, credentials and hosts
            retry: Retry policy for transient failures (defaults to RetryConfig())
            session: Optional pre-built session (tests inject a mock here)
        """
        self._config = config
        self._session = session or requests.Session()
        self._api_base = f"{str(config.api_url).rstrip('/')}/{config.project_key}"
        self._access_token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = threading.Lock()

        retry = retry or RetryConfig()
        self._send = exponential_backoff_retry(
            max_retries=retry.max_retries,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
            exceptions=(TransientError,),
        )(self._send_once)

        log.info(
            "commercetools_client_initialized",
            project_key=config.project_key,
            api_url=str(config.api_url),
        )

    # Authentication

    def _token(self) -> str:
        with self._token_lock:
            token = self._access_token
            if token is None or time.monotonic() >= self._token_expires_at:
                token, self._token_expires_at = self._authenticate()
                self._access_token = token
            return token

    def _invalidate_token(self, token: str) -> None:
        with self._token_lock:
            # Another worker may already hold a newer token.
            if self._access_token == token:
                self._access_token = None

    def _authenticate(self) -> tuple[str, float]:
        url = f"{str(self._config.auth_url).rstrip('/')}/oauth/token"
        data = {"grant_type": "client_credentials"}
        if self._config.scopes:
            data["scope"] = " ".join(self._config.scopes)

        try:
            response = self._session.post(
                url,
                data=data,
                auth=(self._config.client_id, self._config.client_secret),
                timeout=self._config.timeout_seconds,
            )
        except (Timeout, ConnectionError) as e:
            raise TransientError(f"Token request failed: {e}") from e
        except RequestException as e:
            raise FatalError(f"Token request failed: {e}") from e

        if response.status_code >= 400:
            # A 404 from the auth host is a setup problem, not a missing resource.
            error = classify_status(response.status_code, "Token request rejected")
            if isinstance(error, NotFoundError):
                error = FatalError("Token endpoint not found", status_code=404)
            raise error

        body = _decode_body(response, "Token request")
        try:
            token = body["access_token"]
            expires_in = float(body.get("expires_in", 3600))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise FatalError(f"Token response is malformed: {e!r}") from e
        if not isinstance(token, str) or not token:
            raise FatalError("Token response carries no access token")

        log.debug("access_token_refreshed", expires_in=expires_in)
        return token, time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0.0)

    # Transport

    def _send_once(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._api_base}/{path.lstrip('/')}"
        token = self._token()
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = self._session.request(
                method, url, headers=headers, timeout=self._config.timeout_seconds, **kwargs
            )
        except (Timeout, ConnectionError) as e:
            raise TransientError(f"{method} {path} failed: {e}") from e
        except RequestException as e:
            raise FatalError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            # Token revoked or expired early; the retry picks up a fresh one.
            self._invalidate_token(token)
            raise TransientError(f"{method} {path} unauthorized", status_code=401)

        if response.status_code >= 400:
            raise classify_status(
                response.status_code,
                f"{method} {path} returned {response.status_code}",
            )

        return _decode_body(response, f"{method} {path}")

    def _results(
        self, path: str, params: dict[str, Any], should_stop: StopCheck | None
    ) -> list[dict[str, Any]]:
        body = self._send("GET", path, params=params, should_stop=should_stop)
        results = body.get("results") if isinstance(body, dict) else None
        if not isinstance(results, list):
            raise FatalError(f"GET {path} returned no results list")
        return results

    # Endpoints

    def graphql(
        self, query: str, variables: dict[str, Any], should_stop: StopCheck | None = None
    ) -> dict[str, Any]:
        """Execute a GraphQL query and return its ``data`` object.

        Raises:
            FatalError: If the response carries GraphQL errors or is not an object
        """
        body = self._send(
            "POST",
            "graphql",
            json={"query": query, "variables": variables},
            should_stop=should_stop,
        )
        if not isinstance(body, dict):
            raise FatalError("GraphQL response is not an object")
        if body.get("errors"):
            messages = [
                str(error.get("message", "")) if isinstance(error, dict) else str(error)
                for error in body["errors"]
            ]
            raise FatalError(f"GraphQL query failed: {'; '.join(messages)}")
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise FatalError("GraphQL data is not an object")
        return data

    def query_changed_products(
        self, page: PageQuery, should_stop: StopCheck | None = None
    ) -> list[dict[str, Any]]:
        """Fetch one page of ``{id, lastModifiedAt}`` rows from the product change feed."""
        data = self.graphql(CHANGED_PRODUCTS_QUERY, page.to_variables(), should_stop)
        products = data.get("products")
        results = products.get("results") if isinstance(products, dict) else None
        if not isinstance(results, list):
            raise FatalError("GraphQL products query returned no results list")
        return results

    def query_stores(
        self, page: PageQuery, should_stop: StopCheck | None = None
    ) -> list[dict[str, Any]]:
        """Fetch one page of stores."""
        return self._results("stores", page.to_params(), should_stop)

    def query_store_assignments(
        self, store_key: str, page: PageQuery, should_stop: StopCheck | None = None
    ) -> list[dict[str, Any]]:
        """Fetch one page of product selection assignments visible in a store."""
        path = f"in-store/key={quote(store_key, safe='')}/product-selection-assignments"
        return self._results(path, page.to_params(), should_stop)

    def get_product_projection(
        self, store_key: str, product_id: str, should_stop: StopCheck | None = None
    ) -> dict[str, Any]:
        """Fetch the store-scoped projection of a product.

        Raises:
            NotFoundError: If the product is not assigned to or visible in the store
        """
        path = (
            f"in-store/key={quote(store_key, safe='')}"
            f"/product-projections/{quote(product_id, safe='')}"
        )
        return self._send("GET", path, should_stop=should_stop)

    def get_custom_object(self, container: str, key: str) -> dict[str, Any]:
        """Fetch a custom object.

        Raises:
            NotFoundError: If no object exists for ``(container, key)``
        """
        path = f"custom-objects/{quote(container, safe='')}/{quote(key, safe='')}"
        return self._send("GET", path)

    def upsert_custom_object(self, container: str, key: str, value: Any) -> dict[str, Any]:
        """Create or replace a custom object in a single request."""
        return self._send(
            "POST", "custom-objects", json={"container": container, "key": key, "value": value}
        )

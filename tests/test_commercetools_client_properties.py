"""Property-based tests for CommercetoolsClient.

Feature: catalog-delta-sync
"""

import threading
from unittest.mock import MagicMock, Mock

import pytest
import requests
import structlog
from hypothesis import given
from hypothesis import strategies as st

from catalog_delta_sync.errors import (
    ErrorKind,
    FatalError,
    NotFoundError,
    SyncCancelledError,
    TransientError,
    WatermarkStoreError,
)
from catalog_delta_sync.ingestion.commercetools_client import (
    CHANGED_PRODUCTS_QUERY,
    CommercetoolsClient,
    classify_status,
)
from catalog_delta_sync.ingestion.query_builder import PageQuery, Sort, Where
from catalog_delta_sync.models.config import (
    AppConfig,
    CommercetoolsConfig,
    RetryConfig,
    SyncConfig,
)
from catalog_delta_sync.providers import get_orchestrator
from catalog_delta_sync.sync import InMemoryWatermarkStore, RunState
from catalog_delta_sync.utils import retry as retry_module

log = structlog.stdlib.get_logger()

API = "https://api.europe-west1.gcp.commercetools.com/demo"


def _response(status_code: int = 200, body: dict | None = None) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    return response


def _token_response(expires_in: int = 172800) -> Mock:
    return _response(200, {"access_token": "token-1", "expires_in": expires_in})


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps: list[float] = []
    monkeypatch.setattr(retry_module.time, "sleep", sleeps.append)
    return sleeps


@pytest.fixture
def session(no_sleep):
    session = MagicMock()
    session.post.return_value = _token_response()
    return session


def _config() -> CommercetoolsConfig:
    return CommercetoolsConfig(
        project_key="demo",
        client_id="client-id",
        client_secret="client-secret",
        scopes=["view_products:demo"],
    )


def _client(session, max_retries: int = 2, base_delay: float = 0.5) -> CommercetoolsClient:
    return CommercetoolsClient(
        _config(),
        retry=RetryConfig(max_retries=max_retries, base_delay=base_delay, max_delay=2.0),
        session=session,
    )


@given(st.integers(min_value=400, max_value=599))
def test_property_status_classification(status_code: int):
    """Property: Error classification.

    404 is NOT_FOUND, 429 and 5xx are TRANSIENT, every other 4xx is FATAL.
    """
    error = classify_status(status_code, "failed")

    if status_code == 404:
        assert error.kind == ErrorKind.NOT_FOUND
    elif status_code == 429 or status_code >= 500:
        assert error.kind == ErrorKind.TRANSIENT
    else:
        assert error.kind == ErrorKind.FATAL
    assert error.status_code == status_code


def test_token_requested_once_and_reused(session):
    session.request.return_value = _response(200, {"results": []})
    client = _client(session)

    client.query_stores(PageQuery(limit=10))
    client.query_stores(PageQuery(limit=10))

    session.post.assert_called_once()
    args, kwargs = session.post.call_args
    assert args[0] == "https://auth.europe-west1.gcp.commercetools.com/oauth/token"
    assert kwargs["auth"] == ("client-id", "client-secret")
    assert kwargs["data"] == {"grant_type": "client_credentials", "scope": "view_products:demo"}
    headers = session.request.call_args.kwargs["headers"]
    assert headers == {"Authorization": "Bearer token-1"}


def test_query_stores_sends_paging_params(session):
    session.request.return_value = _response(200, {"results": [{"id": "1", "key": "S1"}]})
    client = _client(session)

    page = PageQuery(limit=500, where=Where("id") > "abc", sort=(Sort("id"),))
    stores = client.query_stores(page)

    assert stores == [{"id": "1", "key": "S1"}]
    args, kwargs = session.request.call_args
    assert args == ("GET", f"{API}/stores")
    assert kwargs["params"] == {
        "limit": 500,
        "withTotal": "false",
        "where": 'id > "abc"',
        "sort": ["id asc"],
    }


def test_changed_products_uses_graphql(session):
    rows = [{"id": "p-1", "lastModifiedAt": "2024-01-01T00:00:00.000Z"}]
    session.request.return_value = _response(200, {"data": {"products": {"results": rows}}})
    client = _client(session)

    result = client.query_changed_products(PageQuery(limit=100, sort=(Sort("lastModifiedAt"),)))

    assert result == rows
    args, kwargs = session.request.call_args
    assert args == ("POST", f"{API}/graphql")
    assert kwargs["json"]["query"] == CHANGED_PRODUCTS_QUERY
    assert kwargs["json"]["variables"] == {"limit": 100, "sort": ["lastModifiedAt asc"]}


def test_graphql_errors_are_fatal(session):
    session.request.return_value = _response(
        200, {"data": None, "errors": [{"message": "Malformed where predicate"}]}
    )
    client = _client(session)

    with pytest.raises(FatalError, match="Malformed where predicate"):
        client.query_changed_products(PageQuery(limit=1))


def test_store_and_product_ids_are_url_quoted(session):
    session.request.return_value = _response(200, {"id": "p/1", "lastModifiedAt": "x"})
    client = _client(session)

    client.get_product_projection("eu store", "p/1")

    url = session.request.call_args.args[1]
    assert url == f"{API}/in-store/key=eu%20store/product-projections/p%2F1"


def test_not_found_is_not_retried(session, no_sleep):
    session.request.return_value = _response(404)
    client = _client(session)

    with pytest.raises(NotFoundError):
        client.get_custom_object("search-index-delta-sync-eu", "last-sync")

    assert session.request.call_count == 1
    assert no_sleep == []


def test_transient_errors_are_retried(session, no_sleep):
    session.request.side_effect = [
        _response(503),
        _response(429),
        _response(200, {"results": []}),
    ]
    client = _client(session)

    assert client.query_store_assignments("S1", PageQuery(limit=10)) == []
    assert session.request.call_count == 3
    assert no_sleep == [0.5, 1.0]


def test_transient_errors_exhaust_retries(session):
    session.request.return_value = _response(502)
    client = _client(session, max_retries=2)

    with pytest.raises(TransientError) as exc_info:
        client.get_product_projection("S1", "p-1")

    assert exc_info.value.status_code == 502
    assert session.request.call_count == 3


def test_bad_request_is_fatal(session):
    session.request.return_value = _response(400)
    client = _client(session)

    with pytest.raises(FatalError):
        client.query_stores(PageQuery(limit=10))

    assert session.request.call_count == 1


def test_unauthorized_refreshes_token(session):
    session.request.side_effect = [_response(401), _response(200, {"results": []})]
    client = _client(session)

    client.query_stores(PageQuery(limit=10))

    assert session.post.call_count == 2


def test_network_errors_are_transient(session):
    session.request.side_effect = [
        requests.exceptions.ConnectionError("reset"),
        requests.exceptions.Timeout("slow"),
        _response(200, {"container": "c", "key": "k", "value": {}}),
    ]
    client = _client(session)

    assert client.get_custom_object("c", "k")["key"] == "k"


def test_token_rejection_is_fatal(session):
    session.post.return_value = _response(401)
    client = _client(session)

    with pytest.raises(FatalError):
        client.query_stores(PageQuery(limit=10))

    session.request.assert_not_called()


def test_upsert_custom_object_posts_draft(session):
    session.request.return_value = _response(200, {"version": 2})
    client = _client(session)

    client.upsert_custom_object("wm-eu", "last-sync", {"syncedAt": "2024-01-01T00:00:00.000Z"})

    args, kwargs = session.request.call_args
    assert args == ("POST", f"{API}/custom-objects")
    assert kwargs["json"] == {
        "container": "wm-eu",
        "key": "last-sync",
        "value": {"syncedAt": "2024-01-01T00:00:00.000Z"},
    }


def _cancel_check(cancel: threading.Event):
    def should_stop():
        if cancel.is_set():
            raise SyncCancelledError("Sync run was cancelled")

    return should_stop


def test_cancellation_ends_retries_during_outage(session, no_sleep):
    cancel = threading.Event()

    def outage(*args, **kwargs):
        cancel.set()
        return _response(503)

    session.request.side_effect = outage
    client = _client(session, max_retries=5)

    with pytest.raises(SyncCancelledError):
        client.get_product_projection("S1", "p-1", should_stop=_cancel_check(cancel))

    assert session.request.call_count == 1
    assert no_sleep == []


def test_cancelled_run_sends_no_more_projection_requests(session):
    cancel = threading.Event()
    projection_requests = []

    def platform(method, url, **kwargs):
        if url.endswith("/stores"):
            return _response(200, {"results": [{"id": "id-S1", "key": "S1"}]})
        if url.endswith("/graphql"):
            rows = [{"id": "p-1", "lastModifiedAt": "2024-01-01T00:00:00.000Z"}]
            return _response(200, {"data": {"products": {"results": rows}}})
        projection_requests.append(url)
        cancel.set()
        return _response(503)

    session.request.side_effect = platform
    config = AppConfig(
        commercetools=_config(),
        sync=SyncConfig(store_key="cancel-scope", watermark_backend="memory"),
    )
    orchestrator = get_orchestrator(
        config,
        client=_client(session, max_retries=5, base_delay=0.0),
        watermark_store=InMemoryWatermarkStore(),
    )

    outcome = orchestrator.run(cancel_event=cancel)

    assert outcome.state == RunState.FAILED
    assert isinstance(outcome.error, SyncCancelledError)
    assert len(projection_requests) == 1


def test_stale_unauthorized_does_not_discard_fresh_token(session):
    """A 401 for an old token must not drop the token another worker just fetched."""
    a_in_request = threading.Event()
    a_release = threading.Event()
    b_refreshing = threading.Event()
    b_release = threading.Event()

    # token-1 expires at once, so worker B refreshes while A still uses it.
    first_token = _response(200, {"access_token": "token-1", "expires_in": 0})
    second_token = Mock(status_code=200)

    def slow_token_body():
        b_refreshing.set()
        b_release.wait(5)
        return {"access_token": "token-2", "expires_in": 3600}

    second_token.json.side_effect = slow_token_body
    session.post.side_effect = [first_token, second_token]

    def platform(method, url, headers, **kwargs):
        if threading.current_thread().name == "A" and headers["Authorization"] == "Bearer token-1":
            a_in_request.set()
            a_release.wait(5)
            return _response(401)
        return _response(200, {"id": "p-1", "lastModifiedAt": "2024-01-01T00:00:00.000Z"})

    session.request.side_effect = platform
    client = _client(session)
    results: dict = {}

    def fetch(name):
        try:
            results[name] = client.get_product_projection("S1", "p-1")
        except Exception as e:
            results[name] = e

    worker_a = threading.Thread(target=fetch, args=("A",), name="A")
    worker_b = threading.Thread(target=fetch, args=("B",), name="B")
    worker_a.start()
    assert a_in_request.wait(5)
    worker_b.start()
    assert b_refreshing.wait(5)
    a_release.set()
    b_release.set()
    worker_a.join(10)
    worker_b.join(10)

    assert results["A"]["id"] == "p-1"
    assert results["B"]["id"] == "p-1"
    assert session.post.call_count == 2


def test_concurrent_workers_share_one_token(session):
    session.request.return_value = _response(200, {"results": []})
    client = _client(session)
    errors = []

    def fetch():
        try:
            client.query_stores(PageQuery(limit=10))
        except Exception as e:
            errors.append(e)

    workers = [threading.Thread(target=fetch) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(10)

    assert errors == []
    session.post.assert_called_once()


def test_non_json_body_is_transient(session):
    response = _response(200)
    response.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)
    session.request.return_value = response
    client = _client(session, max_retries=1)

    with pytest.raises(TransientError, match="non-JSON"):
        client.get_product_projection("S1", "p-1")

    assert session.request.call_count == 2


def test_products_null_is_fatal(session):
    session.request.return_value = _response(200, {"data": {"products": None}})
    client = _client(session)

    with pytest.raises(FatalError, match="results"):
        client.query_changed_products(PageQuery(limit=10))


@pytest.mark.parametrize("body", [{}, {"results": None}, {"results": {"id": "1"}}])
def test_missing_results_list_is_fatal(session, body):
    session.request.return_value = _response(200, body)
    client = _client(session)

    with pytest.raises(FatalError):
        client.query_stores(PageQuery(limit=10))


def test_token_body_without_access_token_is_fatal(session):
    session.post.return_value = _response(200, {"token_type": "Bearer"})
    client = _client(session)

    with pytest.raises(FatalError, match="access token"):
        client.query_stores(PageQuery(limit=10))

    session.request.assert_not_called()


def test_garbled_watermark_read_fails_run_without_raising(session):
    response = _response(200)
    response.json.side_effect = ValueError("truncated body")
    session.request.return_value = response
    config = AppConfig(
        commercetools=_config(),
        sync=SyncConfig(store_key="garbled-scope", watermark_backend="custom_object"),
    )
    orchestrator = get_orchestrator(config, client=_client(session, max_retries=0))

    outcome = orchestrator.run()

    assert outcome.state == RunState.FAILED
    assert isinstance(outcome.error, WatermarkStoreError)

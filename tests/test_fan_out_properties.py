"""Property-based tests for bounded-concurrency resolution.

Feature: catalog-delta-sync
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from catalog_delta_sync.errors import (
    EnumerationError,
    ErrorKind,
    SyncCancelledError,
    TransientError,
)
from catalog_delta_sync.models.catalog import CandidateRef, Projection
from catalog_delta_sync.sync.fan_out import FanOutResolver
from catalog_delta_sync.sync.projection_resolver import ProjectionResolver
from fakes import FakeCatalogClient

log = structlog.stdlib.get_logger()

WATERMARK = datetime(2024, 1, 1, tzinfo=timezone.utc)
NEWER = WATERMARK + timedelta(hours=1)


class SlowResolver:
    """Resolver that records how many calls overlap."""

    def __init__(self, delay: float = 0.01):
        self._delay = delay
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def resolve(self, product_id: str, store_key: str, should_stop=None) -> Projection | None:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self._delay)
            return Projection(id=product_id, store_key=store_key, last_modified_at=NEWER)
        finally:
            with self._lock:
                self.active -= 1


def _refs(pairs):
    return [CandidateRef(product_id=p, store_key=s) for p, s in pairs]


@given(
    max_workers=st.integers(min_value=1, max_value=6),
    count=st.integers(min_value=0, max_value=30),
)
@settings(max_examples=15, deadline=None)
def test_property_concurrency_is_bounded(max_workers: int, count: int):
    """Property: Bounded concurrency.

    No more than max_workers projection fetches run at the same time, and
    every candidate is resolved.
    """
    resolver = SlowResolver(delay=0.002)
    fan_out = FanOutResolver(resolver, max_workers=max_workers)

    accumulator = fan_out.run(_refs((f"p-{i}", "S1") for i in range(count)), WATERMARK)

    assert resolver.peak <= max_workers
    assert accumulator.candidates == count
    assert len(accumulator.accepted) == count


def test_in_flight_window_limits_enumeration_read_ahead():
    release = threading.Event()
    started = threading.Semaphore(0)
    produced = 0

    class BlockingResolver:
        def resolve(self, product_id, store_key, should_stop=None):
            started.release()
            release.wait(5)
            return None

    def candidates():
        nonlocal produced
        for i in range(20):
            produced += 1
            yield CandidateRef(product_id=f"p-{i}", store_key="S1")

    fan_out = FanOutResolver(BlockingResolver(), max_workers=2, max_in_flight=3)
    result: dict = {}
    worker = threading.Thread(
        target=lambda: result.update(acc=fan_out.run(candidates(), WATERMARK))
    )
    worker.start()

    for _ in range(2):
        assert started.acquire(timeout=5)
    time.sleep(0.1)
    # Two running, one queued, and the fourth candidate waiting for a slot.
    assert produced == 4

    release.set()
    worker.join(timeout=10)
    assert result["acc"].not_found == 20


def test_failure_isolation():
    """One failing pair is recorded; every other pair still resolves."""
    client = FakeCatalogClient(
        projections={("A", "S1"): NEWER, ("B", "S1"): NEWER, ("B", "S2"): NEWER}
    )
    client.projection_errors[("B", "S1")] = TransientError("503", status_code=503)
    fan_out = FanOutResolver(ProjectionResolver(client), max_workers=3)

    accumulator = fan_out.run(_refs([("A", "S1"), ("B", "S1"), ("B", "S2"), ("A", "S2")]), WATERMARK)

    assert {p.ref for p in accumulator.accepted} == set(_refs([("A", "S1"), ("B", "S2")]))
    assert accumulator.not_found == 1
    assert len(accumulator.failures) == 1
    failure = accumulator.failures[0]
    assert (failure.product_id, failure.store_key, failure.kind) == ("B", "S1", ErrorKind.TRANSIENT)


def test_unexpected_exception_is_recorded_as_transient():
    """An unclassified crash is retried next run rather than dropped."""

    class BrokenResolver:
        def resolve(self, product_id, store_key, should_stop=None):
            if product_id == "bad":
                raise RuntimeError("boom")
            return Projection(id=product_id, store_key=store_key, last_modified_at=NEWER)

    accumulator = FanOutResolver(BrokenResolver(), max_workers=2).run(
        _refs([("bad", "S1"), ("good", "S1")]), WATERMARK
    )

    assert [p.id for p in accumulator.accepted] == ["good"]
    assert accumulator.failures[0].kind == ErrorKind.TRANSIENT
    assert accumulator.failures[0].message == "boom"


def test_duplicate_candidates_resolved_once():
    client = FakeCatalogClient(projections={("A", "S1"): NEWER})
    fan_out = FanOutResolver(ProjectionResolver(client), max_workers=4)

    accumulator = fan_out.run(_refs([("A", "S1")] * 5), WATERMARK)

    assert client.projection_requests == [("A", "S1")]
    assert accumulator.candidates == 1
    assert len(accumulator.accepted) == 1


def test_delta_filter_applied():
    client = FakeCatalogClient(projections={("old", "S1"): WATERMARK, ("new", "S1"): NEWER})
    fan_out = FanOutResolver(ProjectionResolver(client), max_workers=2)

    accumulator = fan_out.run(_refs([("old", "S1"), ("new", "S1")]), WATERMARK)

    assert [p.id for p in accumulator.accepted] == ["new"]
    assert accumulator.resolved == 2


def test_enumeration_error_propagates():
    client = FakeCatalogClient(projections={("A", "S1"): NEWER})

    def candidates():
        yield CandidateRef(product_id="A", store_key="S1")
        raise EnumerationError("Change feed page 1 failed")

    with pytest.raises(EnumerationError):
        FanOutResolver(ProjectionResolver(client), max_workers=2).run(candidates(), WATERMARK)


def test_cancellation_stops_submission():
    cancel = threading.Event()
    client = FakeCatalogClient(projections={(f"p-{i}", "S1"): NEWER for i in range(50)})

    def should_stop():
        if cancel.is_set():
            raise SyncCancelledError("cancelled")

    def candidates():
        for i in range(50):
            if i == 5:
                cancel.set()
            yield CandidateRef(product_id=f"p-{i}", store_key="S1")

    with pytest.raises(SyncCancelledError):
        FanOutResolver(ProjectionResolver(client), max_workers=2).run(
            candidates(), WATERMARK, should_stop
        )

    assert len(client.projection_requests) <= 5


def test_invalid_worker_count():
    with pytest.raises(ValueError):
        FanOutResolver(SlowResolver(), max_workers=0)


def test_stop_check_is_handed_to_the_resolver():
    received = []

    class RecordingResolver:
        def resolve(self, product_id, store_key, should_stop=None):
            received.append(should_stop)
            return None

    def should_stop():
        pass

    FanOutResolver(RecordingResolver(), max_workers=1).run(
        _refs([("A", "S1")]), WATERMARK, should_stop
    )

    assert received == [should_stop]

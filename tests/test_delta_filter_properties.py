"""Property-based tests for the delta filter.

Feature: catalog-delta-sync
"""

from datetime import datetime, timedelta, timezone

import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from catalog_delta_sync.models.catalog import Projection
from catalog_delta_sync.sync.delta_filter import DeltaFilter

log = structlog.stdlib.get_logger()

utc_datetimes = st.datetimes(
    min_value=datetime(2000, 1, 1), max_value=datetime(2035, 12, 31)
).map(lambda dt: dt.replace(tzinfo=timezone.utc))


def _projection(last_modified_at: datetime) -> Projection:
    return Projection(id="p-1", store_key="S1", last_modified_at=last_modified_at)


@given(last_modified_at=utc_datetimes, watermark=utc_datetimes)
@settings(max_examples=200)
def test_property_accept_iff_strictly_newer(last_modified_at: datetime, watermark: datetime):
    """Property: No-regression.

    For all watermarks w and projections p, accept(p, w) is true iff
    p.lastModifiedAt > w.
    """
    delta_filter = DeltaFilter()

    assert delta_filter.accept(_projection(last_modified_at), watermark) is (
        last_modified_at > watermark
    )


@given(watermark=utc_datetimes)
def test_equal_timestamp_is_excluded(watermark: datetime):
    """A projection modified exactly at the watermark was already synced."""
    delta_filter = DeltaFilter()

    assert delta_filter.accept(_projection(watermark), watermark) is False
    assert delta_filter.accept(_projection(watermark + timedelta(milliseconds=1)), watermark)


def test_naive_watermark_is_treated_as_utc():
    """Naive datetimes compare as UTC rather than raising."""
    delta_filter = DeltaFilter()
    watermark = datetime(2024, 1, 1, 0, 0, 0)

    assert delta_filter.accept(
        _projection(datetime(2024, 1, 1, 0, 0, 1, tzinfo=timezone.utc)), watermark
    )

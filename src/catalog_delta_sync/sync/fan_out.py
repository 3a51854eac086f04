"""Bounded-concurrency resolution of (product, store) pairs."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Iterable

import structlog

from catalog_delta_sync.errors import CatalogSyncError, ErrorKind, SyncCancelledError
from catalog_delta_sync.models.catalog import CandidateRef, Projection
from catalog_delta_sync.sync.delta_filter import DeltaFilter
from catalog_delta_sync.sync.models import ResolutionFailure
from catalog_delta_sync.sync.projection_resolver import ProjectionResolver
from catalog_delta_sync.utils.logging_config import bind_run_context

log = structlog.stdlib.get_logger()

# Seconds between cancellation checks while waiting for a free slot.
SLOT_POLL_INTERVAL = 0.25


class ResolutionAccumulator:
    """Thread-safe collector of per-pair outcomes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.accepted: list[Projection] = []
        self.failures: list[ResolutionFailure] = []
        self.candidates = 0
        self.resolved = 0
        self.not_found = 0

    def add_candidate(self) -> None:
        with self._lock:
            self.candidates += 1

    def add_projection(self, projection: Projection, accepted: bool) -> None:
        with self._lock:
            self.resolved += 1
            if accepted:
                self.accepted.append(projection)

    def add_not_found(self) -> None:
        with self._lock:
            self.not_found += 1

    def add_failure(self, failure: ResolutionFailure) -> None:
        with self._lock:
            self.failures.append(failure)


class FanOutResolver:
    """Resolves candidates on a fixed-size thread pool.

    At most ``max_in_flight`` candidates are queued or running at once, so the
    candidate iterator (which may be paging through the platform) is consumed
    only as fast as resolution keeps up. A failure of one pair never affects
    another.
    """

    def __init__(
        self,
        resolver: ProjectionResolver,
        delta_filter: DeltaFilter | None = None,
        max_workers: int = 8,
        max_in_flight: int | None = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._resolver = resolver
        self._delta_filter = delta_filter or DeltaFilter()
        self._max_workers = max_workers
        self._max_in_flight = max_in_flight or max_workers * 2

    def run(
        self,
        candidates: Iterable[CandidateRef],
        watermark: datetime,
        should_stop: Callable[[], None] | None = None,
        log_context: dict[str, Any] | None = None,
    ) -> ResolutionAccumulator:
        """
        Resolve and filter every distinct candidate.

        Exceptions raised while iterating ``candidates`` (enumeration errors) or
        by ``should_stop`` (cancellation) stop submission, let running tasks
        finish, drop queued ones and propagate.
        """
        should_stop = should_stop or (lambda: None)
        log_context = log_context or {}
        accumulator = ResolutionAccumulator()
        seen: set[CandidateRef] = set()
        slots = threading.BoundedSemaphore(self._max_in_flight)
        executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="resolve")

        try:
            for ref in candidates:
                if ref in seen:
                    continue
                seen.add(ref)

                while not slots.acquire(timeout=SLOT_POLL_INTERVAL):
                    should_stop()
                should_stop()

                accumulator.add_candidate()
                future = executor.submit(
                    self._resolve_one, ref, watermark, accumulator, should_stop, log_context
                )
                future.add_done_callback(lambda _: slots.release())
        except BaseException:
            executor.shutdown(wait=True, cancel_futures=True)
            raise

        executor.shutdown(wait=True)
        should_stop()

        log.info(
            "fan_out_completed",
            candidates=accumulator.candidates,
            resolved=accumulator.resolved,
            accepted=len(accumulator.accepted),
            not_found=accumulator.not_found,
            failed=len(accumulator.failures),
        )
        return accumulator

    def _resolve_one(
        self,
        ref: CandidateRef,
        watermark: datetime,
        accumulator: ResolutionAccumulator,
        should_stop: Callable[[], None],
        log_context: dict[str, Any],
    ) -> None:
        with bind_run_context(**log_context):
            try:
                should_stop()
                projection = self._resolver.resolve(ref.product_id, ref.store_key, should_stop)
            except SyncCancelledError:
                return
            except CatalogSyncError as e:
                log.warning(
                    "projection_resolution_failed",
                    product_id=ref.product_id,
                    store_key=ref.store_key,
                    kind=e.kind.value,
                    error=str(e),
                )
                accumulator.add_failure(
                    ResolutionFailure(
                        product_id=ref.product_id,
                        store_key=ref.store_key,
                        kind=e.kind,
                        message=str(e),
                    )
                )
                return
            except Exception as e:
                log.exception(
                    "projection_resolution_crashed",
                    product_id=ref.product_id,
                    store_key=ref.store_key,
                )
                accumulator.add_failure(
                    ResolutionFailure(
                        product_id=ref.product_id,
                        store_key=ref.store_key,
                        kind=ErrorKind.TRANSIENT,
                        message=str(e),
                    )
                )
                return

            if projection is None:
                accumulator.add_not_found()
                return

            accumulator.add_projection(projection, self._delta_filter.accept(projection, watermark))

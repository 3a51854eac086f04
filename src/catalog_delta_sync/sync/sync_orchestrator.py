"""Synchronization orchestrator for delta runs against the product catalog."""

import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Literal

import structlog

from catalog_delta_sync.errors import (
    CatalogSyncError,
    CommitError,
    ConfigurationError,
    ErrorKind,
    SyncCancelledError,
    SyncInProgressError,
    WatermarkStoreError,
)
from catalog_delta_sync.models.catalog import (
    EPOCH,
    CandidateRef,
    ensure_utc,
    truncate_to_millis,
)
from catalog_delta_sync.sync.assignment_paginator import AssignmentPaginator
from catalog_delta_sync.sync.change_scanner import ChangeFeedScanner
from catalog_delta_sync.sync.fan_out import FanOutResolver, ResolutionAccumulator
from catalog_delta_sync.sync.models import ResolutionFailure, RunState, SyncOutcome, SyncReport
from catalog_delta_sync.sync.store_directory import StoreDirectory
from catalog_delta_sync.sync.watermark_store import WatermarkStore
from catalog_delta_sync.utils.logging_config import bind_run_context

log = structlog.stdlib.get_logger()

Strategy = Literal["change_feed", "store_assignments"]

# Allowed transitions; FAILED is reachable from every non-terminal state.
_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.INIT: {RunState.READ_WATERMARK},
    RunState.READ_WATERMARK: {RunState.SCAN},
    RunState.SCAN: {RunState.RESOLVE},
    RunState.RESOLVE: {RunState.COMMIT_WATERMARK},
    RunState.COMMIT_WATERMARK: {RunState.DONE},
    RunState.DONE: set(),
    RunState.FAILED: set(),
}

_scope_locks: dict[str, threading.Lock] = {}
_scope_locks_guard = threading.Lock()


def _scope_lock(scope: str) -> threading.Lock:
    with _scope_locks_guard:
        return _scope_locks.setdefault(scope, threading.Lock())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Runs one delta sync: watermark, enumeration, resolution, commit.

    Components are injected; the orchestrator owns no client of its own.
    Only one run per scope is allowed at a time within the process.
    """

    def __init__(
        self,
        scope: str,
        watermark_store: WatermarkStore,
        store_directory: StoreDirectory,
        fan_out: FanOutResolver,
        scanner: ChangeFeedScanner | None = None,
        assignment_paginator: AssignmentPaginator | None = None,
        strategy: Strategy = "change_feed",
        run_timeout_seconds: float | None = None,
        resolution_failure_policy: Literal["hold_back", "advance"] = "hold_back",
        clock: Callable[[], datetime] = _utc_now,
    ):
        """
        Initialize the orchestrator.

        Args:
            scope: Watermark scope, normally the configured store key
            watermark_store: Where the last successful sync time is kept
            store_directory: Lists the stores to fan out to
            fan_out: Bounded-concurrency resolver for (product, store) pairs
            scanner: Change feed scanner (required for ``change_feed``)
            assignment_paginator: Store assignment paginator (required for
                ``store_assignments``)
            strategy: Candidate enumeration strategy; exactly one per deployment
            run_timeout_seconds: Optional limit after which the run is cancelled
            resolution_failure_policy: ``hold_back`` keeps transiently failed
                products inside the next run's window, ``advance`` ignores them
            clock: Source of the run start time
        """
        if strategy == "change_feed" and scanner is None:
            raise ValueError("scanner is required for the change_feed strategy")
        if strategy == "store_assignments" and assignment_paginator is None:
            raise ValueError("assignment_paginator is required for the store_assignments strategy")

        self._scope = scope
        self._watermark_store = watermark_store
        self._store_directory = store_directory
        self._fan_out = fan_out
        self._scanner = scanner
        self._assignment_paginator = assignment_paginator
        self._strategy = strategy
        self._run_timeout_seconds = run_timeout_seconds
        self._resolution_failure_policy = resolution_failure_policy
        self._clock = clock

        self._state = RunState.INIT
        self.transitions: list[RunState] = [RunState.INIT]

        log.info("sync_orchestrator_initialized", scope=scope, strategy=strategy)

    @property
    def state(self) -> RunState:
        return self._state

    def _transition(self, new_state: RunState) -> None:
        if new_state != RunState.FAILED and new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid transition {self._state.value} -> {new_state.value}")
        log.debug("run_state_changed", from_state=self._state.value, to_state=new_state.value)
        self._state = new_state
        self.transitions.append(new_state)

    def run(self, cancel_event: threading.Event | None = None) -> SyncOutcome:
        """
        Perform one delta sync run.

        Never raises for run-level failures: the outcome carries state FAILED
        and the error instead.

        Args:
            cancel_event: Optional event; setting it cancels the run

        Returns:
            SyncOutcome with the accepted projections and the run report
        """
        run_id = uuid.uuid4().hex[:12]
        start_time = truncate_to_millis(ensure_utc(self._clock()))
        report = SyncReport(
            run_id=run_id,
            scope=self._scope,
            strategy=self._strategy,
            start_time=start_time,
        )

        lock = _scope_lock(self._scope)
        if not lock.acquire(blocking=False):
            error = SyncInProgressError(f"A sync for scope {self._scope} is already running")
            log.warning("sync_already_running", scope=self._scope, run_id=run_id)
            report.state = RunState.FAILED
            report.end_time = start_time
            report.errors.append(f"Sync failed: {error}")
            return SyncOutcome(report=report, error=error)

        self._state = RunState.INIT
        self.transitions = [RunState.INIT]

        try:
            with bind_run_context(run_id=run_id, scope=self._scope):
                return self._run_locked(report, self._stop_check(cancel_event))
        finally:
            lock.release()

    def _stop_check(self, cancel_event: threading.Event | None) -> Callable[[], None]:
        deadline = (
            time.monotonic() + self._run_timeout_seconds
            if self._run_timeout_seconds is not None
            else None
        )

        def should_stop() -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelledError("Sync run was cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                raise SyncCancelledError(
                    f"Sync run exceeded its timeout of {self._run_timeout_seconds}s"
                )

        return should_stop

    def _run_locked(self, report: SyncReport, should_stop: Callable[[], None]) -> SyncOutcome:
        log.info("delta_sync_started", strategy=self._strategy, start_time=report.start_time)

        # Read watermark
        self._transition(RunState.READ_WATERMARK)
        try:
            previous = self._watermark_store.get(self._scope)
        except WatermarkStoreError as e:
            log.error("watermark_read_failed", error=str(e))
            self._transition(RunState.FAILED)
            return self._finish(report, error=e)

        previous = ensure_utc(previous) if previous is not None else None
        window_start = previous or EPOCH
        report.previous_watermark = previous
        log.info(
            "delta_window_determined",
            window_start=window_start,
            window_end=report.start_time,
            first_run=previous is None,
        )

        # Enumerate and resolve. Candidates stream into the pool while pages
        # are still being fetched; an enumeration error surfaces from the
        # iteration inside the fan-out and fails the run.
        feed_times: dict[str, datetime] = {}
        try:
            self._transition(RunState.SCAN)
            should_stop()
            stores = self._store_directory.list_active_stores(should_stop)
            report.store_count = len(stores)

            if self._strategy == "change_feed" and self._scanner is not None:
                candidates = self._change_feed_candidates(
                    self._scanner, window_start, report, sorted(stores), feed_times, should_stop
                )
            elif self._strategy == "store_assignments" and self._assignment_paginator is not None:
                candidates = self._assignment_candidates(
                    self._assignment_paginator, report, sorted(stores), should_stop
                )
            else:
                raise ConfigurationError(f"No enumerator wired for strategy {self._strategy}")

            self._transition(RunState.RESOLVE)
            accumulator = self._fan_out.run(
                candidates,
                window_start,
                should_stop,
                log_context={"run_id": report.run_id, "scope": self._scope},
            )
        except SyncCancelledError as e:
            log.warning("delta_sync_cancelled", state=self._state.value, error=str(e))
            self._transition(RunState.FAILED)
            return self._finish(report, error=e)
        except CatalogSyncError as e:
            log.error("delta_sync_enumeration_failed", state=self._state.value, error=str(e))
            self._transition(RunState.FAILED)
            return self._finish(report, error=e)

        self._record_resolution(report, accumulator)

        # Commit
        self._transition(RunState.COMMIT_WATERMARK)
        new_watermark = self._next_watermark(
            report.start_time, previous, accumulator.failures, feed_times
        )

        committed = False
        if new_watermark is not None and new_watermark != previous:
            try:
                self._watermark_store.set(self._scope, new_watermark)
            except WatermarkStoreError as e:
                log.error("watermark_commit_failed", error=str(e))
                self._transition(RunState.FAILED)
                return self._finish(
                    report,
                    error=CommitError(f"Failed to commit watermark: {e}"),
                    accumulator=accumulator,
                )
            committed = True
            report.committed_watermark = new_watermark
        else:
            log.warning("watermark_held_back", previous_watermark=previous)

        self._transition(RunState.DONE)
        return self._finish(report, accumulator=accumulator, committed=committed)

    def _change_feed_candidates(
        self,
        scanner: ChangeFeedScanner,
        window_start: datetime,
        report: SyncReport,
        stores: list[str],
        feed_times: dict[str, datetime],
        should_stop: Callable[[], None],
    ) -> Iterator[CandidateRef]:
        for entity in scanner.scan(window_start, report.start_time, should_stop):
            feed_times[entity.id] = entity.last_modified_at
            report.products_scanned += 1
            for store_key in stores:
                yield CandidateRef(product_id=entity.id, store_key=store_key)

    def _assignment_candidates(
        self,
        paginator: AssignmentPaginator,
        report: SyncReport,
        stores: list[str],
        should_stop: Callable[[], None],
    ) -> Iterator[CandidateRef]:
        products: set[str] = set()
        for store_key in stores:
            for product_id in paginator.iter_product_ids(store_key, should_stop):
                if product_id not in products:
                    products.add(product_id)
                    report.products_scanned += 1
                yield CandidateRef(product_id=product_id, store_key=store_key)

    def _next_watermark(
        self,
        start_time: datetime,
        previous: datetime | None,
        failures: list[ResolutionFailure],
        feed_times: dict[str, datetime],
    ) -> datetime | None:
        """Watermark to commit, or None to leave the store untouched.

        Normally the millisecond just before the run start: a change stamped in
        the run start millisecond may become visible after its page was read,
        and the strict delta filter would otherwise skip it next run. With the
        ``hold_back`` policy, transient resolution failures pull it back to just
        before the earliest failed product's modification time so the next run
        sees that product again.
        """
        commit_point = start_time - timedelta(milliseconds=1)
        transient = [f for f in failures if f.kind == ErrorKind.TRANSIENT]
        if not transient or self._resolution_failure_policy == "advance":
            return commit_point

        if self._strategy == "store_assignments":
            return previous

        earliest = min(feed_times[f.product_id] for f in transient)
        held = earliest - timedelta(milliseconds=1)
        if previous is not None:
            held = max(held, previous)
        held = min(held, commit_point)

        log.warning(
            "watermark_pulled_back",
            transient_failures=len(transient),
            earliest_failed_modification=earliest,
            watermark=held,
        )
        return held

    def _record_resolution(self, report: SyncReport, accumulator: ResolutionAccumulator) -> None:
        report.candidates = accumulator.candidates
        report.resolved = accumulator.resolved
        report.accepted = len(accumulator.accepted)
        report.not_found = accumulator.not_found
        report.failed = len(accumulator.failures)
        report.errors.extend(
            f"Failed to resolve product {f.product_id} in store {f.store_key}: {f.message}"
            for f in accumulator.failures
        )

    def _finish(
        self,
        report: SyncReport,
        error: CatalogSyncError | None = None,
        accumulator: ResolutionAccumulator | None = None,
        committed: bool = False,
    ) -> SyncOutcome:
        end_time = ensure_utc(self._clock())
        report.state = self._state
        report.end_time = end_time
        report.duration_seconds = max((end_time - report.start_time).total_seconds(), 0.0)

        if error is not None:
            report.errors.append(f"Sync failed: {error}")

        projections = []
        failures = []
        # Results of a cancelled or failed enumeration are discarded; a commit
        # error keeps them, flagged as uncommitted.
        if accumulator is not None:
            projections = list(accumulator.accepted)
            failures = list(accumulator.failures)

        log.info(
            "delta_sync_finished",
            state=report.state.value,
            accepted=report.accepted,
            not_found=report.not_found,
            failed=report.failed,
            committed=committed,
            committed_watermark=report.committed_watermark,
            duration_seconds=report.duration_seconds,
        )

        return SyncOutcome(
            report=report,
            projections=projections,
            failures=failures,
            committed=committed,
            error=error,
        )

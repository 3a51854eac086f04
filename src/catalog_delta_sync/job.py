"""Trigger for a delta sync run, called by the scheduler or an HTTP job endpoint."""

import threading
from typing import Callable

import structlog
from pydantic import BaseModel, Field

from catalog_delta_sync.models.catalog import Projection
from catalog_delta_sync.models.config import AppConfig
from catalog_delta_sync.providers import get_orchestrator
from catalog_delta_sync.sync.sync_orchestrator import SyncOrchestrator

log = structlog.stdlib.get_logger()

GENERIC_FAILURE_MESSAGE = "Delta sync failed"

ProjectionSink = Callable[[list[Projection]], None]


class SyncRunResponse(BaseModel):
    """What the trigger reports back: a count, or a generic error."""

    processed_count: int = Field(default=0, ge=0)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


def run_sync(
    config: AppConfig,
    sink: ProjectionSink | None = None,
    orchestrator: SyncOrchestrator | None = None,
    cancel_event: threading.Event | None = None,
) -> SyncRunResponse:
    """
    Run one delta sync and report the number of changed projections.

    Projections reach ``sink`` only when the run finished in state DONE. Error
    details stay in the log; the response carries a generic message.

    Args:
        config: Application configuration
        sink: Optional consumer of the changed projections (the index writer)
        orchestrator: Pre-built orchestrator; built from ``config`` if None
        cancel_event: Optional event that cancels the run when set
    """
    try:
        orchestrator = orchestrator or get_orchestrator(config)
        outcome = orchestrator.run(cancel_event=cancel_event)
    except Exception as e:
        log.exception("delta_sync_setup_failed", error=str(e))
        return SyncRunResponse(error=GENERIC_FAILURE_MESSAGE)

    if not outcome.success:
        log.error(
            "delta_sync_run_failed",
            run_id=outcome.report.run_id,
            errors=outcome.report.errors,
            uncommitted_projections=len(outcome.projections),
        )
        return SyncRunResponse(error=GENERIC_FAILURE_MESSAGE)

    if sink is not None:
        try:
            sink(outcome.projections)
        except Exception as e:
            log.exception("projection_sink_failed", run_id=outcome.report.run_id, error=str(e))
            return SyncRunResponse(error=GENERIC_FAILURE_MESSAGE)

    log.info("delta_sync_exported", run_id=outcome.report.run_id, count=len(outcome.projections))
    return SyncRunResponse(processed_count=len(outcome.projections))

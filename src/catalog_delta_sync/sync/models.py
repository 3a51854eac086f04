"""Data models for synchronization runs."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from catalog_delta_sync.errors import CatalogSyncError, ErrorKind
from catalog_delta_sync.models.catalog import Projection


class RunState(str, Enum):
    """States of a sync run. DONE and FAILED are terminal."""

    INIT = "init"
    READ_WATERMARK = "read_watermark"
    SCAN = "scan"
    RESOLVE = "resolve"
    COMMIT_WATERMARK = "commit_watermark"
    DONE = "done"
    FAILED = "failed"


class ResolutionFailure(BaseModel):
    """A (product, store) pair whose projection could not be fetched."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    store_key: str
    kind: ErrorKind
    message: str


class SyncReport(BaseModel):
    """Report of a delta sync run."""

    run_id: str = Field(..., description="Identifier of the run, bound to every log event")
    scope: str = Field(..., description="Watermark scope (store key) of the run")
    strategy: str = Field(..., description="Candidate enumeration strategy")
    state: RunState = Field(default=RunState.INIT, description="Terminal state of the run")
    start_time: datetime = Field(..., description="Run start, the candidate watermark")
    end_time: datetime | None = Field(default=None, description="Run end timestamp")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Run duration in seconds")
    previous_watermark: datetime | None = Field(default=None, description="Watermark read at start")
    committed_watermark: datetime | None = Field(
        default=None, description="Watermark written by this run, if any"
    )
    products_scanned: int = Field(default=0, ge=0, description="Products enumerated")
    store_count: int = Field(default=0, ge=0, description="Stores fanned out to")
    candidates: int = Field(default=0, ge=0, description="Distinct (product, store) pairs")
    resolved: int = Field(default=0, ge=0, description="Projections fetched")
    accepted: int = Field(default=0, ge=0, description="Projections that passed the delta filter")
    not_found: int = Field(default=0, ge=0, description="Pairs not visible in the store")
    failed: int = Field(default=0, ge=0, description="Pairs whose fetch failed")
    errors: list[str] = Field(default_factory=list, description="Errors encountered during the run")

    @property
    def success(self) -> bool:
        return self.state == RunState.DONE


class SyncOutcome(BaseModel):
    """Result of ``SyncOrchestrator.run``.

    ``projections`` is the delta of the run. It is only trustworthy when the
    state is DONE. After a commit error the state is FAILED and the projections
    are kept anyway, with ``committed`` false, so the caller can decide what to
    do with them. ``committed`` is also false on a DONE run whose watermark was
    held back.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    report: SyncReport
    projections: list[Projection] = Field(default_factory=list)
    failures: list[ResolutionFailure] = Field(default_factory=list)
    committed: bool = False
    error: CatalogSyncError | None = Field(default=None, exclude=True)

    @property
    def state(self) -> RunState:
        return self.report.state

    @property
    def success(self) -> bool:
        return self.report.success

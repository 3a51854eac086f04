"""Pydantic models for catalog entities seen by the delta sync."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

EPOCH: datetime = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond precision, which the platform does not store."""
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


class _UtcModel(BaseModel):
    """Base model that normalizes every datetime field to aware UTC."""

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class Watermark(_UtcModel):
    """Last successful sync timestamp for a scope."""

    scope: str = Field(default=..., min_length=1, description="Store key the watermark belongs to")
    synced_at: datetime = Field(default=..., description="Run start time of the last successful sync")

    model_config = {
        "json_schema_extra": {
            "example": {"scope": "eu-store", "synced_at": "2024-01-01T00:00:00Z"}
        }
    }


class ChangedEntity(_UtcModel):
    """One row of the catalog change feed."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default=..., min_length=1, description="Product identifier")
    last_modified_at: datetime = Field(default=..., description="Product modification time")


class CandidateRef(BaseModel):
    """A (product, store) pair to resolve. Hashable so a run can dedupe pairs."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(default=..., min_length=1)
    store_key: str = Field(default=..., min_length=1)


class Projection(_UtcModel):
    """Store-scoped projection of a product."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default=..., description="Product identifier")
    store_key: str = Field(default=..., description="Store the projection was resolved in")
    last_modified_at: datetime = Field(default=..., description="Projection modification time")
    version: int = Field(default=1, ge=0, description="Product version")
    key: str | None = Field(default=None, description="User-defined product key")
    body: dict[str, Any] = Field(default_factory=dict, description="Raw projection payload")

    @property
    def ref(self) -> CandidateRef:
        return CandidateRef(product_id=self.id, store_key=self.store_key)

    @classmethod
    def from_api(cls, payload: dict[str, Any], store_key: str) -> "Projection":
        """Build a projection from a product-projection response body.

        Raises:
            ValueError: If required fields are missing
        """
        try:
            return cls(
                id=payload["id"],
                store_key=store_key,
                last_modified_at=payload["lastModifiedAt"],
                version=payload.get("version", 1),
                key=payload.get("key"),
                body=payload,
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Missing required field in product projection: {e}") from e


class ChangeFeedCursor(_UtcModel):
    """Position in a (lastModifiedAt, id) sorted scan."""

    model_config = ConfigDict(frozen=True)

    last_modified_at: datetime
    id: str

    @classmethod
    def after(cls, entity: ChangedEntity) -> "ChangeFeedCursor":
        return cls(last_modified_at=entity.last_modified_at, id=entity.id)

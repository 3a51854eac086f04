"""Typed builder for commercetools query predicates, sort keys and paging.

Values never reach a query string by ad-hoc formatting: every literal goes
through ``_render_literal`` which quotes and escapes it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from catalog_delta_sync.models.catalog import ensure_utc

Value = Union[str, int, float, bool, datetime]


def format_timestamp(value: datetime) -> str:
    """Render a datetime the way the platform stores it: UTC, millisecond precision."""
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _render_literal(value: Value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return f'"{format_timestamp(value)}"'
    if isinstance(value, (int, float)):
        return repr(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class Op(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="


class Predicate:
    """Base class of query predicates."""

    def render(self) -> str:
        raise NotImplementedError

    def __and__(self, other: "Predicate") -> "Predicate":
        return And((self, other))

    def __or__(self, other: "Predicate") -> "Predicate":
        return Or((self, other))

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class Compare(Predicate):
    field: str
    op: Op
    value: Value

    def __post_init__(self) -> None:
        if not self.field.replace("_", "").replace(".", "").isalnum():
            raise ValueError(f"Invalid field name: {self.field!r}")

    def render(self) -> str:
        return f"{self.field} {self.op.value} {_render_literal(self.value)}"


@dataclass(frozen=True)
class And(Predicate):
    parts: tuple[Predicate, ...]

    def render(self) -> str:
        return " and ".join(_group(part) for part in self.parts)


@dataclass(frozen=True)
class Or(Predicate):
    parts: tuple[Predicate, ...]

    def render(self) -> str:
        return " or ".join(_group(part) for part in self.parts)


@dataclass(frozen=True)
class Nested(Predicate):
    """Predicate on a nested object, e.g. ``product(id > "abc")``."""

    field: str
    inner: Predicate

    def render(self) -> str:
        return f"{self.field}({self.inner.render()})"


def _group(predicate: Predicate) -> str:
    if isinstance(predicate, (And, Or)):
        return f"({predicate.render()})"
    return predicate.render()


class Where:
    """Entry point for building predicates on a field."""

    def __init__(self, field_name: str):
        self._field = field_name

    def __eq__(self, value: Value) -> Predicate:  # type: ignore[override]
        return Compare(self._field, Op.EQ, value)

    def __ne__(self, value: Value) -> Predicate:  # type: ignore[override]
        return Compare(self._field, Op.NE, value)

    def __gt__(self, value: Value) -> Predicate:
        return Compare(self._field, Op.GT, value)

    def __ge__(self, value: Value) -> Predicate:
        return Compare(self._field, Op.GTE, value)

    def __lt__(self, value: Value) -> Predicate:
        return Compare(self._field, Op.LT, value)

    def __le__(self, value: Value) -> Predicate:
        return Compare(self._field, Op.LTE, value)

    __hash__ = None  # type: ignore[assignment]


def nested(field_name: str, inner: Predicate) -> Predicate:
    return Nested(field_name, inner)


@dataclass(frozen=True)
class Sort:
    field: str
    ascending: bool = True

    def render(self) -> str:
        return f"{self.field} {'asc' if self.ascending else 'desc'}"


@dataclass(frozen=True)
class PageQuery:
    """A single page request: predicate, sort keys and limit."""

    limit: int
    where: Predicate | None = None
    sort: tuple[Sort, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be at least 1")

    def to_params(self) -> dict[str, Any]:
        """Query parameters for REST query endpoints."""
        params: dict[str, Any] = {"limit": self.limit, "withTotal": "false"}
        if self.where is not None:
            params["where"] = self.where.render()
        if self.sort:
            params["sort"] = [s.render() for s in self.sort]
        return params

    def to_variables(self) -> dict[str, Any]:
        """Variables for GraphQL queries taking ``limit``, ``sort`` and ``where``."""
        variables: dict[str, Any] = {"limit": self.limit, "sort": [s.render() for s in self.sort]}
        if self.where is not None:
            variables["where"] = self.where.render()
        return variables

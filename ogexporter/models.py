"""Shared dataclasses describing query groups and the samples they produce."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ColumnUsage(str, Enum):
    """How a result column is mapped onto metrics."""

    LABEL = "LABEL"
    GAUGE = "GAUGE"
    COUNTER = "COUNTER"
    DISCARD = "DISCARD"


class MetricType(str, Enum):
    """Exposition type of a sample."""

    GAUGE = "gauge"
    COUNTER = "counter"
    UNTYPED = "untyped"


class DbRole(str, Enum):
    """Server role a query variant is restricted to."""

    ANY = "any"
    PRIMARY = "primary"
    STANDBY = "standby"


@dataclass(frozen=True, slots=True)
class Query:
    """One SQL variant of a query group."""

    sql: str
    version: str = "0.0.0"
    timeout: float | None = None
    db_role: DbRole = DbRole.ANY


@dataclass(frozen=True, slots=True)
class Column:
    """Mapping of a result column onto a label or a metric."""

    name: str
    usage: ColumnUsage = ColumnUsage.GAUGE
    description: str = ""
    rename: str | None = None

    @property
    def metric_suffix(self) -> str:
        return self.rename or self.name

    @property
    def metric_type(self) -> MetricType | None:
        if self.usage is ColumnUsage.GAUGE:
            return MetricType.GAUGE
        if self.usage is ColumnUsage.COUNTER:
            return MetricType.COUNTER
        return None


@dataclass(frozen=True, slots=True)
class QueryInstance:
    """A named query group: SQL variants plus the shape of the metrics it yields."""

    name: str = ""
    description: str = ""
    queries: tuple[Query, ...] = ()
    columns: tuple[Column, ...] = ()
    enabled: bool = True
    ttl: float | None = None

    @property
    def label_columns(self) -> tuple[str, ...]:
        return tuple(col.name for col in self.columns if col.usage is ColumnUsage.LABEL)

    @property
    def value_columns(self) -> tuple[str, ...]:
        return tuple(col.name for col in self.columns if col.metric_type is not None)

    def column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None


@dataclass(frozen=True, slots=True)
class MetricObservation:
    """A single sample ready for exposition."""

    name: str
    documentation: str
    label_names: tuple[str, ...]
    label_values: tuple[str, ...]
    value: float
    type: MetricType = MetricType.GAUGE

    @property
    def labels(self) -> dict[str, str]:
        return dict(zip(self.label_names, self.label_values))


@dataclass(frozen=True, slots=True)
class ServerInfo:
    """Facts about the connected server used to pick query variants."""

    version: tuple[int, int, int]
    in_recovery: bool = False
    raw_version: str = field(default="", compare=False)

    @property
    def role(self) -> DbRole:
        return DbRole.STANDBY if self.in_recovery else DbRole.PRIMARY


__all__ = [
    "Column",
    "ColumnUsage",
    "DbRole",
    "MetricObservation",
    "MetricType",
    "Query",
    "QueryInstance",
    "ServerInfo",
]

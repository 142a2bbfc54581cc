"""Translate SQL query groups into Prometheus samples for PostgreSQL and openGauss."""

from __future__ import annotations

from .cache import CacheEntry, MetricCache
from .coercion import ValueKind, classify, to_label_string, to_numeric
from .errors import (
    ConfigError,
    ExporterError,
    InvalidConnectionString,
    NotConnectedError,
    QueryExecutionError,
    QueryTimeout,
    RowConversionError,
)
from .fingerprint import parse_fingerprint
from .models import Column, ColumnUsage, DbRole, MetricObservation, MetricType, Query, QueryInstance, ServerInfo
from .server import QueryOutcome, QueryStatus, ScrapeResult, Server

__version__ = "0.1.0"

__all__ = [
    "CacheEntry",
    "Column",
    "ColumnUsage",
    "ConfigError",
    "DbRole",
    "ExporterError",
    "InvalidConnectionString",
    "MetricCache",
    "MetricObservation",
    "MetricType",
    "NotConnectedError",
    "Query",
    "QueryExecutionError",
    "QueryInstance",
    "QueryOutcome",
    "QueryStatus",
    "QueryTimeout",
    "RowConversionError",
    "ScrapeResult",
    "Server",
    "ServerInfo",
    "ValueKind",
    "__version__",
    "classify",
    "parse_fingerprint",
    "to_label_string",
    "to_numeric",
]

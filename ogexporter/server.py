"""Collection engine turning configured query groups into metric samples."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, TypeVar

import asyncpg

from .cache import CacheEntry, MetricCache
from .coercion import to_label_string, to_numeric
from .defaults import DEFAULT_QUERIES
from .errors import (
    ExporterError,
    NotConnectedError,
    QueryExecutionError,
    QueryTimeout,
    RowConversionError,
)
from .fingerprint import parse_fingerprint
from .models import (
    ColumnUsage,
    DbRole,
    MetricObservation,
    MetricType,
    Query,
    QueryInstance,
    ServerInfo,
)

LOG = logging.getLogger(__name__)

PING_QUERY = "SELECT 1"
VERSION_QUERY = "SELECT version()"
RECOVERY_QUERY = "SELECT pg_is_in_recovery()"
DATABASES_QUERY = """
    SELECT datname
    FROM pg_database
    WHERE datallowconn AND NOT datistemplate
    ORDER BY datname
"""

_T = TypeVar("_T")


class DatabaseHandle(Protocol):
    """Subset of the asyncpg pool API the engine relies on."""

    async def fetch(self, query: str, *args: object) -> Sequence[Any]: ...

    async def fetchval(self, query: str, *args: object) -> Any: ...

    async def close(self) -> None: ...


class QueryStatus(str, Enum):
    """Terminal states of a query group run that return normally."""

    SKIPPED = "skipped"
    DELIVERED = "delivered"
    DELIVERED_WITH_ERRORS = "delivered_with_errors"


@dataclass(frozen=True, slots=True)
class QueryOutcome:
    """Metrics and non-fatal row errors produced by one query group."""

    metrics: tuple[MetricObservation, ...] = ()
    errors: tuple[RowConversionError, ...] = ()
    status: QueryStatus = QueryStatus.DELIVERED
    cached: bool = False


@dataclass(frozen=True, slots=True)
class ScrapeResult:
    """Merged output of every query group in one scrape."""

    metrics: tuple[MetricObservation, ...]
    errors: tuple[RowConversionError, ...]
    failures: Mapping[str, ExporterError] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def error_counts(self) -> dict[str, int]:
        """Fatal failures plus row errors, keyed by query group."""

        counts: dict[str, int] = {name: 1 for name in self.failures}
        for error in self.errors:
            counts[error.group] = counts.get(error.group, 0) + 1
        return counts


def _parse_version(value: str) -> tuple[int, int, int]:
    """Parse a dotted string into a comparable tuple."""

    parts = value.strip().split(".")
    ints: list[int] = []
    for chunk in parts[:3]:
        digits = re.match(r"\d+", chunk)
        ints.append(int(digits.group()) if digits else 0)
    while len(ints) < 3:
        ints.append(0)
    return ints[0], ints[1], ints[2]


_VERSION_PATTERNS = (
    re.compile(r"openGauss\s+(\d+(?:\.\d+)*)", re.IGNORECASE),
    re.compile(r"PostgreSQL\s+(\d+(?:\.\d+)*)", re.IGNORECASE),
    re.compile(r"(\d+(?:\.\d+)+)"),
)


def parse_server_version(text: str) -> tuple[int, int, int]:
    """Extract the product version from ``SELECT version()`` output."""

    for pattern in _VERSION_PATTERNS:
        match = pattern.search(text)
        if match:
            return _parse_version(match.group(1))
    return 0, 0, 0


class Server:
    """Runs query groups against one database target and converts their rows.

    The database handle is shared by concurrent query groups; the metric cache
    and the query group map carry their own locks.
    """

    def __init__(
        self,
        dsn: str = "",
        *,
        db: DatabaseHandle | None = None,
        fingerprint: str | None = None,
        namespace: str = "",
        constant_labels: Mapping[str, str] | None = None,
        disable_cache: bool = False,
        cache_ttl: float = 60.0,
        default_timeout: float = 1.0,
        query_instances: Mapping[str, QueryInstance] | None = None,
        server_info: ServerInfo | None = None,
        pool_min_size: int = 1,
        pool_max_size: int = 4,
        connect_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._dsn = dsn
        self._db = db
        self._fingerprint = fingerprint if fingerprint is not None else parse_fingerprint(dsn)
        labels = {"server": self._fingerprint}
        labels.update(constant_labels or {})
        self._label_names = tuple(labels)
        self._label_values = tuple(labels.values())
        self._namespace = namespace
        self._cache = MetricCache(enabled=not disable_cache)
        self._cache_ttl = cache_ttl
        self._default_timeout = default_timeout
        self._info = server_info
        self._pool_min_size = pool_min_size
        self._pool_max_size = pool_max_size
        self._connect_timeout = connect_timeout
        self._clock = clock
        self._mapping_lock = threading.Lock()
        self._generation = 0
        self._info_lock = asyncio.Lock()
        self._query_instances: Mapping[str, QueryInstance] = MappingProxyType(
            dict(DEFAULT_QUERIES if query_instances is None else query_instances)
        )

    @classmethod
    async def connect(cls, dsn: str, **kwargs: Any) -> Server:
        """Build a server for ``dsn`` and open its connection pool.

        The fingerprint is resolved first, so an invalid DSN fails before any
        network traffic.
        """

        server = cls(dsn, **kwargs)
        await server.reconnect()
        return server

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    @property
    def labels(self) -> dict[str, str]:
        """Constant labels attached to every sample."""

        return dict(zip(self._label_names, self._label_values))

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def connected(self) -> bool:
        return self._db is not None

    @property
    def cache(self) -> MetricCache:
        return self._cache

    @property
    def query_instances(self) -> Mapping[str, QueryInstance]:
        """Current read-only snapshot of the query group map."""

        return self._query_instances

    def set_query_instances(self, instances: Mapping[str, QueryInstance]) -> None:
        """Swap in a new query group map and drop results cached for the old one."""

        snapshot = MappingProxyType(dict(instances))
        with self._mapping_lock:
            self._query_instances = snapshot
            self._generation += 1
            self._cache.invalidate()
        LOG.info("Query groups reloaded", extra={"groups": len(snapshot)})

    async def reconnect(self) -> None:
        """Replace the database handle with a fresh pool."""

        await self.close()
        try:
            self._db = await asyncpg.create_pool(
                dsn=self._dsn,
                min_size=self._pool_min_size,
                max_size=self._pool_max_size,
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            raise ExporterError(f"Failed to connect to {self._fingerprint}: {exc}") from exc
        LOG.info("Connected", extra={"server": self._fingerprint})

    async def ping(self) -> None:
        """Check the connection is alive; driver errors propagate unchanged."""

        db = self._require_db()
        await db.fetchval(PING_QUERY)

    async def close(self) -> None:
        """Release the database handle; a no-op when none is held."""

        db, self._db = self._db, None
        self._info = None
        if db is None:
            return
        await db.close()

    async def query_databases(self) -> list[str]:
        """Names of the databases that accept connections."""

        db = self._require_db()
        records = await db.fetch(DATABASES_QUERY)
        return [str(record["datname"]) for record in records]

    async def query_group(self, name: str) -> QueryOutcome:
        """Run the registered query group called ``name``."""

        instance = self.query_instances.get(name)
        if instance is None:
            raise ValueError(f"Query group '{name}' not found.")
        return await self.query_metric(name, instance)

    async def scrape(self) -> ScrapeResult:
        """Run every registered query group concurrently.

        A fatal error in one group is recorded under ``failures`` and does not
        affect the others.
        """

        started = time.perf_counter()
        instances = self.query_instances
        names = tuple(instances)
        results = await asyncio.gather(
            *(self.query_metric(name, instances[name]) for name in names),
            return_exceptions=True,
        )
        metrics: list[MetricObservation] = []
        errors: list[RowConversionError] = []
        failures: dict[str, ExporterError] = {}
        for name, result in zip(names, results):
            if isinstance(result, ExporterError):
                failures[name] = result
                continue
            if isinstance(result, BaseException):
                raise result
            metrics.extend(result.metrics)
            errors.extend(result.errors)
        return ScrapeResult(
            metrics=tuple(metrics),
            errors=tuple(errors),
            failures=failures,
            duration=time.perf_counter() - started,
        )

    async def query_metric(self, name: str, instance: QueryInstance) -> QueryOutcome:
        """Run one query group, honouring the cache.

        Row conversion problems come back in ``QueryOutcome.errors``; timeouts
        and driver failures raise ``QueryTimeout`` / ``QueryExecutionError``.
        """

        generation = self._generation
        if not instance.enabled or not instance.queries:
            LOG.debug("Skipping query group", extra={"group": name})
            return QueryOutcome(status=QueryStatus.SKIPPED)

        ttl = self._cache_ttl if instance.ttl is None else instance.ttl
        entry, hit = self._cache.get(name)
        if hit and entry is not None and ttl > 0 and entry.age(self._clock()) < ttl:
            LOG.debug("Serving query group from cache", extra={"group": name})
            return QueryOutcome(
                metrics=entry.metrics,
                errors=entry.errors,
                status=_status_for(entry.errors),
                cached=True,
            )

        db = self._require_db()
        info = await self._server_info(name, db)
        query = self._select_query(instance, info)
        if query is None:
            LOG.debug(
                "No query variant matches server",
                extra={"group": name, "version": info.version, "role": info.role.value},
            )
            return QueryOutcome(status=QueryStatus.SKIPPED)

        timeout = self._default_timeout if query.timeout is None else query.timeout
        records = await self._execute(name, db.fetch(query.sql), timeout)
        metrics, errors = self._convert(name, instance, records)
        with self._mapping_lock:
            # results from a map that has since been swapped out stay uncached
            if generation == self._generation:
                self._cache.put(name, CacheEntry(metrics=metrics, errors=errors, timestamp=self._clock()))
        if errors:
            LOG.debug("Query group produced row errors", extra={"group": name, "errors": len(errors)})
        return QueryOutcome(metrics=metrics, errors=errors, status=_status_for(errors))

    def _require_db(self) -> DatabaseHandle:
        if self._db is None:
            raise NotConnectedError(f"No connection held for {self._fingerprint}.")
        return self._db

    async def _server_info(self, group: str, db: DatabaseHandle) -> ServerInfo:
        """Detect version and role once per handle.

        Discovery is bounded by ``connect_timeout`` rather than any group's own
        timeout, and concurrent groups share a single round trip.
        """

        if self._info is not None:
            return self._info
        async with self._info_lock:
            if self._info is not None:
                return self._info
            raw = await self._execute(group, db.fetchval(VERSION_QUERY), self._connect_timeout)
            in_recovery = await self._execute(group, db.fetchval(RECOVERY_QUERY), self._connect_timeout)
            info = ServerInfo(
                version=parse_server_version(str(raw or "")),
                in_recovery=bool(in_recovery),
                raw_version=str(raw or ""),
            )
            self._info = info
        LOG.info(
            "Detected server version",
            extra={"server": self._fingerprint, "version": info.version, "role": info.role.value},
        )
        return info

    @staticmethod
    def _select_query(instance: QueryInstance, info: ServerInfo) -> Query | None:
        for query in instance.queries:
            if _parse_version(query.version) > info.version:
                continue
            if query.db_role is not DbRole.ANY and query.db_role is not info.role:
                continue
            return query
        return None

    async def _execute(self, group: str, call: Awaitable[_T], timeout: float) -> _T:
        try:
            if timeout > 0:
                return await asyncio.wait_for(call, timeout)
            return await call
        except asyncio.TimeoutError as exc:
            LOG.warning("Query group timed out", extra={"group": group, "timeout": timeout})
            raise QueryTimeout(group, timeout) from exc
        except Exception as exc:
            LOG.warning("Query group failed", extra={"group": group, "error": str(exc)})
            raise QueryExecutionError(group, str(exc)) from exc

    def _convert(
        self,
        group: str,
        instance: QueryInstance,
        records: Sequence[Any],
    ) -> tuple[tuple[MetricObservation, ...], tuple[RowConversionError, ...]]:
        label_columns = instance.label_columns
        label_names = self._label_names + label_columns
        metrics: list[MetricObservation] = []
        errors: list[RowConversionError] = []
        for record in records:
            columns = tuple(record.keys())
            row_labels: list[str] = []
            for column in label_columns:
                if column not in columns:
                    errors.append(RowConversionError(group, column, None, "missing label column"))
                    break
                text, ok = to_label_string(record[column])
                if not ok:
                    errors.append(RowConversionError(group, column, record[column], "not renderable as a label"))
                    break
                row_labels.append(text)
            else:
                label_values = self._label_values + tuple(row_labels)
                for column in columns:
                    if column in label_columns:
                        continue
                    sample = self._observe(group, instance, column, record[column], label_names, label_values)
                    if isinstance(sample, RowConversionError):
                        errors.append(sample)
                    elif sample is not None:
                        metrics.append(sample)
        return tuple(metrics), tuple(errors)

    def _observe(
        self,
        group: str,
        instance: QueryInstance,
        column: str,
        raw: object,
        label_names: tuple[str, ...],
        label_values: tuple[str, ...],
    ) -> MetricObservation | RowConversionError | None:
        declared = instance.column(column)
        if declared is not None and declared.usage is ColumnUsage.DISCARD:
            return None
        value, ok = to_numeric(raw)
        if not ok:
            return RowConversionError(group, column, raw, "not a number")
        if declared is None:
            return MetricObservation(
                name=self._metric_name(group, column),
                documentation=f"Unknown metric from {group}",
                label_names=label_names,
                label_values=label_values,
                value=value,
                type=MetricType.UNTYPED,
            )
        return MetricObservation(
            name=self._metric_name(group, declared.metric_suffix),
            documentation=declared.description or f"{group} {column}",
            label_names=label_names,
            label_values=label_values,
            value=value,
            type=declared.metric_type or MetricType.UNTYPED,
        )

    def _metric_name(self, group: str, column: str) -> str:
        return "_".join(part for part in (self._namespace, group, column) if part)


def _status_for(errors: Sequence[RowConversionError]) -> QueryStatus:
    return QueryStatus.DELIVERED_WITH_ERRORS if errors else QueryStatus.DELIVERED


__all__ = [
    "DatabaseHandle",
    "QueryOutcome",
    "QueryStatus",
    "ScrapeResult",
    "Server",
    "parse_server_version",
]

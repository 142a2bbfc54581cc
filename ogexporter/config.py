"""Exporter settings and query group file loading."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

import tomllib

from pydantic import BaseModel, Field, ValidationError, field_validator

from .defaults import DEFAULT_QUERIES
from .errors import ConfigError
from .models import Column, ColumnUsage, DbRole, Query, QueryInstance

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "ogexporter" / "config.toml"


class QueryConfig(BaseModel):
    """One SQL variant as written in a query file."""

    sql: str
    version: str = "0.0.0"
    timeout: float | None = None
    db_role: DbRole = DbRole.ANY

    @field_validator("sql")
    @classmethod
    def _require_sql(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("sql must not be empty")
        return value


class ColumnConfig(BaseModel):
    """Column mapping as written in a query file."""

    name: str
    usage: ColumnUsage = ColumnUsage.GAUGE
    description: str = ""
    rename: str | None = None

    @field_validator("usage", mode="before")
    @classmethod
    def _upper_usage(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value


class QueryInstanceConfig(BaseModel):
    """A query group as written in a query file."""

    description: str = ""
    enabled: bool = True
    ttl: float | None = None
    queries: list[QueryConfig] = Field(default_factory=list)
    columns: list[ColumnConfig] = Field(default_factory=list)

    def to_instance(self, name: str) -> QueryInstance:
        return QueryInstance(
            name=name,
            description=self.description,
            queries=tuple(
                Query(sql=q.sql, version=q.version, timeout=q.timeout, db_role=q.db_role) for q in self.queries
            ),
            columns=tuple(
                Column(name=c.name, usage=c.usage, description=c.description, rename=c.rename)
                for c in self.columns
            ),
            enabled=self.enabled,
            ttl=self.ttl,
        )


class ExporterConfig(BaseModel):
    """Shape of the exporter configuration file."""

    dsn: str = "postgresql://localhost:5432/postgres"
    namespace: str = ""
    disable_cache: bool = False
    cache_ttl: float = 60.0
    default_timeout: float = 1.0
    constant_labels: dict[str, str] = Field(default_factory=dict)
    queries_file: Path | None = None
    listen_address: str = "0.0.0.0"
    listen_port: int = 9187
    pool_min_size: int = 1
    pool_max_size: int = 4
    connect_timeout: float = 5.0

    def server_options(self) -> dict[str, object]:
        """Keyword arguments accepted by ``Server``."""

        return {
            "namespace": self.namespace,
            "constant_labels": dict(self.constant_labels),
            "disable_cache": self.disable_cache,
            "cache_ttl": self.cache_ttl,
            "default_timeout": self.default_timeout,
            "pool_min_size": self.pool_min_size,
            "pool_max_size": self.pool_max_size,
            "connect_timeout": self.connect_timeout,
        }


def load_config(path: Path | None = None) -> ExporterConfig:
    """Load configuration from disk; fall back to defaults if missing or unreadable."""

    target = path or CONFIG_FILE
    try:
        with target.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return ExporterConfig()
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config file", extra={"path": str(target), "error": str(exc)})
        return ExporterConfig()
    try:
        return ExporterConfig(**raw)
    except ValidationError as exc:
        LOG.warning("Ignoring invalid config file", extra={"path": str(target), "error": str(exc)})
        return ExporterConfig()


def parse_query_instances(raw: Mapping[str, object]) -> dict[str, QueryInstance]:
    """Validate a decoded query file into query groups."""

    instances: dict[str, QueryInstance] = {}
    for name, body in raw.items():
        if not isinstance(body, dict):
            raise ConfigError(f"Query group '{name}' must be a table.")
        try:
            parsed = QueryInstanceConfig(**body)
        except ValidationError as exc:
            raise ConfigError(f"Invalid query group '{name}': {exc}") from exc
        instances[name] = parsed.to_instance(name)
    return instances


def load_query_instances(
    path: Path | None,
    *,
    base: Mapping[str, QueryInstance] = DEFAULT_QUERIES,
) -> dict[str, QueryInstance]:
    """Merge query groups defined in ``path`` over ``base``.

    Unlike ``load_config`` this raises ``ConfigError``: a broken query file
    should stop a reload rather than silently drop metrics.
    """

    instances = dict(base)
    if path is None:
        return instances
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        raise ConfigError(f"Cannot read query file '{path}': {exc}") from exc
    instances.update(parse_query_instances(raw))
    return instances


__all__ = [
    "CONFIG_FILE",
    "ColumnConfig",
    "ExporterConfig",
    "QueryConfig",
    "QueryInstanceConfig",
    "load_config",
    "load_query_instances",
    "parse_query_instances",
]

"""Tests for the prometheus_client collector adapter."""

from __future__ import annotations

from typing import Any

import pytest
from prometheus_client import CollectorRegistry, generate_latest

from ogexporter.collector import ServerCollector, build_metric_families
from ogexporter.models import Column, ColumnUsage, MetricObservation, MetricType, Query, QueryInstance
from ogexporter.server import Server


class _FakePool:
    def __init__(self, rows: list[dict[str, Any]], *, fail: set[str] | None = None, reachable: bool = True) -> None:
        self.rows = rows
        self.fail = fail or set()
        self.reachable = reachable
        self.closed = False

    async def fetch(self, query: str, *args: object) -> list[dict[str, Any]]:
        for marker in self.fail:
            if marker in query:
                raise RuntimeError(f"{marker} failed")
        return list(self.rows)

    async def fetchval(self, query: str, *args: object) -> Any:
        if not self.reachable:
            raise OSError("connection refused")
        if "version()" in query:
            return "PostgreSQL 15.4"
        if "pg_is_in_recovery" in query:
            return False
        return 1

    async def close(self) -> None:
        self.closed = True


_GROUPS = {
    "pg_tables": QueryInstance(
        name="pg_tables",
        queries=(Query(sql="SELECT tables"),),
        columns=(
            Column("schema", ColumnUsage.LABEL),
            Column("count", ColumnUsage.GAUGE, "Tables per schema"),
            Column("scans", ColumnUsage.COUNTER, "Sequential scans"),
        ),
    ),
    "pg_broken": QueryInstance(
        name="pg_broken",
        queries=(Query(sql="SELECT broken"),),
        columns=(Column("value"),),
    ),
}


@pytest.fixture
def collector() -> Any:
    pool = _FakePool([{"schema": "public", "count": 3, "scans": 12, "extra": "1.5"}], fail={"broken"})
    server = Server(db=pool, fingerprint="localhost:5432", query_instances=_GROUPS)
    instance = ServerCollector(server)
    yield instance
    instance.shutdown()


def _sample(registry: CollectorRegistry, name: str, labels: dict[str, str]) -> float | None:
    return registry.get_sample_value(name, labels)


def test_collect_exposes_query_groups_and_exporter_metrics(collector: ServerCollector) -> None:
    registry = CollectorRegistry()
    registry.register(collector)
    server_labels = {"server": "localhost:5432"}

    assert _sample(registry, "pg_tables_count", {**server_labels, "schema": "public"}) == 3.0
    assert _sample(registry, "pg_tables_scans_total", {**server_labels, "schema": "public"}) == 12.0
    assert _sample(registry, "pg_tables_extra", {**server_labels, "schema": "public"}) == 1.5
    assert _sample(registry, "pg_up", server_labels) == 1.0
    assert _sample(registry, "pg_exporter_query_errors_total", {**server_labels, "query": "pg_broken"}) >= 1.0
    assert _sample(registry, "pg_exporter_scrapes_total", server_labels) >= 1.0

    text = generate_latest(registry).decode()
    assert "# TYPE pg_tables_count gauge" in text
    assert "# TYPE pg_tables_extra unknown" in text


def test_collect_reports_down_when_ping_fails() -> None:
    pool = _FakePool([], reachable=False)
    server = Server(db=pool, fingerprint="db:5432", query_instances=_GROUPS)
    collector = ServerCollector(server)
    try:
        families = {family.name: family for family in collector.collect()}
    finally:
        collector.shutdown()

    assert families["pg_up"].samples[0].value == 0.0
    assert "pg_tables_count" not in families
    assert pool.closed is True


def test_build_metric_families_groups_by_name() -> None:
    observations = [
        MetricObservation("pg_x", "X", ("server", "db"), ("s", "a"), 1.0, MetricType.GAUGE),
        MetricObservation("pg_y", "Y", ("server", "db"), ("s", "a"), 2.0, MetricType.COUNTER),
        MetricObservation("pg_x", "X", ("server", "db"), ("s", "b"), 3.0, MetricType.GAUGE),
    ]

    families = build_metric_families(observations)

    assert [family.name for family in families] == ["pg_x", "pg_y"]
    assert families[0].type == "gauge"
    assert [sample.value for sample in families[0].samples] == [1.0, 3.0]
    assert families[1].type == "counter"

"""prometheus_client adapter exposing a ``Server`` on the metrics endpoint."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter
from typing import Any, Coroutine, Iterable, Iterator, TypeVar

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, UnknownMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .models import MetricObservation, MetricType
from .server import ScrapeResult, Server

LOG = logging.getLogger(__name__)

_T = TypeVar("_T")


def build_metric_families(observations: Iterable[MetricObservation]) -> list[Metric]:
    """Group samples into metric families, keeping first-seen order."""

    families: dict[str, Metric] = {}
    for obs in observations:
        family = families.get(obs.name)
        if family is None:
            family = _new_family(obs)
            families[obs.name] = family
        family.add_metric(list(obs.label_values), obs.value)  # type: ignore[attr-defined]
    return list(families.values())


def _new_family(obs: MetricObservation) -> Metric:
    labels = list(obs.label_names)
    if obs.type is MetricType.COUNTER:
        return CounterMetricFamily(obs.name, obs.documentation, labels=labels)
    if obs.type is MetricType.GAUGE:
        return GaugeMetricFamily(obs.name, obs.documentation, labels=labels)
    return UnknownMetricFamily(obs.name, obs.documentation, labels=labels)


class ServerCollector(Collector):
    """Runs a scrape of every query group whenever Prometheus collects.

    The server's coroutines run on a private event loop thread, so the
    synchronous HTTP handlers of prometheus_client can call ``collect`` from
    any thread. Connect the server through ``run`` so its pool is bound to
    that loop.
    """

    def __init__(self, server: Server, *, prefix: str = "pg") -> None:
        self._server = server
        self._prefix = prefix
        self._scrapes = 0
        self._error_counts: Counter[str] = Counter()
        self._lock = threading.Lock()
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="ogexporter-collector",
            daemon=True,
        )
        self._loop_thread.start()

    @property
    def server(self) -> Server:
        return self._server

    def run(self, coro: Coroutine[Any, Any, _T]) -> _T:
        """Run a coroutine on the collector loop and wait for its result."""

        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def shutdown(self) -> None:
        """Close the server and stop the background event loop."""

        if not self._loop.is_running():
            return
        try:
            self.run(self._server.close())
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._loop_thread.join(timeout=1)

    def describe(self) -> list[Metric]:
        # Registering must not trigger a scrape of the database.
        return []

    def collect(self) -> Iterator[Metric]:
        result: ScrapeResult | None = None
        try:
            if not self._server.connected:
                self.run(self._server.reconnect())
            self.run(self._server.ping())
            up = 1.0
        except Exception as exc:
            LOG.warning("Database is unreachable", extra={"server": self._server.fingerprint, "error": str(exc)})
            up = 0.0
        if up:
            try:
                result = self.run(self._server.scrape())
            except Exception:
                LOG.exception("Scrape failed", extra={"server": self._server.fingerprint})

        with self._lock:
            self._scrapes += 1
            if result is not None:
                self._error_counts.update(result.error_counts)
                for name, error in result.failures.items():
                    LOG.warning("Query group failed during scrape", extra={"group": name, "error": str(error)})
            scrapes = self._scrapes
            error_counts = dict(self._error_counts)

        if result is not None:
            yield from build_metric_families(result.metrics)

        const_names = list(self._server.labels)
        const_values = list(self._server.labels.values())

        up_family = GaugeMetricFamily(
            f"{self._prefix}_up", "Whether the last scrape could reach the database", labels=const_names
        )
        up_family.add_metric(const_values, up)
        yield up_family

        scrapes_family = CounterMetricFamily(
            f"{self._prefix}_exporter_scrapes", "Scrapes performed by the exporter", labels=const_names
        )
        scrapes_family.add_metric(const_values, scrapes)
        yield scrapes_family

        errors_family = CounterMetricFamily(
            f"{self._prefix}_exporter_query_errors",
            "Failed query groups and unconvertible values, per query group",
            labels=const_names + ["query"],
        )
        for name in sorted(error_counts):
            errors_family.add_metric(const_values + [name], error_counts[name])
        yield errors_family

        duration_family = GaugeMetricFamily(
            f"{self._prefix}_exporter_last_scrape_duration_seconds",
            "Duration of the last scrape of the query groups",
            labels=const_names,
        )
        duration_family.add_metric(const_values, result.duration if result is not None else 0.0)
        yield duration_family


__all__ = ["ServerCollector", "build_metric_families"]

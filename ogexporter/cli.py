"""Command line entry point serving the metrics endpoint."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from pathlib import Path
from typing import Sequence

from prometheus_client import REGISTRY, start_http_server

from .collector import ServerCollector
from .config import ExporterConfig, load_config, load_query_instances
from .errors import ConfigError, ExporterError, InvalidConnectionString
from .server import Server

LOG = logging.getLogger(__name__)

DSN_ENV = "DATA_SOURCE_NAME"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ogexporter", description=__doc__)
    parser.add_argument("--config", type=Path, help="Path to the exporter TOML config")
    parser.add_argument("--dsn", help=f"Connection string (defaults to ${DSN_ENV})")
    parser.add_argument("--queries", type=Path, help="TOML file with extra query groups")
    parser.add_argument("--listen-address", help="Address for the metrics endpoint")
    parser.add_argument("--listen-port", type=int, help="Port for the metrics endpoint")
    parser.add_argument("--namespace", help="Prefix for query group metric names")
    parser.add_argument("--disable-cache", action="store_true", default=None, help="Query on every scrape")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    return parser


def resolve_config(args: argparse.Namespace) -> ExporterConfig:
    """Layer command line flags and the environment over the config file."""

    config = load_config(args.config)
    updates: dict[str, object] = {}
    dsn = args.dsn or os.environ.get(DSN_ENV)
    if dsn:
        updates["dsn"] = dsn
    if args.queries is not None:
        updates["queries_file"] = args.queries
    if args.listen_address:
        updates["listen_address"] = args.listen_address
    if args.listen_port is not None:
        updates["listen_port"] = args.listen_port
    if args.namespace is not None:
        updates["namespace"] = args.namespace
    if args.disable_cache is not None:
        updates["disable_cache"] = args.disable_cache
    return config.model_copy(update=updates)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = resolve_config(args)
    try:
        instances = load_query_instances(config.queries_file)
        server = Server(config.dsn, query_instances=instances, **config.server_options())
    except (ConfigError, InvalidConnectionString) as exc:
        LOG.error("Cannot start exporter: %s", exc)
        return 2

    collector = ServerCollector(server)
    try:
        collector.run(server.reconnect())
    except ExporterError as exc:
        LOG.warning("Initial connection failed, retrying on next scrape: %s", exc)

    def _reload(signum: int, frame: object) -> None:
        try:
            server.set_query_instances(load_query_instances(config.queries_file))
        except ConfigError as exc:
            LOG.error("Keeping previous query groups: %s", exc)

    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _reload)

    REGISTRY.register(collector)
    start_http_server(config.listen_port, addr=config.listen_address)
    LOG.info(
        "Serving metrics",
        extra={"server": server.fingerprint, "address": config.listen_address, "port": config.listen_port},
    )
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        collector.shutdown()
    return 0


__all__ = ["build_parser", "main", "resolve_config"]

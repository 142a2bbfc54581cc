"""Built-in query groups shipped with the exporter."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from .models import Column, ColumnUsage, DbRole, Query, QueryInstance

_LOCK_MODES = (
    "AccessShareLock",
    "RowShareLock",
    "RowExclusiveLock",
    "ShareUpdateExclusiveLock",
    "ShareLock",
    "ShareRowExclusiveLock",
    "ExclusiveLock",
    "AccessExclusiveLock",
)

PG_LOCK = QueryInstance(
    name="pg_lock",
    description="Lock counts per database and lock mode",
    queries=(
        Query(
            sql=f"""
                SELECT datname, mode, coalesce(count, 0) AS count
                FROM (
                    SELECT d.oid AS database, d.datname, l.mode
                    FROM pg_database d,
                         unnest(ARRAY[{", ".join(f"'{mode}'" for mode in _LOCK_MODES)}]) l(mode)
                    WHERE d.datname NOT IN ('template0', 'template1')
                ) base
                LEFT JOIN (
                    SELECT database, mode, count(1) AS count
                    FROM pg_locks
                    WHERE database IS NOT NULL
                    GROUP BY database, mode
                ) cnt USING (database, mode)
            """,
            timeout=1.0,
        ),
    ),
    columns=(
        Column("datname", ColumnUsage.LABEL, "Name of the database"),
        Column("mode", ColumnUsage.LABEL, "Lock mode"),
        Column("count", ColumnUsage.GAUGE, "Number of locks"),
    ),
)

PG_DATABASE = QueryInstance(
    name="pg_database",
    description="Size and connection limits per database",
    queries=(
        Query(
            sql="""
                SELECT datname,
                       pg_database_size(datname) AS size_bytes,
                       datconnlimit AS conn_limit
                FROM pg_database
                WHERE datallowconn AND NOT datistemplate
            """,
            timeout=1.0,
        ),
    ),
    columns=(
        Column("datname", ColumnUsage.LABEL, "Name of the database"),
        Column("size_bytes", ColumnUsage.GAUGE, "Disk space used by the database"),
        Column("conn_limit", ColumnUsage.GAUGE, "Connection limit, -1 for no limit"),
    ),
    ttl=300,
)

PG_STAT_ACTIVITY = QueryInstance(
    name="pg_stat_activity",
    description="Backends per database and state",
    queries=(
        Query(
            sql="""
                SELECT datname, state, count(*) AS count,
                       coalesce(max(extract(epoch FROM now() - xact_start)), 0) AS max_tx_duration
                FROM pg_stat_activity
                WHERE datname IS NOT NULL
                GROUP BY datname, state
            """,
            timeout=1.0,
        ),
    ),
    columns=(
        Column("datname", ColumnUsage.LABEL, "Name of the database"),
        Column("state", ColumnUsage.LABEL, "Backend state"),
        Column("count", ColumnUsage.GAUGE, "Number of backends in this state"),
        Column("max_tx_duration", ColumnUsage.GAUGE, "Longest running transaction in seconds"),
    ),
)

PG_STAT_DATABASE = QueryInstance(
    name="pg_stat_database",
    description="Cumulative statistics per database",
    queries=(
        Query(
            sql="""
                SELECT datname, xact_commit, xact_rollback, blks_read, blks_hit,
                       tup_returned, tup_fetched, deadlocks, stats_reset
                FROM pg_stat_database
                WHERE datname IS NOT NULL
            """,
            timeout=1.0,
        ),
    ),
    columns=(
        Column("datname", ColumnUsage.LABEL, "Name of the database"),
        Column("xact_commit", ColumnUsage.COUNTER, "Transactions committed"),
        Column("xact_rollback", ColumnUsage.COUNTER, "Transactions rolled back"),
        Column("blks_read", ColumnUsage.COUNTER, "Disk blocks read"),
        Column("blks_hit", ColumnUsage.COUNTER, "Buffer cache hits"),
        Column("tup_returned", ColumnUsage.COUNTER, "Rows returned by queries"),
        Column("tup_fetched", ColumnUsage.COUNTER, "Rows fetched by queries"),
        Column("deadlocks", ColumnUsage.COUNTER, "Deadlocks detected"),
        Column("stats_reset", ColumnUsage.GAUGE, "Time statistics were last reset"),
    ),
)

PG_REPLICATION_LAG = QueryInstance(
    name="pg_replication",
    description="Replay lag observed on a standby",
    queries=(
        Query(
            sql="""
                SELECT coalesce(extract(epoch FROM now() - pg_last_xact_replay_timestamp()), 0) AS lag
            """,
            version="9.1.0",
            timeout=1.0,
            db_role=DbRole.STANDBY,
        ),
    ),
    columns=(Column("lag", ColumnUsage.GAUGE, "Replication lag behind the primary in seconds"),),
)

DEFAULT_QUERIES: Mapping[str, QueryInstance] = MappingProxyType(
    {
        instance.name: instance
        for instance in (PG_LOCK, PG_DATABASE, PG_STAT_ACTIVITY, PG_STAT_DATABASE, PG_REPLICATION_LAG)
    }
)


__all__ = ["DEFAULT_QUERIES", "PG_LOCK"]

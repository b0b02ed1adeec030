import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from psycopg import sql

from . import settings
from .errors import CatalogQueryError, ValidationError
from .health import (
    MaintenanceStatus,
    average_bloat,
    classify_maintenance,
    estimate_bloat_ratio,
    format_percent,
    format_uptime,
)
from .models import TableIdentity

logger = logging.getLogger("pg-console.catalog")


def _all(session, operation: str, query: Any, params: Any = None) -> list[dict[str, Any]]:
    return session.fetch_all(operation, query, params, error=CatalogQueryError)


def _one(session, operation: str, query: Any, params: Any = None) -> dict[str, Any]:
    return session.fetch_one(operation, query, params, error=CatalogQueryError) or {}


def _count(row: dict[str, Any], key: str = "count") -> int:
    value = row.get(key)
    return int(value) if value is not None else 0


def _as_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return "Never"


def list_databases(session, admin_database: str | None = None) -> list[str]:
    """Non-template databases, without the administrative database, ascending."""
    admin = admin_database or settings.ADMIN_DATABASE
    rows = _all(
        session,
        "list_databases",
        """
        select datname
        from pg_database
        where datistemplate = false
          and datname <> %(admin)s
        order by datname
        """,
        {"admin": admin},
    )
    return [row["datname"] for row in rows if row["datname"] != admin]


def list_tables(session, schema: str = settings.DEFAULT_SCHEMA) -> list[str]:
    rows = _all(
        session,
        "list_tables",
        """
        select table_name
        from information_schema.tables
        where table_schema = %(schema)s
          and table_type = 'BASE TABLE'
        order by table_name
        """,
        {"schema": schema},
    )
    return [row["table_name"] for row in rows]


def require_table(session, name: Any, schema: str = settings.DEFAULT_SCHEMA) -> TableIdentity:
    """Resolve a table name from a request against the live catalog."""
    if not isinstance(name, str) or not name:
        raise ValidationError("tableName is required")
    if name not in list_tables(session, schema):
        raise ValidationError(f"Unknown table '{name}' in schema '{schema}'")
    return TableIdentity(name=name, schema=schema)


def describe_table(session, table: TableIdentity) -> list[dict[str, Any]]:
    return _all(
        session,
        "describe_table",
        """
        select
          column_name,
          data_type,
          is_nullable,
          column_default
        from information_schema.columns
        where table_schema = %(schema)s
          and table_name = %(table)s
        order by ordinal_position
        """,
        {"schema": table.schema, "table": table.name},
    )


def table_columns(session, table: TableIdentity) -> list[str]:
    return [row["column_name"] for row in describe_table(session, table)]


def require_columns(session, table: TableIdentity, names: Iterable[Any]) -> list[str]:
    names = list(names)
    known = set(table_columns(session, table))
    unknown = [n for n in names if not isinstance(n, str) or n not in known]
    if unknown:
        raise ValidationError(f"Unknown column(s) for table '{table.name}': {', '.join(map(str, unknown))}")
    return names


def sample_table_data(session, table: TableIdentity, limit: int | None = None) -> dict[str, Any]:
    """Snapshot of the first rows of a table plus its column order."""
    limit = settings.SAMPLE_ROW_LIMIT if limit is None else limit
    results = session.gather({
        "columns": lambda s: table_columns(s, table),
        "rows": lambda s: _all(
            s,
            "sample_table_data",
            sql.SQL("select * from {} limit %(limit)s").format(table.identifier()),
            {"limit": limit},
        ),
    })
    return {"columns": results["columns"], "rows": results["rows"]}


def table_stats(session, table: TableIdentity) -> dict[str, Any]:
    params = {"schema": table.schema, "table": table.name}
    results = session.gather({
        "row_count": lambda s: _one(
            s, "table_stats.row_count",
            sql.SQL("select count(*) as count from {}").format(table.identifier()),
        ),
        "size": lambda s: _one(
            s, "table_stats.size",
            """
            select pg_size_pretty(pg_total_relation_size(format('%%I.%%I', %(schema)s::text, %(table)s::text)::regclass)) as size
            """,
            params,
        ),
        "last_analyzed": lambda s: _one(
            s, "table_stats.last_analyzed",
            """
            select last_analyze
            from pg_stat_user_tables
            where schemaname = %(schema)s
              and relname = %(table)s
            """,
            params,
        ),
        "index_count": lambda s: _one(
            s, "table_stats.index_count",
            """
            select count(*) as count
            from pg_indexes
            where schemaname = %(schema)s
              and tablename = %(table)s
            """,
            params,
        ),
        "columns": lambda s: _one(
            s, "table_stats.columns",
            """
            select
              count(*) as column_count,
              count(*) filter (where is_nullable = 'YES') as nullable_count,
              count(*) filter (where column_default is not null) as default_count
            from information_schema.columns
            where table_schema = %(schema)s
              and table_name = %(table)s
            """,
            params,
        ),
        "keys": lambda s: _one(
            s, "table_stats.keys",
            """
            select
              count(*) filter (where constraint_type = 'PRIMARY KEY') as pk_count,
              count(*) filter (where constraint_type = 'FOREIGN KEY') as fk_count
            from information_schema.table_constraints
            where table_schema = %(schema)s
              and table_name = %(table)s
            """,
            params,
        ),
    })

    index_count = _count(results["index_count"])
    columns = results["columns"]
    keys = results["keys"]
    return {
        "rowCount": _count(results["row_count"]),
        "size": results["size"].get("size"),
        "lastAnalyzed": _as_date(results["last_analyzed"].get("last_analyze")),
        "indexCount": index_count,
        "tableType": "BASE TABLE",
        "hasIndexes": index_count > 0,
        "hasPrimaryKey": _count(keys, "pk_count") > 0,
        "hasForeignKeys": _count(keys, "fk_count") > 0,
        "hasNullableColumns": _count(columns, "nullable_count") > 0,
        "columnCount": _count(columns, "column_count"),
    }


# --- Health snapshots -------------------------------------------------------


@dataclass
class ServerHealthReport:
    version: str | None
    uptime: timedelta | None
    start_time: datetime | None
    server_process_id: int | None
    database_count: int
    total_tables: int
    active_connections: int
    idle_connections: int
    active_transactions: int
    waiting_queries: int
    size: str | None
    max_connections: int | None
    data_directory: str | None
    config_file: str | None
    hba_file: str | None
    ident_file: str | None
    cache_hit_ratio: float | None
    transactions_per_sec: float | None
    deadlocks: int
    temp_file_usage: str | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "uptime": format_uptime(self.uptime),
            "databases": self.database_count,
            "totalTables": self.total_tables,
            "activeConnections": self.active_connections,
            "size": self.size,
            "maxConnections": self.max_connections,
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "serverProcessId": self.server_process_id,
            "dataDirectory": self.data_directory,
            "configFile": self.config_file,
            "hbaFile": self.hba_file,
            "identFile": self.ident_file,
            "cacheHitRatio": format_percent(self.cache_hit_ratio),
            "transactionsPerSec": round(self.transactions_per_sec) if self.transactions_per_sec is not None else 0,
            "idleConnections": self.idle_connections,
            "activeTransactions": self.active_transactions,
            "waitingQueries": self.waiting_queries,
            "deadlocks": self.deadlocks,
            "tempFileUsage": self.temp_file_usage,
        }


_SERVER_SETTINGS = ("max_connections", "data_directory", "config_file", "hba_file", "ident_file")


def server_health(session) -> ServerHealthReport:
    """
    Point-in-time server counters. The sub-queries run concurrently and the
    report is only assembled once all of them have succeeded.

    Settings that the connected role may not read (data_directory and the
    config file paths for non-superusers) come back as None.
    """
    results = session.gather({
        "server": lambda s: _one(
            s, "server_health.server",
            """
            select
              version() as version,
              pg_postmaster_start_time() as start_time,
              date_trunc('second', current_timestamp - pg_postmaster_start_time()) as uptime,
              pg_backend_pid() as pid
            """,
        ),
        "databases": lambda s: _one(
            s, "server_health.databases",
            "select count(*) as count from pg_database where datistemplate = false",
        ),
        "tables": lambda s: _one(
            s, "server_health.tables",
            """
            select count(*) as count
            from information_schema.tables
            where table_schema = %(schema)s
              and table_type = 'BASE TABLE'
            """,
            {"schema": settings.DEFAULT_SCHEMA},
        ),
        "activity": lambda s: _one(
            s, "server_health.activity",
            """
            select
              count(*) filter (where state = 'active') as active,
              count(*) filter (where state = 'idle') as idle,
              count(*) filter (where state = 'active' and xact_start is not null) as active_transactions,
              count(*) filter (where wait_event_type is not null) as waiting
            from pg_stat_activity
            """,
        ),
        "size": lambda s: _one(
            s, "server_health.size",
            """
            select pg_size_pretty(sum(pg_database_size(datname))::bigint) as size
            from pg_database
            where has_database_privilege(datname, 'CONNECT')
            """,
        ),
        "settings": lambda s: _all(
            s, "server_health.settings",
            "select name, setting from pg_settings where name = any(%(names)s)",
            {"names": list(_SERVER_SETTINGS)},
        ),
        "cache": lambda s: _one(
            s, "server_health.cache",
            """
            select round(100 * sum(blks_hit) / nullif(sum(blks_hit) + sum(blks_read), 0), 2) as cache_hit_ratio
            from pg_stat_database
            """,
        ),
        "throughput": lambda s: _one(
            s, "server_health.throughput",
            """
            select sum(xact_commit + xact_rollback)
                   / nullif(extract(epoch from current_timestamp - pg_postmaster_start_time()), 0) as tps
            from pg_stat_database
            """,
        ),
        "deadlocks": lambda s: _one(
            s, "server_health.deadlocks",
            "select deadlocks from pg_stat_database where datname = current_database()",
        ),
        "temp_files": lambda s: _one(
            s, "server_health.temp_files",
            "select pg_size_pretty(sum(temp_bytes)::bigint) as size from pg_stat_database",
        ),
    })

    server = results["server"]
    activity = results["activity"]
    conf = {row["name"]: row["setting"] for row in results["settings"]}
    max_connections = conf.get("max_connections")
    cache_hit = results["cache"].get("cache_hit_ratio")
    tps = results["throughput"].get("tps")

    return ServerHealthReport(
        version=server.get("version"),
        uptime=server.get("uptime"),
        start_time=server.get("start_time"),
        server_process_id=server.get("pid"),
        database_count=_count(results["databases"]),
        total_tables=_count(results["tables"]),
        active_connections=_count(activity, "active"),
        idle_connections=_count(activity, "idle"),
        active_transactions=_count(activity, "active_transactions"),
        waiting_queries=_count(activity, "waiting"),
        size=results["size"].get("size"),
        max_connections=int(max_connections) if max_connections is not None else None,
        data_directory=conf.get("data_directory"),
        config_file=conf.get("config_file"),
        hba_file=conf.get("hba_file"),
        ident_file=conf.get("ident_file"),
        cache_hit_ratio=float(cache_hit) if cache_hit is not None else None,
        transactions_per_sec=float(tps) if tps is not None else None,
        deadlocks=_count(results["deadlocks"], "deadlocks"),
        temp_file_usage=results["temp_files"].get("size"),
    )


@dataclass
class DatabaseHealthReport:
    name: str | None
    table_count: int
    size: str | None
    owner: str | None
    encoding: str | None
    collation: str | None
    ctype: str | None
    tablespace: str | None
    last_vacuum: datetime | None
    last_analyze: datetime | None
    cache_hit_ratio: float | None
    index_usage_ratio: float | None
    deadlocks: int
    conflict_rate: float | None
    bloat_percentage: float | None
    frozen_xid_age: int | None
    extensions: list[str] = field(default_factory=list)

    @property
    def maintenance_status(self) -> MaintenanceStatus:
        return classify_maintenance(self.last_vacuum, self.last_analyze)

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tableCount": self.table_count,
            "size": self.size,
            "owner": self.owner,
            "encoding": self.encoding,
            "collation": self.collation,
            "ctype": self.ctype,
            "tablespaceLocation": self.tablespace,
            "lastVacuum": _as_date(self.last_vacuum),
            "lastAnalyze": _as_date(self.last_analyze),
            "cacheHitRatio": format_percent(self.cache_hit_ratio),
            "indexUsage": format_percent(self.index_usage_ratio),
            "deadlocks": self.deadlocks,
            "conflictRate": format_percent(self.conflict_rate, missing="0%"),
            "bloatPercentage": self.bloat_percentage,
            "frozenXidAge": self.frozen_xid_age,
            "extensions": list(self.extensions),
            "maintenanceStatus": self.maintenance_status.to_payload(),
        }


def bloat_inputs(session, schema: str = settings.DEFAULT_SCHEMA) -> list[dict[str, Any]]:
    """Per-table statistics feeding the bloat estimate."""
    return _all(
        session,
        "bloat_inputs",
        """
        select
          c.relname as table_name,
          c.reltuples::float8 as reltuples,
          c.relpages::bigint * current_setting('block_size')::bigint as data_length,
          count(a.attnum) as column_count,
          coalesce(max(s.null_frac), 0) > 0 as has_nulls,
          coalesce(sum(s.avg_width), 0)::float8 as avg_row_width
        from pg_class c
        join pg_namespace n on n.oid = c.relnamespace
        join pg_attribute a on a.attrelid = c.oid and a.attnum > 0 and not a.attisdropped
        left join pg_stats s
          on s.schemaname = n.nspname
         and s.tablename = c.relname
         and s.attname = a.attname
         and not s.inherited
        where c.relkind = 'r'
          and n.nspname = %(schema)s
        group by c.relname, c.reltuples, c.relpages
        order by c.relname
        """,
        {"schema": schema},
    )


def bloat_ratios(rows: Iterable[dict[str, Any]]) -> dict[str, float | None]:
    return {
        row["table_name"]: estimate_bloat_ratio(
            row.get("data_length"),
            row.get("reltuples"),
            int(row.get("column_count") or 0),
            bool(row.get("has_nulls")),
            float(row.get("avg_row_width") or 0),
        )
        for row in rows
    }


def scan_counts(session, schema: str = settings.DEFAULT_SCHEMA) -> dict[str, dict[str, int]]:
    rows = _all(
        session,
        "scan_counts",
        """
        select
          relname as table_name,
          coalesce(idx_scan, 0) as idx_scan,
          coalesce(seq_scan, 0) as seq_scan
        from pg_stat_user_tables
        where schemaname = %(schema)s
        """,
        {"schema": schema},
    )
    return {row["table_name"]: {"idx_scan": row["idx_scan"], "seq_scan": row["seq_scan"]} for row in rows}


def unused_indexes(
    session,
    schema: str = settings.DEFAULT_SCHEMA,
    exclude_constraint_indexes: bool | None = None,
) -> list[dict[str, Any]]:
    """Indexes with zero recorded scans since statistics were last reset."""
    if exclude_constraint_indexes is None:
        exclude_constraint_indexes = settings.REINDEX_SKIP_CONSTRAINT_INDEXES
    return _all(
        session,
        "unused_indexes",
        """
        select
          s.relname as table_name,
          s.indexrelname as index_name,
          s.idx_scan
        from pg_stat_user_indexes s
        where s.schemaname = %(schema)s
          and s.idx_scan = 0
          and (
            not %(exclude)s::boolean
            or not exists (select 1 from pg_constraint con where con.conindid = s.indexrelid)
          )
        order by s.relname, s.indexrelname
        """,
        {"schema": schema, "exclude": exclude_constraint_indexes},
    )


def database_health(session, schema: str = settings.DEFAULT_SCHEMA) -> DatabaseHealthReport:
    """Health snapshot of the connected database; all-or-nothing like server_health."""
    params = {"schema": schema}
    results = session.gather({
        "identity": lambda s: _one(
            s, "database_health.identity",
            """
            select
              d.datname as name,
              pg_size_pretty(pg_database_size(d.datname)) as size,
              pg_catalog.pg_get_userbyid(d.datdba) as owner,
              pg_encoding_to_char(d.encoding) as encoding,
              d.datcollate as collation,
              d.datctype as ctype,
              t.spcname as tablespace,
              age(d.datfrozenxid) as frozen_xid_age
            from pg_database d
            join pg_tablespace t on t.oid = d.dattablespace
            where d.datname = current_database()
            """,
        ),
        "tables": lambda s: _one(
            s, "database_health.tables",
            """
            select count(*) as count
            from information_schema.tables
            where table_schema = %(schema)s
              and table_type = 'BASE TABLE'
            """,
            params,
        ),
        "maintenance": lambda s: _one(
            s, "database_health.maintenance",
            """
            select
              max(last_vacuum) as last_vacuum,
              max(last_analyze) as last_analyze
            from pg_stat_all_tables
            where schemaname = %(schema)s
            """,
            params,
        ),
        "cache": lambda s: _one(
            s, "database_health.cache",
            """
            select round(100 * sum(blks_hit) / nullif(sum(blks_hit) + sum(blks_read), 0), 2) as cache_hit_ratio
            from pg_stat_database
            where datname = current_database()
            """,
        ),
        "index_usage": lambda s: _one(
            s, "database_health.index_usage",
            """
            select round(100 * sum(idx_scan) / nullif(sum(idx_scan) + sum(seq_scan), 0), 2) as index_usage
            from pg_stat_all_tables
            where schemaname = %(schema)s
            """,
            params,
        ),
        "conflicts": lambda s: _one(
            s, "database_health.conflicts",
            """
            select
              deadlocks,
              round(100.0 * conflicts / nullif(conflicts + xact_commit + xact_rollback, 0), 4) as conflict_rate
            from pg_stat_database
            where datname = current_database()
            """,
        ),
        "extensions": lambda s: _all(
            s, "database_health.extensions",
            "select extname from pg_extension order by extname",
        ),
        "bloat": lambda s: bloat_inputs(s, schema),
    })

    identity = results["identity"]
    maintenance = results["maintenance"]
    conflicts = results["conflicts"]
    cache_hit = results["cache"].get("cache_hit_ratio")
    index_usage = results["index_usage"].get("index_usage")
    conflict_rate = conflicts.get("conflict_rate")
    frozen_age = identity.get("frozen_xid_age")

    return DatabaseHealthReport(
        name=identity.get("name"),
        table_count=_count(results["tables"]),
        size=identity.get("size"),
        owner=identity.get("owner"),
        encoding=identity.get("encoding"),
        collation=identity.get("collation"),
        ctype=identity.get("ctype"),
        tablespace=identity.get("tablespace"),
        last_vacuum=maintenance.get("last_vacuum"),
        last_analyze=maintenance.get("last_analyze"),
        cache_hit_ratio=float(cache_hit) if cache_hit is not None else None,
        index_usage_ratio=float(index_usage) if index_usage is not None else None,
        deadlocks=_count(conflicts, "deadlocks"),
        conflict_rate=float(conflict_rate) if conflict_rate is not None else None,
        bloat_percentage=average_bloat(bloat_ratios(results["bloat"]).values()),
        frozen_xid_age=int(frozen_age) if frozen_age is not None else None,
        extensions=[row["extname"] for row in results["extensions"]],
    )

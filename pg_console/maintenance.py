"""
Automatic maintenance ("magic maintenance") for one database.

A run discovers every table in the schema, samples its health once, and
then executes a fixed sequence: VACUUM ANALYZE on every table, VACUUM FULL
on the tables whose estimated bloat crosses the threshold, REINDEX on the
indexes that were never scanned, and a final database-wide ANALYZE.

The first failing statement stops the run. Work already done stays done;
every statement is its own transaction.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from psycopg import sql

from . import catalog, settings
from .errors import PlanningError, StatementError
from .health import is_bloated
from .models import TableIdentity

logger = logging.getLogger("pg-console.maintenance")

ALL_TABLES = "ALL"


@dataclass(frozen=True)
class TableHealthSample:
    table: TableIdentity
    bloat_ratio: float | None
    index_scan_count: int = 0
    sequential_scan_count: int = 0
    unused_indexes: tuple[str, ...] = ()


@dataclass(frozen=True)
class MaintenancePlan:
    discovered: tuple[TableIdentity, ...]
    tables_for_light_pass: tuple[TableIdentity, ...]
    tables_for_full_rewrite: tuple[TableIdentity, ...]
    indexes_to_rebuild: tuple[tuple[TableIdentity, str], ...]
    bloat_ratios: dict[TableIdentity, float | None] = field(default_factory=dict, compare=False)


@dataclass
class MaintenanceResult:
    tables_processed: int = 0
    bloated_tables_fixed: int = 0
    indexes_rebuilt: int = 0
    success: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "details": {
                "tablesProcessed": self.tables_processed,
                "bloatedTablesFixed": self.bloated_tables_fixed,
                "indexesRebuilt": self.indexes_rebuilt,
            },
        }


def discover(session, schema: str = settings.DEFAULT_SCHEMA) -> list[TableIdentity]:
    return [TableIdentity(name=name, schema=schema) for name in catalog.list_tables(session, schema)]


def classify(session, tables: Iterable[TableIdentity], schema: str = settings.DEFAULT_SCHEMA) -> list[TableHealthSample]:
    """Sample bloat, scan counts and unused indexes for every discovered table."""
    results = session.gather({
        "bloat": lambda s: catalog.bloat_inputs(s, schema),
        "scans": lambda s: catalog.scan_counts(s, schema),
        "unused": lambda s: catalog.unused_indexes(s, schema),
    })

    ratios = catalog.bloat_ratios(results["bloat"])
    scans = results["scans"]
    unused: dict[str, list[str]] = {}
    for row in results["unused"]:
        unused.setdefault(row["table_name"], []).append(row["index_name"])

    samples = []
    for table in tables:
        counts = scans.get(table.name, {})
        samples.append(TableHealthSample(
            table=table,
            bloat_ratio=ratios.get(table.name),
            index_scan_count=int(counts.get("idx_scan") or 0),
            sequential_scan_count=int(counts.get("seq_scan") or 0),
            unused_indexes=tuple(unused.get(table.name, ())),
        ))
    return samples


def build_plan(samples: Iterable[TableHealthSample], threshold: float | None = None) -> MaintenancePlan:
    samples = list(samples)
    discovered = tuple(s.table for s in samples)
    full_rewrite = tuple(s.table for s in samples if is_bloated(s.bloat_ratio, threshold))
    light_only = tuple(t for t in discovered if t not in full_rewrite)
    indexes = tuple((s.table, index) for s in samples for index in s.unused_indexes)
    return MaintenancePlan(
        discovered=discovered,
        tables_for_light_pass=light_only,
        tables_for_full_rewrite=full_rewrite,
        indexes_to_rebuild=indexes,
        bloat_ratios={s.table: s.bloat_ratio for s in samples},
    )


def _run_step(session, progress: MaintenanceResult, step: str, target: Any, statement: sql.Composable) -> None:
    try:
        session.execute(step, statement)
    except StatementError as e:
        logger.error(f"{step} failed for {target or 'database'}; aborting maintenance run ({progress})")
        raise PlanningError(step, str(target) if target is not None else None, e, progress) from e


def execute_plan(session, plan: MaintenancePlan) -> MaintenanceResult:
    result = MaintenanceResult()

    # The light pass covers every discovered table, bloated or not
    for table in plan.discovered:
        logger.info(f"Running VACUUM ANALYZE for table: {table}")
        _run_step(session, result, "vacuum_analyze", table, sql.SQL("VACUUM ANALYZE {}").format(table.identifier()))
        result.tables_processed += 1

    for table in plan.tables_for_full_rewrite:
        logger.info(f"Running VACUUM FULL for bloated table: {table} (bloat: {plan.bloat_ratios.get(table)}%)")
        _run_step(session, result, "vacuum_full", table, sql.SQL("VACUUM FULL {}").format(table.identifier()))
        result.bloated_tables_fixed += 1

    for table, index in plan.indexes_to_rebuild:
        logger.info(f"Running REINDEX for unused index: {index} on table {table}")
        _run_step(
            session, result, "reindex", f"{table.schema}.{index}",
            sql.SQL("REINDEX INDEX {}").format(sql.Identifier(table.schema, index)),
        )
        result.indexes_rebuilt += 1

    logger.info("Running ANALYZE for the entire database")
    _run_step(session, result, "analyze", None, sql.SQL("ANALYZE"))

    result.success = True
    return result


def run_magic_maintenance(session, schema: str = settings.DEFAULT_SCHEMA) -> MaintenanceResult:
    logger.info(f"Running Magic Maintenance for database: {session.database}")
    started = time.monotonic()

    tables = discover(session, schema)
    plan = build_plan(classify(session, tables, schema))
    logger.info(
        f"Maintenance plan: {len(plan.discovered)} tables, "
        f"{len(plan.tables_for_full_rewrite)} bloated, {len(plan.indexes_to_rebuild)} unused indexes"
    )

    result = execute_plan(session, plan)
    logger.info(f"Magic Maintenance completed successfully in {time.monotonic() - started:.1f}s")
    return result


def run_vacuum_full(session, table_name: str, schema: str = settings.DEFAULT_SCHEMA) -> int:
    """
    Rewrites one table, or every table when `table_name` is "ALL", regardless
    of its estimated bloat, then refreshes statistics.

    Returns:
        Number of tables rewritten.
    """
    if table_name == ALL_TABLES:
        targets = discover(session, schema)
    else:
        targets = [catalog.require_table(session, table_name, schema)]

    progress = MaintenanceResult()
    for table in targets:
        logger.info(f"Running VACUUM FULL for table: {table}")
        _run_step(session, progress, "vacuum_full", table, sql.SQL("VACUUM FULL {}").format(table.identifier()))
        progress.bloated_tables_fixed += 1

    _run_step(session, progress, "analyze", None, sql.SQL("ANALYZE"))
    logger.info(f"VACUUM FULL completed for {'all tables' if table_name == ALL_TABLES else table_name}")
    progress.success = True
    return progress.bloated_tables_fixed

"""
Server-side paging for the data grid.

Grid requests arrive in the grid's own vocabulary: a filter model keyed by
column, a list of sort entries and a [startRow, endRow) window.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from psycopg import sql

from . import catalog, settings
from .models import TableIdentity

logger = logging.getLogger("pg-console.paging")

# matchKind -> (prefix, suffix) wildcards around the escaped value
_LIKE_PATTERNS = {
    "contains": ("%", "%"),
    "startsWith": ("", "%"),
    "endsWith": ("%", ""),
}
_DIRECTIONS = {"asc": sql.SQL("ASC"), "desc": sql.SQL("DESC")}
_OPERATORS = {"AND": sql.SQL(" AND "), "OR": sql.SQL(" OR ")}
_BIGINT_MAX = 2**63 - 1


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _text_condition(column: str, model: dict[str, Any]) -> tuple[sql.Composable, list[Any]] | None:
    if model.get("filterType") != "text":
        return None

    kind = model.get("type")
    value = model.get("filter")
    value = "" if value is None else str(value)
    target = sql.SQL("{}::text").format(sql.Identifier(column))

    if kind == "equals":
        return sql.SQL("lower({}) = lower({})").format(target, sql.Placeholder()), [value]
    if kind in _LIKE_PATTERNS:
        prefix, suffix = _LIKE_PATTERNS[kind]
        return sql.SQL("{} ILIKE {}").format(target, sql.Placeholder()), [f"{prefix}{_escape_like(value)}{suffix}"]
    return None


def _condition(column: str, model: Any) -> tuple[sql.Composable, list[Any]] | None:
    if not isinstance(model, dict):
        return None

    if "condition1" in model or "condition2" in model:
        joiner = _OPERATORS.get(str(model.get("operator", "AND")).upper())
        if joiner is None:
            return None
        parts = [c for c in (_condition(column, model.get("condition1")), _condition(column, model.get("condition2"))) if c]
        if not parts:
            return None
        if len(parts) == 1:
            return parts[0]
        clause = sql.SQL("({})").format(joiner.join(p[0] for p in parts))
        return clause, [v for p in parts for v in p[1]]

    return _text_condition(column, model)


def _as_row_index(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        number = value
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            return None
    # LIMIT and OFFSET are bigint
    if abs(number) > _BIGINT_MAX:
        return None
    return int(number)


def page_bounds(start_row: Any, end_row: Any, default_size: int | None = None) -> tuple[int, int]:
    """Returns (limit, offset) for a grid window."""
    default_size = settings.DEFAULT_PAGE_SIZE if default_size is None else default_size
    start = _as_row_index(start_row)
    end = _as_row_index(end_row)

    limit = default_size if start is None or end is None else min(max(0, end - start), _BIGINT_MAX)
    offset = max(0, start) if start is not None else 0
    return limit, offset


@dataclass
class PageQuery:
    count_query: sql.Composable
    page_query: sql.Composable
    params: list[Any]
    page_params: list[Any]
    columns: list[str] = field(default_factory=list)


def compile_page_query(
    table: TableIdentity,
    filter_model: Any,
    sort_model: Any,
    start_row: Any,
    end_row: Any,
) -> PageQuery:
    """
    Builds the count and page statements for one grid request.

    Unsupported filter kinds are skipped silently. `columns` lists every
    column the statements reference so the caller can check them.
    """
    conditions: list[sql.Composable] = []
    params: list[Any] = []
    columns: list[str] = []

    if isinstance(filter_model, dict):
        for column, model in filter_model.items():
            built = _condition(column, model)
            if built is None:
                continue
            conditions.append(built[0])
            params.extend(built[1])
            columns.append(column)

    orderings: list[sql.Composable] = []
    if isinstance(sort_model, list):
        for entry in sort_model:
            if not isinstance(entry, dict):
                continue
            direction = _DIRECTIONS.get(str(entry.get("sort", "")).lower())
            column = entry.get("colId")
            if direction is None or not column:
                continue
            orderings.append(sql.SQL("{} {}").format(sql.Identifier(column), direction))
            columns.append(column)

    where = sql.SQL(" WHERE {}").format(sql.SQL(" AND ").join(conditions)) if conditions else sql.SQL("")
    order = sql.SQL(" ORDER BY {}").format(sql.SQL(", ").join(orderings)) if orderings else sql.SQL("")
    limit, offset = page_bounds(start_row, end_row)

    count_query = sql.SQL("SELECT COUNT(*) AS total FROM {}{}").format(table.identifier(), where)
    page_query = sql.SQL("SELECT * FROM {}{}{} LIMIT {} OFFSET {}").format(
        table.identifier(), where, order, sql.Placeholder(), sql.Placeholder(),
    )
    return PageQuery(
        count_query=count_query,
        page_query=page_query,
        params=params,
        page_params=params + [limit, offset],
        columns=list(dict.fromkeys(columns)),
    )


def build_page(
    session,
    table_name: str,
    filter_model: Any = None,
    sort_model: Any = None,
    start_row: Any = None,
    end_row: Any = None,
    schema: str = settings.DEFAULT_SCHEMA,
) -> dict[str, Any]:
    """
    Returns one page of rows plus the number of rows matching the filters.

    `lastRow` is the filtered total before paging, which is what the grid
    uses to size its scrollbar.
    """
    table = catalog.require_table(session, table_name, schema)
    query = compile_page_query(table, filter_model, sort_model, start_row, end_row)
    if query.columns:
        catalog.require_columns(session, table, query.columns)

    results = session.gather({
        "count": lambda s: s.fetch_one("page_count", query.count_query, query.params),
        "rows": lambda s: s.fetch_all("page_rows", query.page_query, query.page_params),
    })
    total = (results["count"] or {}).get("total") or 0
    logger.debug(f"Paged {table}: {len(results['rows'])} of {total} rows")
    return {"rows": results["rows"], "lastRow": int(total)}

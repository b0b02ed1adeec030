import logging
from typing import Any

from psycopg import sql

from . import catalog, settings
from .errors import RowNotFoundError, ValidationError

logger = logging.getLogger("pg-console.mutations")


def _require_row_values(row_values: Any) -> dict[str, Any]:
    if not isinstance(row_values, dict) or not row_values:
        raise ValidationError("rowData must be a non-empty object")
    return row_values


def insert_row(session, table_name: str, row_values: dict[str, Any], schema: str = settings.DEFAULT_SCHEMA) -> dict[str, Any]:
    """
    Inserts a row and returns it as stored, including server-side defaults.

    Args:
        table_name: Target table in `schema`.
        row_values: Column name to value, in the order the columns are listed.
    """
    row_values = _require_row_values(row_values)
    table = catalog.require_table(session, table_name, schema)
    columns = catalog.require_columns(session, table, row_values.keys())

    query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
        table.identifier(),
        sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        sql.SQL(", ").join([sql.Placeholder()] * len(columns)),
    )
    logger.info(f"Inserting row into {table} ({len(columns)} columns)")
    return session.fetch_one("insert_row", query, [row_values[c] for c in columns])


def update_row(
    session,
    table_name: str,
    row_values: dict[str, Any],
    primary_key: str,
    schema: str = settings.DEFAULT_SCHEMA,
) -> dict[str, Any]:
    """
    Updates the row identified by `row_values[primary_key]` with the other values.

    The key column itself is never part of the SET list.
    """
    row_values = _require_row_values(row_values)
    if not isinstance(primary_key, str) or not primary_key:
        raise ValidationError("primaryKey is required")
    if primary_key not in row_values:
        raise ValidationError(f"rowData must include the primary key column '{primary_key}'")

    entries = [(column, value) for column, value in row_values.items() if column != primary_key]
    if not entries:
        raise ValidationError("No data to update")

    table = catalog.require_table(session, table_name, schema)
    catalog.require_columns(session, table, list(row_values.keys()))

    set_clause = sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder()) for column, _ in entries
    )
    query = sql.SQL("UPDATE {} SET {} WHERE {} = {} RETURNING *").format(
        table.identifier(), set_clause, sql.Identifier(primary_key), sql.Placeholder(),
    )
    params = [value for _, value in entries] + [row_values[primary_key]]

    logger.info(f"Updating row in {table} where {primary_key} matches ({len(entries)} columns)")
    row = session.fetch_one("update_row", query, params)
    if row is None:
        raise RowNotFoundError("update_row", f"no row in {table.name} with {primary_key} = {row_values[primary_key]!r}")
    return row


def delete_row(
    session,
    table_name: str,
    primary_key: str,
    primary_key_value: Any,
    schema: str = settings.DEFAULT_SCHEMA,
) -> dict[str, Any]:
    if not isinstance(primary_key, str) or not primary_key:
        raise ValidationError("primaryKey is required")
    if primary_key_value is None:
        raise ValidationError("primaryKeyValue is required")

    table = catalog.require_table(session, table_name, schema)
    catalog.require_columns(session, table, [primary_key])

    query = sql.SQL("DELETE FROM {} WHERE {} = {}").format(
        table.identifier(), sql.Identifier(primary_key), sql.Placeholder(),
    )
    deleted = session.execute("delete_row", query, [primary_key_value])
    logger.info(f"Deleted {deleted} row(s) from {table}")
    return {"success": True}

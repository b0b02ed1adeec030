import decimal
import ipaddress
import json
import logging
import math
import threading
import time
import uuid
from datetime import date, datetime, time as dt_time, timedelta
from typing import Any

from fastmcp import FastMCP
from psycopg.types.multirange import Multirange
from psycopg.types.range import Range
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse

from . import settings
from .actions import (
    GetDatabaseInfo,
    GetDatabases,
    GetServerInfo,
    GetTablePage,
    GetTables,
    GetTableStats,
    GetTableStructure,
    RunMagicMaintenance,
    RunVacuumFull,
    dispatch,
    parse_action,
)
from .errors import ConsoleError, ValidationError
from .maintenance import ALL_TABLES
from .models import ConnectionDescriptor

# Configure structured logging
log_level = getattr(logging, settings.LOG_LEVEL, logging.INFO)

logging.basicConfig(
    level=log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    filename=settings.LOG_FILE,
    filemode='a' if settings.LOG_FILE else None
)
logger = logging.getLogger("pg-console")


mcp = FastMCP(name=settings.SERVER_NAME)


def _make_json_serializable(obj: Any) -> Any:
    """Recursively convert objects to JSON-serializable types."""
    if isinstance(obj, dict):
        return {k: _make_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple, Multirange)):
        return [_make_json_serializable(v) for v in obj]
    elif isinstance(obj, (datetime, date, dt_time)):
        return obj.isoformat()
    elif isinstance(obj, timedelta):
        return str(obj)
    elif isinstance(obj, decimal.Decimal):
        return float(obj) if obj.is_finite() else None
    elif isinstance(obj, float) and not math.isfinite(obj):
        return None
    elif isinstance(obj, uuid.UUID):
        return str(obj)
    elif isinstance(obj, (bytes, bytearray, memoryview)):
        return bytes(obj).hex()
    elif isinstance(obj, (ipaddress.IPv4Address, ipaddress.IPv6Address, ipaddress.IPv4Network, ipaddress.IPv6Network, Range)):
        # inet, cidr and range columns render in their text form
        return str(obj)
    return obj


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body must be valid JSON") from e


def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, ConsoleError):
        logger.error(f"API error ({exc.status_code}): {exc}")
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code)
    logger.exception("Unexpected error while handling console request")
    return JSONResponse(
        {"error": "An unexpected error occurred while processing the request."},
        status_code=500,
    )


async def _run(action, descriptor: ConnectionDescriptor) -> JSONResponse:
    # Database work is blocking; keep it off the event loop
    result = await run_in_threadpool(dispatch, action, descriptor)
    return JSONResponse(_make_json_serializable(result))


@mcp.custom_route("/health", methods=["GET"])
async def health(_request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


@mcp.custom_route("/", methods=["GET"])
async def root(_request: Request) -> JSONResponse:
    return JSONResponse({
        "status": "online",
        "message": "PostgreSQL admin console backend is running",
        "endpoints": {
            "actions": "/api/db (POST {action, connectionDetails, ...})",
            "table_data": "/api/table-data (POST {connection, table, startRow, endRow, filterModel, sortModel})",
            "table_stats": "/api/table-stats (POST {connection, table})",
            "mcp": "/mcp (MCP protocol endpoint)",
            "health": "/health",
        },
        "read_only": settings.READ_ONLY,
    })


@mcp.custom_route("/api/db", methods=["POST"])
async def api_db(request: Request) -> JSONResponse:
    try:
        payload = await _read_json(request)
        action = parse_action(payload)
        descriptor = ConnectionDescriptor.from_payload(payload.get("connectionDetails"))
        return await _run(action, descriptor)
    except Exception as e:
        return _error_response(e)


@mcp.custom_route("/api/table-data", methods=["POST"])
async def api_table_data(request: Request) -> JSONResponse:
    try:
        payload = await _read_json(request)
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        action = GetTablePage.from_payload(payload)
        descriptor = ConnectionDescriptor.from_payload(payload.get("connection"))
        return await _run(action, descriptor)
    except Exception as e:
        return _error_response(e)


@mcp.custom_route("/api/table-stats", methods=["POST"])
async def api_table_stats(request: Request) -> JSONResponse:
    try:
        payload = await _read_json(request)
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        action = GetTableStats.from_payload(payload)
        descriptor = ConnectionDescriptor.from_payload(payload.get("connection"))
        return await _run(action, descriptor)
    except Exception as e:
        return _error_response(e)


def _descriptor(host: str, port: int, username: str, password: str, database: str | None) -> ConnectionDescriptor:
    return ConnectionDescriptor.from_payload({
        "host": host,
        "port": port,
        "username": username,
        "password": password,
        "database": database,
    })


@mcp.tool
def console_list_databases(host: str, username: str, password: str = "", port: int = 5432) -> list[str]:
    """
    Lists the databases on a server, excluding templates and the administrative database.

    Args:
        host: Server host name or address.
        username: Role to connect as.
        password: Password for the role.
        port: Server port (default: 5432).
    """
    return dispatch(GetDatabases(), _descriptor(host, port, username, password, None))


@mcp.tool
def console_list_tables(host: str, username: str, database: str, password: str = "", port: int = 5432) -> list[str]:
    """Lists the base tables of the public schema."""
    return dispatch(GetTables(), _descriptor(host, port, username, password, database))


@mcp.tool
def console_describe_table(
    host: str, username: str, database: str, table: str, password: str = "", port: int = 5432
) -> list[dict[str, Any]]:
    """Returns the columns of a table: name, data type, nullability and default."""
    return _make_json_serializable(
        dispatch(GetTableStructure(table_name=table), _descriptor(host, port, username, password, database))
    )


@mcp.tool
def console_server_info(host: str, username: str, database: str, password: str = "", port: int = 5432) -> dict[str, Any]:
    """
    Server health snapshot: version, uptime, connections by state, cache hit
    ratio, transaction rate, deadlocks, temp file usage and config file paths.
    """
    return _make_json_serializable(dispatch(GetServerInfo(), _descriptor(host, port, username, password, database)))


@mcp.tool
def console_database_info(host: str, username: str, database: str, password: str = "", port: int = 5432) -> dict[str, Any]:
    """
    Database health snapshot including bloat percentage, index usage, frozen
    XID age, last vacuum/analyze and a maintenance status badge.
    """
    return _make_json_serializable(dispatch(GetDatabaseInfo(), _descriptor(host, port, username, password, database)))


@mcp.tool
def console_magic_maintenance(host: str, username: str, database: str, password: str = "", port: int = 5432) -> dict[str, Any]:
    """
    Runs automatic maintenance on a database: VACUUM ANALYZE on every table,
    VACUUM FULL on tables with more than the configured bloat, REINDEX on
    never-scanned indexes, then ANALYZE.

    Returns:
        {"success": bool, "details": {"tablesProcessed", "bloatedTablesFixed", "indexesRebuilt"}}
    """
    return dispatch(RunMagicMaintenance(), _descriptor(host, port, username, password, database))


@mcp.tool
def console_vacuum_full(
    host: str, username: str, database: str, table: str = ALL_TABLES, password: str = "", port: int = 5432
) -> dict[str, Any]:
    """
    Runs VACUUM FULL on one table, or on every table when table is "ALL",
    followed by ANALYZE. Takes an exclusive lock on each table while it runs.
    """
    return dispatch(RunVacuumFull(table_name=table), _descriptor(host, port, username, password, database))


def main() -> None:
    transport = settings.TRANSPORT
    host = settings.HOST
    port = settings.PORT

    if transport in {"http", "sse"}:
        logger.info(f"Starting console backend on {host}:{port} ({transport})")
        mcp.run(transport=transport, host=host, port=port)
    elif transport == "stdio":
        # The console's HTTP routes still need a listener alongside stdio
        def run_http_background():
            logger.info(f"Starting background HTTP server for the console on port {port}")
            try:
                logging.getLogger("uvicorn").setLevel(logging.WARNING)
                logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
                mcp.run(transport="http", host=host, port=port, show_banner=False, log_level="error")
            except Exception as e:
                logger.error(f"Background HTTP server failed: {e}")

        http_thread = threading.Thread(target=run_http_background, daemon=True)
        http_thread.start()
        time.sleep(1)

        mcp.run(transport="stdio")
    else:
        raise ValueError(f"Unknown transport: {transport}. Supported transports: http, sse, stdio")


if __name__ == "__main__":
    main()

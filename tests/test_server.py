import json
from decimal import Decimal
from ipaddress import ip_interface

import pytest
from psycopg.types.range import Range

from pg_console import server
from pg_console.actions import GetTablePage, GetTables, GetTableStats, RunVacuumFull
from pg_console.errors import DatabaseConnectionError, PlanningError, RowNotFoundError, ValidationError

CONNECTION = {"host": "db.internal", "port": 5432, "username": "admin", "password": "pw", "database": "shop"}


class FakeRequest:
    def __init__(self, body):
        self._body = body

    async def json(self):
        if isinstance(self._body, str):
            return json.loads(self._body)
        return self._body


def _body(response):
    return json.loads(response.body)


def _tool(tool_obj):
    func = getattr(tool_obj, "fn", getattr(tool_obj, "func", tool_obj))
    assert callable(func), "Could not find underlying function on Tool object."
    return func


@pytest.mark.asyncio
async def test_api_db_dispatches_action(mocker):
    mock_dispatch = mocker.patch("pg_console.server.dispatch", return_value=["customers", "orders"])

    response = await server.api_db(FakeRequest({"action": "getTables", "connectionDetails": CONNECTION}))

    assert response.status_code == 200
    assert _body(response) == ["customers", "orders"]
    action, descriptor = mock_dispatch.call_args.args
    assert action == GetTables()
    assert descriptor.database == "shop"


@pytest.mark.asyncio
async def test_api_db_serializes_driver_types(mocker):
    mocker.patch("pg_console.server.dispatch", return_value={"columns": ["total"], "rows": [{"total": Decimal("2.50")}]})

    response = await server.api_db(FakeRequest({"action": "getTableData", "tableName": "orders", "connectionDetails": CONNECTION}))

    assert _body(response) == {"columns": ["total"], "rows": [{"total": 2.5}]}


@pytest.mark.asyncio
async def test_api_db_invalid_action(mocker):
    mock_dispatch = mocker.patch("pg_console.server.dispatch")

    response = await server.api_db(FakeRequest({"action": "dropEverything", "connectionDetails": CONNECTION}))

    assert response.status_code == 400
    assert _body(response) == {"error": "Invalid action"}
    mock_dispatch.assert_not_called()


@pytest.mark.asyncio
async def test_api_db_requires_connection_details(mocker):
    mocker.patch("pg_console.server.dispatch")
    response = await server.api_db(FakeRequest({"action": "getTables"}))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_api_db_rejects_malformed_json():
    response = await server.api_db(FakeRequest("{not json"))
    assert response.status_code == 400
    assert "JSON" in _body(response)["error"]


@pytest.mark.parametrize(
    "error, status",
    [
        (ValidationError("Unknown table 'x' in schema 'public'"), 400),
        (RowNotFoundError("update_row", "no row in orders with id = 1"), 404),
        (DatabaseConnectionError("Could not connect to db.internal:5432/shop within 5000 ms"), 502),
        (PlanningError("vacuum_full", "public.orders", "lock timeout"), 500),
    ],
)
@pytest.mark.asyncio
async def test_console_errors_map_to_status(mocker, error, status):
    mocker.patch("pg_console.server.dispatch", side_effect=error)

    response = await server.api_db(FakeRequest({"action": "getTables", "connectionDetails": CONNECTION}))

    assert response.status_code == status
    assert _body(response) == {"error": str(error)}


@pytest.mark.asyncio
async def test_unexpected_errors_are_not_leaked(mocker):
    mocker.patch("pg_console.server.dispatch", side_effect=KeyError("internal detail"))

    response = await server.api_db(FakeRequest({"action": "getTables", "connectionDetails": CONNECTION}))

    assert response.status_code == 500
    assert "internal detail" not in _body(response)["error"]


@pytest.mark.asyncio
async def test_table_data_endpoint(mocker):
    mock_dispatch = mocker.patch("pg_console.server.dispatch", return_value={"rows": [], "lastRow": 0})
    payload = {
        "connection": CONNECTION,
        "table": "orders",
        "startRow": 0,
        "endRow": 50,
        "filterModel": {"customer": {"filterType": "text", "type": "contains", "filter": "a"}},
        "sortModel": [{"colId": "id", "sort": "asc"}],
    }

    response = await server.api_table_data(FakeRequest(payload))

    assert _body(response) == {"rows": [], "lastRow": 0}
    action = mock_dispatch.call_args.args[0]
    assert isinstance(action, GetTablePage)
    assert (action.table_name, action.start_row, action.end_row) == ("orders", 0, 50)


@pytest.mark.asyncio
async def test_table_stats_endpoint(mocker):
    mock_dispatch = mocker.patch("pg_console.server.dispatch", return_value={"rowCount": 3})

    response = await server.api_table_stats(FakeRequest({"connection": CONNECTION, "table": "orders"}))

    assert _body(response) == {"rowCount": 3}
    assert mock_dispatch.call_args.args[0] == GetTableStats(table_name="orders")


@pytest.mark.asyncio
async def test_table_data_requires_connection():
    response = await server.api_table_data(FakeRequest({"table": "orders"}))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_health_route():
    response = await server.health(FakeRequest(None))
    assert response.body == b"ok"


def test_vacuum_full_tool_defaults_to_all_tables(mocker):
    mock_dispatch = mocker.patch("pg_console.server.dispatch", return_value={"success": True})

    result = _tool(server.console_vacuum_full)(host="db.internal", username="admin", database="shop")

    assert result == {"success": True}
    assert mock_dispatch.call_args.args[0] == RunVacuumFull(table_name="ALL")


def test_describe_table_tool(mocker):
    mocker.patch("pg_console.server.dispatch", return_value=[{"column_name": "total", "column_default": Decimal("0")}])
    result = _tool(server.console_describe_table)(host="db.internal", username="admin", database="shop", table="orders")
    assert result == [{"column_name": "total", "column_default": 0.0}]


@pytest.mark.asyncio
async def test_table_data_with_network_and_range_columns(mocker):
    mocker.patch(
        "pg_console.server.dispatch",
        return_value={"columns": ["ip", "period"], "rows": [{"ip": ip_interface("10.0.0.1/32"), "period": Range(1, 5)}]},
    )

    response = await server.api_db(FakeRequest({"action": "getTableData", "tableName": "hosts", "connectionDetails": CONNECTION}))

    assert response.status_code == 200
    assert _body(response)["rows"] == [{"ip": "10.0.0.1/32", "period": str(Range(1, 5))}]

from unittest.mock import MagicMock

import psycopg
import pytest
from psycopg_pool import PoolTimeout

from pg_console import actions, gateway, maintenance
from pg_console.actions import GetTables, RunMagicMaintenance
from pg_console.errors import DatabaseConnectionError
from pg_console.models import ConnectionDescriptor

SECRET = "s3cr3t-pa55"
DESCRIPTOR = ConnectionDescriptor(host="db.internal", username="admin", password=SECRET, port=5432, database="shop")


def _messages(mock_logger):
    return [call.args[0] for call in mock_logger.call_args_list]


def test_dispatch_logs_action_without_credentials(mocker):
    mock_info = mocker.patch.object(actions.logger, "info")
    session = MagicMock()
    mocker.patch("pg_console.actions.open_session").return_value.__enter__.return_value = session
    mocker.patch("pg_console.actions.catalog.list_tables", return_value=["orders"])

    assert actions.dispatch(GetTables(), DESCRIPTOR) == ["orders"]

    messages = _messages(mock_info)
    assert "Action: getTables, Database: shop" in messages
    assert all(SECRET not in m for m in messages)


def test_descriptor_repr_hides_password():
    assert SECRET not in repr(DESCRIPTOR)
    assert "db.internal" in repr(DESCRIPTOR)


def test_connection_failure_is_logged_without_password(mocker):
    mock_warning = mocker.patch.object(gateway.logger, "warning")
    mocker.patch("pg_console.gateway.psycopg.connect")
    pool = mocker.patch("pg_console.gateway.ConnectionPool").return_value
    pool.open.side_effect = PoolTimeout("couldn't get a connection after 5.00 sec")

    with pytest.raises(DatabaseConnectionError) as excinfo:
        with gateway.open_session(DESCRIPTOR, timeout_ms=5000):
            pass

    assert SECRET not in str(excinfo.value)
    assert mock_warning.called
    assert all(SECRET not in m for m in _messages(mock_warning))
    pool.close.assert_called_once()


def test_rejected_login_reason_is_logged(mocker):
    mock_warning = mocker.patch.object(gateway.logger, "warning")
    mocker.patch("pg_console.gateway.psycopg.connect").side_effect = psycopg.OperationalError(
        'connection failed: FATAL:  password authentication failed for user "admin"'
    )
    pool_cls = mocker.patch("pg_console.gateway.ConnectionPool")

    with pytest.raises(DatabaseConnectionError):
        with gateway.open_session(DESCRIPTOR):
            pass

    messages = _messages(mock_warning)
    assert any("password authentication failed" in m for m in messages)
    assert all(SECRET not in m for m in messages)
    pool_cls.assert_not_called()


def test_statements_are_logged_at_debug_only(mocker):
    mocker.patch.object(gateway.logger, "isEnabledFor", return_value=True)
    mock_debug = mocker.patch.object(gateway.logger, "debug")
    cur = MagicMock()

    gateway._execute_safe(cur, "select 1", None, "test_connection", Exception)

    cur.execute.assert_called_once_with("select 1", None)
    debug_msg = mock_debug.call_args.args[0]
    assert "[test_connection]" in debug_msg
    assert "select 1" in debug_msg


def test_long_statements_are_truncated_in_debug_log(mocker):
    mocker.patch.object(gateway.logger, "isEnabledFor", return_value=True)
    mock_debug = mocker.patch.object(gateway.logger, "debug")

    gateway._execute_safe(MagicMock(), "select " + "x" * 5000, None, "big", Exception)

    assert mock_debug.call_args.args[0].count("x") < 1100


def test_maintenance_run_logs_each_step(mocker, make_session):
    mock_info = mocker.patch.object(maintenance.logger, "info")
    session = make_session({"list_tables": [{"table_name": "orders"}]})
    mocker.patch("pg_console.actions.open_session").return_value.__enter__.return_value = session

    actions.dispatch(RunMagicMaintenance(), DESCRIPTOR)

    messages = _messages(mock_info)
    assert "Running Magic Maintenance for database: shop" in messages
    assert "Running VACUUM ANALYZE for table: public.orders" in messages
    assert "Running ANALYZE for the entire database" in messages
    assert any(m.startswith("Magic Maintenance completed successfully") for m in messages)

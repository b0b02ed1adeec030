"""
Console actions.

Each action the browser can request is a small frozen dataclass carrying its
own payload. `parse_action` turns a request body into one of them and
`dispatch` runs it against a fresh session; every action class must have a
handler registered in `_HANDLERS` or the module refuses to import.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, ClassVar

from . import catalog, maintenance, mutations, paging, settings
from .errors import ValidationError, WriteDisabledError
from .gateway import open_session
from .models import ConnectionDescriptor

logger = logging.getLogger("pg-console.actions")


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} is required")
    return value


@dataclass(frozen=True)
class Action:
    name: ClassVar[str] = ""
    mutating: ClassVar[bool] = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Action":
        return cls()

    def target_database(self, descriptor: ConnectionDescriptor) -> str | None:
        return descriptor.database


@dataclass(frozen=True)
class GetDatabases(Action):
    name: ClassVar[str] = "getDatabases"

    def target_database(self, descriptor: ConnectionDescriptor) -> str | None:
        # Listing databases must not depend on already knowing one
        return settings.ADMIN_DATABASE


@dataclass(frozen=True)
class CheckConnection(Action):
    name: ClassVar[str] = "testConnection"


@dataclass(frozen=True)
class GetTables(Action):
    name: ClassVar[str] = "getTables"


@dataclass(frozen=True)
class GetServerInfo(Action):
    name: ClassVar[str] = "getServerInfo"


@dataclass(frozen=True)
class GetDatabaseInfo(Action):
    name: ClassVar[str] = "getDatabaseInfo"


@dataclass(frozen=True)
class TableAction(Action):
    table_name: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Action":
        return cls(table_name=_required_str(payload, "tableName"))


@dataclass(frozen=True)
class GetTableStructure(TableAction):
    name: ClassVar[str] = "getTableStructure"


@dataclass(frozen=True)
class GetTableData(TableAction):
    name: ClassVar[str] = "getTableData"


@dataclass(frozen=True)
class GetTableStats(TableAction):
    name: ClassVar[str] = "getTableStats"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Action":
        return cls(table_name=payload.get("tableName") or _required_str(payload, "table"))


@dataclass(frozen=True)
class RunVacuumFull(TableAction):
    name: ClassVar[str] = "runVacuumFull"
    mutating: ClassVar[bool] = True


@dataclass(frozen=True)
class RunMagicMaintenance(Action):
    name: ClassVar[str] = "runMagicMaintenance"
    mutating: ClassVar[bool] = True


@dataclass(frozen=True)
class InsertRow(TableAction):
    name: ClassVar[str] = "insertRow"
    mutating: ClassVar[bool] = True
    row_data: Any = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Action":
        return cls(table_name=_required_str(payload, "tableName"), row_data=payload.get("rowData"))


@dataclass(frozen=True)
class UpdateRow(TableAction):
    name: ClassVar[str] = "updateRow"
    mutating: ClassVar[bool] = True
    row_data: Any = None
    primary_key: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Action":
        return cls(
            table_name=_required_str(payload, "tableName"),
            row_data=payload.get("rowData"),
            primary_key=_required_str(payload, "primaryKey"),
        )


@dataclass(frozen=True)
class DeleteRow(TableAction):
    name: ClassVar[str] = "deleteRow"
    mutating: ClassVar[bool] = True
    primary_key: str = ""
    primary_key_value: Any = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Action":
        return cls(
            table_name=_required_str(payload, "tableName"),
            primary_key=_required_str(payload, "primaryKey"),
            primary_key_value=payload.get("primaryKeyValue"),
        )


@dataclass(frozen=True)
class GetTablePage(TableAction):
    """Grid paging request; arrives on its own endpoint with grid field names."""

    name: ClassVar[str] = "getTablePage"
    start_row: Any = None
    end_row: Any = None
    filter_model: Any = None
    sort_model: Any = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Action":
        return cls(
            table_name=payload.get("tableName") or _required_str(payload, "table"),
            start_row=payload.get("startRow"),
            end_row=payload.get("endRow"),
            filter_model=payload.get("filterModel"),
            sort_model=payload.get("sortModel"),
        )


def _test_connection(session, action: CheckConnection) -> dict[str, Any]:
    session.fetch_one("test_connection", "select 1 as ok")
    return {"success": True}


def _table_structure(session, action: GetTableStructure) -> list[dict[str, Any]]:
    return catalog.describe_table(session, catalog.require_table(session, action.table_name))


def _table_data(session, action: GetTableData) -> dict[str, Any]:
    return catalog.sample_table_data(session, catalog.require_table(session, action.table_name))


def _table_stats(session, action: GetTableStats) -> dict[str, Any]:
    return catalog.table_stats(session, catalog.require_table(session, action.table_name))


def _vacuum_full(session, action: RunVacuumFull) -> dict[str, Any]:
    maintenance.run_vacuum_full(session, action.table_name)
    return {"success": True}


_HANDLERS: dict[type, Callable[[Any, Any], Any]] = {
    GetDatabases: lambda session, action: catalog.list_databases(session),
    CheckConnection: _test_connection,
    GetTables: lambda session, action: catalog.list_tables(session),
    GetTableStructure: _table_structure,
    GetTableData: _table_data,
    GetTableStats: _table_stats,
    GetServerInfo: lambda session, action: catalog.server_health(session).to_payload(),
    GetDatabaseInfo: lambda session, action: catalog.database_health(session).to_payload(),
    RunVacuumFull: _vacuum_full,
    RunMagicMaintenance: lambda session, action: maintenance.run_magic_maintenance(session).to_payload(),
    InsertRow: lambda session, action: mutations.insert_row(session, action.table_name, action.row_data),
    UpdateRow: lambda session, action: mutations.update_row(
        session, action.table_name, action.row_data, action.primary_key
    ),
    DeleteRow: lambda session, action: mutations.delete_row(
        session, action.table_name, action.primary_key, action.primary_key_value
    ),
    GetTablePage: lambda session, action: paging.build_page(
        session, action.table_name, action.filter_model, action.sort_model, action.start_row, action.end_row
    ),
}


def _concrete_actions(base: type = Action) -> set[type]:
    found = set()
    for sub in base.__subclasses__():
        if sub.name:
            found.add(sub)
        found |= _concrete_actions(sub)
    return found


_unhandled = _concrete_actions() - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Actions without a handler: {sorted(cls.__name__ for cls in _unhandled)}")

ACTIONS: dict[str, type] = {cls.name: cls for cls in _HANDLERS}


def parse_action(payload: Any) -> Action:
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    action_cls = ACTIONS.get(payload.get("action"))
    if action_cls is None:
        raise ValidationError("Invalid action")
    return action_cls.from_payload(payload)


def dispatch(action: Action, descriptor: ConnectionDescriptor) -> Any:
    """Run one action on a session opened just for it."""
    if action.mutating and settings.READ_ONLY:
        raise WriteDisabledError(f"{action.name} is disabled: the console runs in read-only mode (CONSOLE_READ_ONLY)")

    database = action.target_database(descriptor)
    logger.info(f"Action: {action.name}, Database: {database}")
    handler = _HANDLERS[type(action)]
    with open_session(descriptor, database=database) as session:
        return handler(session, action)

import threading
from typing import Any

import pytest

from pg_console.errors import StatementError
from pg_console.gateway import Session


class FakeSession(Session):
    """A Session that records statements instead of talking to a server.

    `responses` maps an operation name to the rows it returns (or to a
    callable taking the rendered SQL and params). Operations named in
    `failures` raise the caller's error class with the given cause.
    """

    def __init__(self, responses=None, failures=None, database="shop"):
        super().__init__(pool=None, database=database, workers=4)
        self.responses = dict(responses or {})
        self.failures = dict(failures or {})
        self.statements: list[tuple[str, str, Any]] = []
        self._lock = threading.Lock()

    def _respond(self, operation, query, params, error):
        text = query if isinstance(query, str) else query.as_string(None)
        with self._lock:
            self.statements.append((operation, text, params))
        if operation in self.failures:
            raise error(operation, self.failures[operation])
        rows = self.responses.get(operation, [])
        if callable(rows):
            rows = rows(text, params)
        return rows

    def fetch_all(self, operation, query, params=None, *, error=StatementError):
        return list(self._respond(operation, query, params, error))

    def fetch_one(self, operation, query, params=None, *, error=StatementError):
        rows = self._respond(operation, query, params, error)
        return rows[0] if rows else None

    def execute(self, operation, query, params=None, *, error=StatementError):
        rows = self._respond(operation, query, params, error)
        return rows if isinstance(rows, int) else len(rows)

    def operations(self) -> list[str]:
        return [op for op, _, _ in self.statements]

    def texts(self, operation: str) -> list[str]:
        return [text for op, text, _ in self.statements if op == operation]


ORDERS_COLUMNS = [
    {"column_name": "id", "data_type": "integer", "is_nullable": "NO", "column_default": "nextval('orders_id_seq'::regclass)"},
    {"column_name": "customer", "data_type": "text", "is_nullable": "YES", "column_default": None},
    {"column_name": "total", "data_type": "numeric", "is_nullable": "YES", "column_default": None},
]


@pytest.fixture
def make_session():
    def factory(responses=None, failures=None, database="shop"):
        return FakeSession(responses=responses, failures=failures, database=database)
    return factory


@pytest.fixture
def orders_session(make_session):
    """A session whose catalog knows public.orders(id, customer, total)."""
    def factory(extra=None, failures=None):
        responses = {
            "list_tables": [{"table_name": "customers"}, {"table_name": "orders"}],
            "describe_table": ORDERS_COLUMNS,
        }
        responses.update(extra or {})
        return make_session(responses=responses, failures=failures)
    return factory

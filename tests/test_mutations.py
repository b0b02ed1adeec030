import pytest

from pg_console.errors import RowNotFoundError, StatementError, ValidationError
from pg_console.mutations import delete_row, insert_row, update_row

WRITES = {"insert_row", "update_row", "delete_row"}


def _writes(session):
    return [s for s in session.statements if s[0] in WRITES]


def test_insert_row_binds_values_in_column_order(orders_session):
    stored = {"id": 7, "customer": "acme", "total": 12}
    session = orders_session({"insert_row": [stored]})

    row = insert_row(session, "orders", {"customer": "acme", "total": 12})

    assert row == stored
    assert _writes(session) == [(
        "insert_row",
        'INSERT INTO "public"."orders" ("customer", "total") VALUES (%s, %s) RETURNING *',
        ["acme", 12],
    )]


def test_insert_row_values_are_never_inlined(orders_session):
    session = orders_session({"insert_row": [{"id": 1}]})
    insert_row(session, "orders", {"customer": "'); drop table orders; --"})

    _, text, params = _writes(session)[0]
    assert "drop table" not in text
    assert params == ["'); drop table orders; --"]


@pytest.mark.parametrize("row_data", [{}, None, [1, 2]])
def test_insert_row_requires_values(orders_session, row_data):
    session = orders_session()
    with pytest.raises(ValidationError):
        insert_row(session, "orders", row_data)
    assert session.statements == []


def test_insert_row_rejects_unknown_column(orders_session):
    session = orders_session()
    with pytest.raises(ValidationError, match="nickname"):
        insert_row(session, "orders", {"customer": "acme", "nickname": "x"})
    assert _writes(session) == []


def test_insert_row_rejects_unknown_table(orders_session):
    session = orders_session()
    with pytest.raises(ValidationError, match="invoices"):
        insert_row(session, "invoices", {"customer": "acme"})
    assert _writes(session) == []


def test_update_row_excludes_key_from_set_list(orders_session):
    session = orders_session({"update_row": [{"id": 42, "customer": "acme", "total": 12}]})

    row = update_row(session, "orders", {"id": 42, "total": 12}, "id")

    assert row["total"] == 12
    assert _writes(session) == [(
        "update_row",
        'UPDATE "public"."orders" SET "total" = %s WHERE "id" = %s RETURNING *',
        [12, 42],
    )]


def test_update_row_with_only_the_key_is_rejected(orders_session):
    session = orders_session()
    with pytest.raises(ValidationError, match="No data to update"):
        update_row(session, "orders", {"id": 42}, "id")
    assert session.statements == []


def test_update_row_requires_key_in_values(orders_session):
    session = orders_session()
    with pytest.raises(ValidationError):
        update_row(session, "orders", {"total": 12}, "id")
    assert session.statements == []


def test_update_row_missing_row(orders_session):
    session = orders_session({"update_row": []})
    with pytest.raises(RowNotFoundError) as excinfo:
        update_row(session, "orders", {"id": 404, "total": 1}, "id")
    assert excinfo.value.status_code == 404


def test_delete_row_issues_one_statement(orders_session):
    session = orders_session({"delete_row": 1})

    assert delete_row(session, "orders", "id", 42) == {"success": True}
    assert _writes(session) == [("delete_row", 'DELETE FROM "public"."orders" WHERE "id" = %s', [42])]


def test_delete_row_requires_key_value(orders_session):
    session = orders_session()
    with pytest.raises(ValidationError):
        delete_row(session, "orders", "id", None)
    assert session.statements == []


def test_delete_row_rejects_unknown_key_column(orders_session):
    session = orders_session()
    with pytest.raises(ValidationError):
        delete_row(session, "orders", "uuid", 42)
    assert _writes(session) == []


def test_statement_failure_carries_server_message(orders_session):
    session = orders_session(failures={"insert_row": Exception('null value in column "customer" violates not-null constraint')})
    with pytest.raises(StatementError) as excinfo:
        insert_row(session, "orders", {"total": 1})
    assert "not-null constraint" in str(excinfo.value)
    assert excinfo.value.operation == "insert_row"

from __future__ import annotations

import pytest
from sqlalchemy import event

import settlement.persistence.pg as pg
from settlement.core.errors import DocumentStoreError
from settlement.ledger.store import filter_clause, where


@pytest.fixture()
def statements():
    seen: list[str] = []

    def record(conn, cursor, statement, parameters, context, executemany):
        seen.append(statement)

    event.listen(pg.engine, "before_cursor_execute", record)
    yield seen
    event.remove(pg.engine, "before_cursor_execute", record)


@pytest.fixture()
def payouts(store):
    rows = [
        ("p1", {"orderId": "o1", "payeeId": "a", "amount": 10.0, "status": "completed", "createdAt": "2026-01-02T00:00:00Z"}),
        ("p2", {"orderId": "o1", "payeeId": "b", "amount": 5.5, "status": "reversed", "createdAt": "2026-01-01T00:00:00Z"}),
        ("p3", {"orderId": "o2", "payeeId": "a", "amount": 20.0, "status": "completed", "createdAt": "2026-01-03T00:00:00Z"}),
        ("p4", {"orderId": "o2", "payeeId": "c", "amount": 1.0, "meta": {"rail": "batch"}}),
    ]
    for doc_id, data in rows:
        store.set("payouts", doc_id, data)
    store.set("orders", "o1", {"status": "completed"})
    return store


def ids(rows: list[dict]) -> list[str]:
    return [row["id"] for row in rows]


def test_equality_and_in_filters(payouts):
    assert ids(payouts.query("payouts", [where("orderId", "EQUAL", "o1")])) == ["p1", "p2"]
    assert ids(payouts.query("payouts", [where("orderId", "EQUAL", "o2"), where("payeeId", "EQUAL", "a")])) == ["p3"]
    assert ids(payouts.query("payouts", [where("payeeId", "IN", ["b", "c"])])) == ["p2", "p4"]
    assert payouts.query("payouts", [where("payeeId", "IN", [])]) == []


def test_not_equal_keeps_documents_missing_the_field(payouts):
    assert ids(payouts.query("payouts", [where("status", "NOT_EQUAL", "reversed")])) == ["p1", "p3", "p4"]


def test_range_filters_on_numbers_and_timestamps(payouts):
    assert ids(payouts.query("payouts", [where("amount", "GREATER_THAN", 5.5)])) == ["p1", "p3"]
    assert ids(payouts.query("payouts", [where("amount", "LESS_THAN_OR_EQUAL", 5.5)])) == ["p2", "p4"]
    rows = payouts.query("payouts", [where("createdAt", "GREATER_THAN_OR_EQUAL", "2026-01-02T00:00:00Z")])
    assert ids(rows) == ["p1", "p3"]


def test_nested_field_paths(payouts):
    assert ids(payouts.query("payouts", [where("meta.rail", "EQUAL", "batch")])) == ["p4"]


def test_order_by_puts_missing_values_last(payouts):
    assert ids(payouts.query("payouts", order_by="createdAt")) == ["p2", "p1", "p3", "p4"]
    assert ids(payouts.query("payouts", order_by="createdAt", descending=True)) == ["p3", "p1", "p2", "p4"]


def test_query_is_scoped_to_its_collection(payouts):
    assert ids(payouts.query("orders", [where("status", "EQUAL", "completed")])) == ["o1"]


def test_filters_and_limit_run_in_sql(payouts, statements):
    rows = payouts.query("payouts", [where("orderId", "EQUAL", "o1")], order_by="createdAt", limit=1)

    assert ids(rows) == ["p2"]
    select_sql = [s for s in statements if s.lstrip().upper().startswith("SELECT")][-1].upper()
    assert "JSON_EXTRACT" in select_sql
    assert "LIMIT" in select_sql
    assert "ORDER BY" in select_sql


def test_untranslatable_filters_fall_back_to_python(payouts):
    assert filter_clause(where("orderId", "EQUAL", None)) is None
    assert filter_clause(where("payeeId", "IN", ["a", 1])) is None

    rows = payouts.query("payouts", [where("payeeId", "IN", ["a", 1]), where("orderId", "EQUAL", "o2")], limit=1)
    assert ids(rows) == ["p3"]


def test_update_of_missing_document_fails(store):
    with pytest.raises(DocumentStoreError):
        store.update("payouts", "missing", {"status": "reversed"})
    assert store.get("payouts", "missing") is None

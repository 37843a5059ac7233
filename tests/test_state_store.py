"""Tests for the table store backends."""

import pytest

from infra.state_store import (
    POSITIONS,
    InMemoryStore,
    SQLiteStore,
    create_store_from_config,
)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStore()
    return SQLiteStore(str(tmp_path / "state.db"))


def test_put_get_delete(any_store):
    key = any_store.put(POSITIONS, {"account_id": "a1", "symbol": "BTC", "side": "long"})

    assert any_store.get(POSITIONS, key)["side"] == "long"
    assert any_store.delete(POSITIONS, key) is True
    assert any_store.get(POSITIONS, key) is None
    assert any_store.delete(POSITIONS, key) is False


def test_put_with_key_replaces_record(any_store):
    any_store.put(POSITIONS, {"account_id": "a1", "symbol": "BTC", "size_usd": 100}, key="k1")
    any_store.put(POSITIONS, {"account_id": "a1", "symbol": "BTC", "size_usd": 250}, key="k1")

    rows = any_store.query_by_index(POSITIONS, "a1")
    assert len(rows) == 1
    assert rows[0][1]["size_usd"] == 250


def test_query_by_index_filters_and_keeps_insertion_order(any_store):
    any_store.put(POSITIONS, {"account_id": "a1", "symbol": "ETH"}, key="first")
    any_store.put(POSITIONS, {"account_id": "a2", "symbol": "BTC"}, key="other")
    any_store.put(POSITIONS, {"account_id": "a1", "symbol": "BTC"}, key="second")
    any_store.put(POSITIONS, {"account_id": "a1", "symbol": "BTC"}, key="third")

    assert [k for k, _ in any_store.query_by_index(POSITIONS, "a1")] == ["first", "second", "third"]
    assert [k for k, _ in any_store.query_by_index(POSITIONS, "a1", "BTC")] == ["second", "third"]
    assert any_store.query_by_index(POSITIONS, "missing") == []


def test_scan_returns_every_row(any_store):
    any_store.put(POSITIONS, {"account_id": "a1"}, key="x")
    any_store.put(POSITIONS, {"account_id": "a2"}, key="y")

    assert [k for k, _ in any_store.scan(POSITIONS)] == ["x", "y"]
    assert any_store.scan("unknown_table") == []


def test_returned_rows_are_copies():
    store = InMemoryStore()
    key = store.put(POSITIONS, {"account_id": "a1", "size_usd": 1})

    row = store.get(POSITIONS, key)
    row["size_usd"] = 999

    assert store.get(POSITIONS, key)["size_usd"] == 1


def test_sqlite_store_persists_across_instances(tmp_path):
    path = str(tmp_path / "nested" / "state.db")
    SQLiteStore(path).put(POSITIONS, {"account_id": "a1", "symbol": "SOL"}, key="p1")

    reopened = SQLiteStore(path)
    assert reopened.get(POSITIONS, "p1") == {"account_id": "a1", "symbol": "SOL"}


def test_create_store_from_config(tmp_path):
    assert isinstance(create_store_from_config({"backend": "memory"}), InMemoryStore)
    assert isinstance(
        create_store_from_config({"backend": "sqlite", "path": str(tmp_path / "s.db")}),
        SQLiteStore,
    )
    with pytest.raises(ValueError):
        create_store_from_config({"backend": "redis"})

from datetime import date
from decimal import Decimal

import pytest
from helpers.db import fetch_transaction_rows

from transaction_rules.api import import_file, open_sql_store
from transaction_rules.config import ImportSettings
from transaction_rules.errors import PersistenceFailure
from transaction_rules.models import DateRange, Transaction
from transaction_rules.persistence import SqlRecordStore
from transaction_rules.pipeline import rerun_rules
from transaction_rules.stores import InMemoryRuleSource, RerunCapableStore

SETTINGS = ImportSettings(max_workers=4, chunk_size=40, commit_batch_size=25)


def _tx(i: int, *, account: str = "acc", category: str | None = None) -> Transaction:
    return Transaction(
        id=f"tx-{i}",
        date=date(2024, 3, i),
        amount=Decimal(f"-{i}.25"),
        currency="EUR",
        description=f"Purchase {i}",
        account=account,
        fingerprint=f"{i:064x}",
        payee="Shop",
        category=category,
        tags=frozenset({"t"}) if i % 2 else frozenset(),
        row_number=i,
    )


def _export(path, n: int):
    lines = ["date,amount,description,account"]
    lines += [f"2024-04-{1 + i % 28:02d},-{i}.50,Albert Heijn {i},NL01" for i in range(1, n + 1)]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_commit_ignores_existing_fingerprints(sqlite_url):
    store = SqlRecordStore(sqlite_url)
    assert isinstance(store, RerunCapableStore)

    assert store.commit([_tx(1), _tx(2)]) == 2
    assert store.commit([_tx(2), _tx(3)]) == 1
    assert store.commit([]) == 0
    assert store.count() == 3


def test_fingerprint_lookup_is_scoped(sqlite_url):
    store = SqlRecordStore(sqlite_url)
    store.commit([_tx(1), _tx(5), _tx(9, account="other")])

    got = store.fingerprints_in_range("acc", DateRange(date(2024, 3, 1), date(2024, 3, 5)))
    assert got == {_tx(1).fingerprint, _tx(5).fingerprint}
    assert store.fingerprints_in_range("acc", DateRange(date(2024, 3, 6), date(2024, 3, 9))) == set()


def test_round_trip_keeps_values(sqlite_url):
    store = SqlRecordStore(sqlite_url)
    original = _tx(7, category="Food")
    store.commit([original])

    (loaded,) = store.transactions_in_range("acc", None)
    assert loaded == original
    rows = fetch_transaction_rows(sqlite_url)
    assert rows[0]["categorized_at"] is not None
    assert rows[0]["tags"] == ["t"]


def test_update_changes_only_rule_fields(sqlite_url):
    from dataclasses import replace

    store = SqlRecordStore(sqlite_url)
    tx = _tx(4)
    store.commit([tx])

    changed = replace(tx, category="Groceries", tags=frozenset({"a", "b"}), notes="n")
    assert store.update_transactions([changed]) == 1
    assert store.update_transactions([_tx(20)]) == 0

    (loaded,) = store.transactions_in_range(None, None)
    assert loaded.category == "Groceries"
    assert loaded.tags == {"a", "b"}
    assert loaded.notes == "n"
    assert loaded.amount == tx.amount


def test_missing_schema_surfaces_as_persistence_failure(tmp_path):
    store = SqlRecordStore(f"sqlite+pysqlite:///{tmp_path / 'empty.sqlite3'}")
    with pytest.raises(PersistenceFailure):
        store.commit([_tx(1)])


def test_import_into_sqlite_and_reimport(tmp_path, sqlite_url):
    path = _export(tmp_path / "export.csv", 120)
    rules = [
        {
            "id": "ah",
            "conditions": [{"field": "description", "comparator": "starts_with", "value": "albert"}],
            "actions": [{"kind": "set_category", "value": "Groceries"}],
        }
    ]
    store = open_sql_store(sqlite_url)

    first = import_file(path, "generic", store=store, rules=rules, settings=SETTINGS)
    second = import_file(path, "generic", store=store, rules=rules, settings=SETTINGS)

    assert first.committed_count == 120
    assert second.accepted_count == 0
    assert second.duplicate_count == 120
    assert store.count() == 120
    assert {r["category"] for r in fetch_transaction_rows(sqlite_url)} == {"Groceries"}

    recorded = store.get_batch(first.id)
    assert recorded is not None
    assert recorded["status"] == "completed"
    assert recorded["committed_count"] == 120
    assert recorded["malformed_rows"] == []


def test_rerun_rules_against_sqlite(tmp_path, sqlite_url):
    path = _export(tmp_path / "export.csv", 30)
    store = open_sql_store(sqlite_url)
    import_file(path, "generic", store=store, settings=SETTINGS)

    result = rerun_rules(
        store,
        InMemoryRuleSource(
            [
                {
                    "id": "big",
                    "conditions": [{"field": "amount", "comparator": "less_than", "value": "-20.5"}],
                    "actions": [{"kind": "set_flag", "value": "large"}],
                }
            ]
        ),
        settings=SETTINGS,
    )

    assert result.examined == 30
    assert result.updated == 10
    flagged = [tx for tx in store.transactions_in_range("NL01", None) if "large" in tx.flags]
    assert len(flagged) == 10

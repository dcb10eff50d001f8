import json
from datetime import date
from decimal import Decimal

import pytest

from transaction_rules.dedup import Deduplicator
from transaction_rules.errors import PersistenceFailure, RuleValidationError
from transaction_rules.models import DateRange, Rule, Transaction
from transaction_rules.stores import (
    InMemoryRecordStore,
    InMemoryRuleSource,
    JsonRuleSource,
    RecordStore,
    RerunCapableStore,
    RuleSource,
)


def _tx(fp: str, *, account: str = "acc", day: int = 1) -> Transaction:
    return Transaction(
        id=fp,
        date=date(2024, 1, day),
        amount=Decimal("1.00"),
        currency="EUR",
        description="d",
        account=account,
        fingerprint=fp,
    )


class _CountingStore(InMemoryRecordStore):
    def __init__(self, *a, **kw):
        super().__init__(*a, **kw)
        self.lookups: list[tuple[str, DateRange]] = []

    def fingerprints_in_range(self, account, date_range):
        self.lookups.append((account, date_range))
        return super().fingerprints_in_range(account, date_range)


# ---- Deduplicator ----------------------------------------------------------------


def test_known_fingerprints_are_duplicates():
    store = InMemoryRecordStore([_tx("a"), _tx("b")])
    result = Deduplicator(store).partition([_tx("a"), _tx("c")])
    assert [t.fingerprint for t in result.new] == ["c"]
    assert [t.fingerprint for t in result.duplicates] == ["a"]


def test_first_occurrence_wins_within_and_across_chunks():
    dedup = Deduplicator(InMemoryRecordStore())
    first = dedup.partition([_tx("x"), _tx("x"), _tx("y")])
    second = dedup.partition([_tx("y"), _tx("z")])

    assert [t.fingerprint for t in first.new] == ["x", "y"]
    assert len(first.duplicates) == 1
    assert [t.fingerprint for t in second.new] == ["z"]


def test_lookup_is_scoped_per_account_and_date_span():
    store = _CountingStore()
    Deduplicator(store).partition(
        [_tx("1", day=3), _tx("2", day=9), _tx("3", account="other", day=5)]
    )
    spans = dict(store.lookups)
    assert spans["acc"] == DateRange(date(2024, 1, 3), date(2024, 1, 9))
    assert spans["other"] == DateRange(date(2024, 1, 5), date(2024, 1, 5))


def test_same_fingerprint_other_account_is_not_matched():
    store = InMemoryRecordStore([_tx("a", account="other")])
    result = Deduplicator(store).partition([_tx("a")])
    assert len(result.new) == 1


class _UnreachableStore(InMemoryRecordStore):
    def fingerprints_in_range(self, account, date_range):
        raise ConnectionError("connection reset by peer")


def test_lookup_errors_surface_as_persistence_failure():
    with pytest.raises(PersistenceFailure) as info:
        Deduplicator(_UnreachableStore()).partition([_tx("a")])
    err = info.value
    assert err.fatal is True
    assert isinstance(err.__cause__, ConnectionError)
    assert "fingerprint lookup failed for acc" in str(err)


# ---- Stores -----------------------------------------------------------------------


def test_in_memory_store_protocols_and_commit():
    store = InMemoryRecordStore()
    assert isinstance(store, RecordStore)
    assert isinstance(store, RerunCapableStore)
    assert store.commit([_tx("a"), _tx("b")]) == 2
    assert store.commit([_tx("a")]) == 0
    assert len(store) == 2
    assert store.transactions_in_range("acc", None)[0].fingerprint == "a"


def test_in_memory_rule_source_notifies_and_snapshots():
    source = InMemoryRuleSource([{"id": "r1"}])
    assert isinstance(source, RuleSource)
    calls: list[int] = []
    unsubscribe = source.subscribe(lambda: calls.append(1))

    snapshot = source.list_rules()
    source.upsert(Rule(id="r2"))
    assert len(snapshot) == 1
    assert calls == [1]
    assert source.get_rule("r2") == Rule(id="r2")
    assert source.get_rule("r1") == Rule(id="r1")

    unsubscribe()
    source.set_rules([])
    assert calls == [1]


def test_listener_errors_do_not_propagate():
    source = InMemoryRuleSource()

    def bad() -> None:
        raise RuntimeError("listener broke")

    source.subscribe(bad)
    source.set_rules([Rule(id="x")])  # does not raise


def test_get_rule_reports_invalid_document():
    source = InMemoryRuleSource([{"id": "bad", "priority": "high"}])
    with pytest.raises(RuleValidationError):
        source.get_rule("bad")


def test_json_rule_source_reads_saves_and_reloads(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"rules": [{"id": "a"}, 42]}), encoding="utf-8")

    source = JsonRuleSource(path)
    assert source.list_rules() == [{"id": "a"}, {"id": "#1", "_invalid": 42}]

    seen: list[int] = []
    source.subscribe(lambda: seen.append(1))
    source.save([Rule(id="b", priority=3)])
    assert [r["id"] for r in source.list_rules()] == ["b"]
    assert seen == [1]

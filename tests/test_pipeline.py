# ruff: noqa: E501
from __future__ import annotations

import threading
import time
from datetime import date
from pathlib import Path

import pytest

from transaction_rules.api import import_file
from transaction_rules.config import ImportSettings
from transaction_rules.errors import (
    ImportCancelled,
    PersistenceFailure,
    SourceFormatError,
    UnsupportedEncodingError,
)
from transaction_rules.ingest.profiles import get_profile
from transaction_rules.models import DateRange, ImportBatch, ImportStatus, ProgressEvent
from transaction_rules.pipeline import ImportHandle, ImportPipeline, rerun_rules, start_import
from transaction_rules.stores import InMemoryRecordStore, InMemoryRuleSource

SETTINGS = ImportSettings(
    max_workers=4,
    chunk_size=100,
    commit_batch_size=50,
    queue_size=2,
    progress_every=100,
    progress_interval=60.0,
)

GROCERIES_RULE = {
    "id": "groceries",
    "priority": 10,
    "conditions": [{"field": "description", "comparator": "contains", "value": "albert heijn"}],
    "actions": [{"kind": "set_category", "value": "Groceries"}],
}
FUEL_RULE = {
    "id": "fuel",
    "priority": 20,
    "conditions": [{"field": "payee", "comparator": "equals", "value": "shell"}],
    "actions": [{"kind": "set_category", "value": "Fuel"}, {"kind": "add_tag", "value": "car"}],
}


def _write_export(path: Path, n: int = 1000, *, malformed: dict[int, str] | None = None) -> Path:
    """``n`` data rows; ``malformed`` maps row number → which field to break."""

    malformed = malformed or {}
    lines = ["date,amount,description,payee,account,currency"]
    for i in range(1, n + 1):
        day = date(2024, 1 + (i % 12), 1 + (i % 28)).isoformat()
        amount = f"-{i}.{i % 100:02d}"
        payee = "Albert Heijn" if i % 2 else "Shell"
        match malformed.get(i):
            case "amount":
                amount = "abc"
            case "date":
                day = "not-a-date"
        lines.append(f'{day},{amount},"{payee} {i}",{payee},NL01BANK0001,EUR')
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _pipeline(store=None, rules=(GROCERIES_RULE, FUEL_RULE), **kw) -> ImportPipeline:
    return ImportPipeline(
        store if store is not None else InMemoryRecordStore(),
        InMemoryRuleSource(list(rules)),
        settings=kw.pop("settings", SETTINGS),
        **kw,
    )


# ---- Happy path ---------------------------------------------------------------------


def test_import_counts_malformed_rows_and_commits_the_rest(tmp_path):
    path = _write_export(tmp_path / "export.csv", malformed={501: "amount", 999: "date"})
    store = InMemoryRecordStore()

    summary = _pipeline(store).run(path, "generic")

    assert summary.status is ImportStatus.COMPLETED
    assert summary.failure is None
    assert summary.row_count == 1000
    assert summary.accepted_count == 998
    assert summary.malformed_count == 2
    assert [(e.row_number, e.field) for e in summary.malformed_rows] == [(501, "amount"), (999, "date")]
    assert summary.duplicate_count == 0
    assert summary.committed_count == 998
    assert summary.categorized_count == 998
    assert summary.encoding == "utf-8"
    assert len(store) == 998

    by_payee = {tx.payee: tx for tx in store.all()}
    assert by_payee["Albert Heijn"].category == "Groceries"
    assert by_payee["Shell"].category == "Fuel"
    assert by_payee["Shell"].tags == {"car"}
    assert summary.rule_matches == {"groceries": 498, "fuel": 500}
    assert all(tx.batch_id == summary.id for tx in store.all())


def test_reimport_finds_only_duplicates(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=300)
    store = InMemoryRecordStore()
    pipeline = _pipeline(store)

    first = pipeline.run(path, "generic")
    second = pipeline.run(path, "generic")

    assert first.accepted_count == 300
    assert second.accepted_count == 0
    assert second.duplicate_count == 300
    assert second.committed_count == 0
    assert len(store) == 300


def test_duplicate_rows_in_one_file_first_wins(tmp_path):
    path = tmp_path / "dups.csv"
    path.write_text(
        "date,amount,description,account\n"
        "2024-01-01,-1.00,Coffee,acc\n"
        "2024-01-01,-1.00,Coffee,acc\n"
        "2024-01-01,-1.00, Coffee ,acc\n",
        encoding="utf-8",
    )
    store = InMemoryRecordStore()
    summary = _pipeline(store).run(path, "generic")
    assert (summary.accepted_count, summary.duplicate_count) == (1, 2)
    (tx,) = store.all()
    assert tx.row_number == 1


def test_sequential_and_concurrent_imports_agree(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=400)
    seq_store, par_store = InMemoryRecordStore(), InMemoryRecordStore()

    _pipeline(seq_store, settings=SETTINGS.with_overrides(max_workers=1)).run(path, "generic")
    _pipeline(par_store, settings=SETTINGS.with_overrides(max_workers=8)).run(path, "generic")

    key = lambda tx: tx.fingerprint  # noqa: E731
    assert sorted(seq_store.all(), key=key) == sorted(par_store.all(), key=key)


def test_accented_payee_late_in_a_legacy_export_is_decoded(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=2500)
    with path.open("ab") as f:
        f.write(b"2024-03-01,-4.50,Caf\xe9 de Paris,Caf\xe9,NL01BANK0001,EUR\n")
    store = InMemoryRecordStore()

    summary = _pipeline(store).run(path, "generic")

    assert summary.status is ImportStatus.COMPLETED
    assert summary.encoding == "cp1252"
    assert summary.accepted_count == 2501
    assert [tx.description for tx in store.all() if tx.payee == "Café"] == ["Café de Paris"]


def test_account_override(tmp_path):
    path = tmp_path / "chase.csv"
    path.write_text(
        "Transaction Date,Post Date,Description,Category,Type,Amount\n"
        "01/02/2024,01/03/2024,ALBERT HEIJN 123,Food,Sale,-12.34\n",
        encoding="utf-8",
    )
    store = InMemoryRecordStore()
    summary = import_file(path, "chase", store=store, rules=[GROCERIES_RULE], account="card-1")

    assert summary.accepted_count == 1
    (tx,) = store.all()
    assert tx.account == "card-1"
    assert tx.currency == "USD"
    assert tx.date == date(2024, 1, 3)
    assert tx.category == "Groceries"


# ---- Batch-fatal failures -----------------------------------------------------------


def test_undetectable_encoding_fails_the_batch(tmp_path):
    path = tmp_path / "latin.csv"
    path.write_bytes("date,amount,description,account\n2024-01-01,1.00,Café,acc\n".encode("cp1252"))
    profile = get_profile("generic").model_copy(update={"encodings": ("utf-8",)})
    store = InMemoryRecordStore()

    summary = _pipeline(store).run(path, profile)

    assert summary.status is ImportStatus.FAILED
    assert isinstance(summary.failure, UnsupportedEncodingError)
    assert summary.accepted_count == 0
    assert len(store) == 0
    with pytest.raises(UnsupportedEncodingError):
        summary.raise_for_failure()


def test_missing_file_fails_the_batch(tmp_path):
    summary = _pipeline().run(tmp_path / "nope.csv", "generic")
    assert summary.status is ImportStatus.FAILED
    assert isinstance(summary.failure, SourceFormatError)
    assert "file not found" in str(summary.failure)
    assert summary.to_dict()["failure"]["kind"] == "SourceFormatError"


def test_unknown_profile_fails_the_batch(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=5)
    summary = _pipeline().run(path, "no-such-bank")
    assert isinstance(summary.failure, SourceFormatError)


class _FailingStore(InMemoryRecordStore):
    def __init__(self, fail_on_call: int) -> None:
        super().__init__()
        self.fail_on_call = fail_on_call

    def commit(self, transactions):
        if self.commit_calls + 1 == self.fail_on_call:
            self.commit_calls += 1
            raise RuntimeError("disk full")
        return super().commit(transactions)


def test_persistence_failure_keeps_earlier_commits(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=500)
    store = _FailingStore(fail_on_call=3)

    summary = _pipeline(store).run(path, "generic")

    assert summary.status is ImportStatus.FAILED
    assert isinstance(summary.failure, PersistenceFailure)
    assert summary.failure.committed_count == 100
    assert summary.committed_count == 100
    assert len(store) == 100
    assert "disk full" in str(summary.failure)


class _LookupFailsStore(InMemoryRecordStore):
    def __init__(self, fail_on_call: int) -> None:
        super().__init__()
        self.fail_on_call = fail_on_call
        self.lookups = 0

    def fingerprints_in_range(self, account, date_range):
        self.lookups += 1
        if self.lookups >= self.fail_on_call:
            raise ConnectionError("connection reset by peer")
        return super().fingerprints_in_range(account, date_range)


def test_fingerprint_lookup_failure_fails_the_batch(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=500)
    store = _LookupFailsStore(fail_on_call=3)

    summary = _pipeline(store).run(path, "generic")

    assert summary.status is ImportStatus.FAILED
    assert isinstance(summary.failure, PersistenceFailure)
    assert "fingerprint lookup failed" in str(summary.failure)
    assert summary.accepted_count == 200
    assert summary.failure.committed_count == summary.committed_count == len(store)
    assert summary.committed_count <= 200


# ---- Cancellation, progress and observers ---------------------------------------------


def test_cancel_stops_between_chunks(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=1000)
    store = InMemoryRecordStore()
    pipeline: ImportPipeline

    def on_progress(ev: ProgressEvent) -> None:
        if ev.processed_count >= 200:
            pipeline.cancel()

    pipeline = _pipeline(store, on_progress=on_progress)
    summary = pipeline.run(path, "generic")

    assert summary.status is ImportStatus.CANCELLED
    assert isinstance(summary.failure, ImportCancelled)
    assert summary.accepted_count < 1000
    assert summary.committed_count == len(store)
    assert len(store) <= summary.accepted_count


def test_cancel_request_is_consumed_by_one_run(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=50)
    store = InMemoryRecordStore()
    pipeline = _pipeline(store)

    pipeline.cancel()
    first = pipeline.run(path, "generic")
    second = pipeline.run(path, "generic")

    assert first.status is ImportStatus.CANCELLED
    assert first.committed_count == 0
    assert second.status is ImportStatus.COMPLETED
    assert second.accepted_count == 50
    assert len(store) == 50


# One commit batch per chunk, at most one batch waiting in the queue.
BACKPRESSURE = ImportSettings(
    max_workers=2,
    chunk_size=10,
    commit_batch_size=10,
    queue_size=1,
    progress_every=10,
    progress_interval=60.0,
)


class _SlowStore(InMemoryRecordStore):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def commit(self, transactions):
        time.sleep(self.delay)
        return super().commit(transactions)


def test_slow_writer_blocks_the_producer(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=200)
    store = _SlowStore(delay=0.02)
    outstanding: list[int] = []

    def on_progress(ev: ProgressEvent) -> None:
        # Handed to the writer but not yet stored.
        outstanding.append(ev.accepted_count - len(store))

    summary = _pipeline(store, settings=BACKPRESSURE, on_progress=on_progress).run(path, "generic")

    assert summary.status is ImportStatus.COMPLETED
    assert len(store) == 200
    # One batch being committed plus one queued.
    assert max(outstanding) <= 2 * BACKPRESSURE.commit_batch_size


class _GatedStore(InMemoryRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()

    def commit(self, transactions):
        self.entered.set()
        self.gate.wait(10)
        return super().commit(transactions)


def test_cancel_while_waiting_on_a_full_queue(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=100)
    store = _GatedStore()
    second_batch_queued = threading.Event()
    results: list[ImportBatch] = []

    def on_progress(ev: ProgressEvent) -> None:
        if ev.accepted_count >= 20:
            second_batch_queued.set()

    pipeline = _pipeline(store, settings=BACKPRESSURE, on_progress=on_progress)
    worker = threading.Thread(target=lambda: results.append(pipeline.run(path, "generic")))
    worker.start()

    assert store.entered.wait(10)
    assert second_batch_queued.wait(10)
    time.sleep(0.2)  # third chunk is now blocked on the full queue
    pipeline.cancel()
    store.gate.set()
    worker.join(10)

    (summary,) = results
    assert summary.status is ImportStatus.CANCELLED
    assert "waiting for the writer" in str(summary.failure)
    assert summary.accepted_count == 30
    # The batch in the writer's hands lands; the queued one is dropped.
    assert summary.committed_count == len(store) == 10


def test_progress_events_are_monotonic_and_complete(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=1000)
    events: list[ProgressEvent] = []
    completed: list[ImportBatch] = []

    summary = _pipeline(on_progress=events.append, on_complete=completed.append).run(path, "generic")

    processed = [e.processed_count for e in events]
    assert processed[0] == 0
    assert processed == sorted(processed)
    assert events[-1].processed_count == events[-1].total_count == 1000
    assert events[-1].fraction == 1.0
    assert len(events) >= 10
    assert completed == [summary]


def test_broken_observer_does_not_abort(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=10)

    def explode(_):
        raise RuntimeError("observer bug")

    summary = _pipeline(on_progress=explode, on_complete=explode).run(path, "generic")
    assert summary.status is ImportStatus.COMPLETED
    assert summary.accepted_count == 10


def test_rule_edits_during_import_do_not_affect_the_batch(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=400)
    store = InMemoryRecordStore()
    rules = InMemoryRuleSource([GROCERIES_RULE])

    def on_progress(ev: ProgressEvent) -> None:
        rules.set_rules([{**GROCERIES_RULE, "actions": [{"kind": "set_category", "value": "Other"}]}])

    ImportPipeline(store, rules, settings=SETTINGS, on_progress=on_progress).run(path, "generic")

    categories = {tx.category for tx in store.all() if tx.payee == "Albert Heijn"}
    assert categories == {"Groceries"}


def test_rejected_rules_are_reported_and_skipped(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=20)
    bad = {"id": "bad", "conditions": [{"field": "amount", "comparator": "contains", "value": "1"}]}
    summary = _pipeline(rules=[GROCERIES_RULE, bad]).run(path, "generic")

    assert summary.status is ImportStatus.COMPLETED
    assert summary.skipped_rule_ids == ("bad",)
    assert summary.rule_matches == {"groceries": 10}


def test_start_import_runs_in_background(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=500)
    store = InMemoryRecordStore()

    handle = start_import(
        path, "generic", store=store, rule_source=InMemoryRuleSource([GROCERIES_RULE]), settings=SETTINGS
    )
    items = list(handle.events(timeout=30))

    assert isinstance(items[-1], ImportBatch)
    assert all(isinstance(i, ProgressEvent) for i in items[:-1])
    summary = handle.result(timeout=30)
    assert summary is items[-1]
    assert handle.done()
    assert summary.accepted_count == 500
    assert len(store) == 500


class _SilentPipeline:
    def run(self, source, profile, *, batch_id=None):
        return None


def test_handle_without_summary_raises():
    handle = ImportHandle(_SilentPipeline())  # type: ignore[arg-type]
    handle._start("unused.csv", "generic", None)

    with pytest.raises(RuntimeError, match="without a summary"):
        handle.result(timeout=5)


# ---- Re-running rules ------------------------------------------------------------------------


def test_rerun_rules_updates_only_changed_transactions(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=100)
    store = InMemoryRecordStore()
    _pipeline(store, rules=[GROCERIES_RULE]).run(path, "generic")

    result = rerun_rules(store, InMemoryRuleSource([GROCERIES_RULE, FUEL_RULE]), settings=SETTINGS)

    assert result.examined == 100
    assert result.changed == 50
    assert result.updated == 50
    assert {tx.category for tx in store.all()} == {"Groceries", "Fuel"}


def test_rerun_rules_respects_date_range(tmp_path):
    path = _write_export(tmp_path / "export.csv", n=100)
    store = InMemoryRecordStore()
    _pipeline(store, rules=[]).run(path, "generic")

    window = DateRange(date(2024, 2, 1), date(2024, 2, 29))
    result = rerun_rules(store, InMemoryRuleSource([FUEL_RULE]), date_range=window, settings=SETTINGS)

    in_window = [tx for tx in store.all() if tx.date in window]
    assert result.examined == len(in_window)
    assert all(tx.category is None for tx in store.all() if tx.date not in window)
